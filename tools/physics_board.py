"""
PEGDROP - Physics Board Collaborator

The session never computes trajectories. For every ball it calls
`board.drop(ball_id, start_x, target_slot)` and later expects exactly one
`session.landed(ball_id, final_x)` callback.

SimulatedBoard is the headless stand-in used by the CLI and tests: it
settles each ball in the centre of its precommitted slot after a fixed
fall time.
"""

from __future__ import annotations

import logging
import random
from typing import Callable, Optional, Protocol

from tools.scheduler import Scheduler

logger = logging.getLogger("pegdrop.board")


class PhysicsBoard(Protocol):
    width: float

    def bind(self, on_landed: Callable[[str, float], None]) -> None: ...
    def drop(self, ball_id: str, start_x: float, target_slot: int, slot_count: int) -> None: ...


class SimulatedBoard:
    """Lands each ball in its target slot after `fall_time` seconds.

    stalled=True swallows drops (no landing event ever arrives), which is
    how a frozen visualisation looks to the session.
    """

    def __init__(self, scheduler: Scheduler, width: float = 800.0,
                 fall_time: float = 3.0, jitter: float = 0.0,
                 stalled: bool = False, rng: Optional[random.Random] = None):
        self.scheduler = scheduler
        self.width = width
        self.fall_time = fall_time
        self.jitter = jitter
        self.stalled = stalled
        self._rng = rng or random.Random()
        self._on_landed: Optional[Callable[[str, float], None]] = None
        self.dropped: list[tuple[str, int]] = []

    def bind(self, on_landed: Callable[[str, float], None]) -> None:
        self._on_landed = on_landed

    def drop(self, ball_id: str, start_x: float, target_slot: int, slot_count: int) -> None:
        self.dropped.append((ball_id, target_slot))
        if self.stalled:
            logger.debug(f"Board stalled, {ball_id} will never land")
            return
        slot_w = self.width / slot_count
        final_x = (target_slot + 0.5) * slot_w
        delay = self.fall_time + (self._rng.uniform(0, self.jitter) if self.jitter else 0.0)
        self.scheduler.call_later(delay, self._land, ball_id, final_x)

    def _land(self, ball_id: str, final_x: float) -> None:
        if self._on_landed is not None:
            self._on_landed(ball_id, final_x)
