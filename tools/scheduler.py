"""
PEGDROP - Deferred Continuations

The session never blocks: ball drop stagger, settle delays, auto-bet cadence
and the stalled-batch failsafe are all `call_later` continuations that can
be cancelled through the returned handle.

  AsyncioScheduler  - live play on an asyncio event loop
  VirtualScheduler  - deterministic virtual clock for headless runs/tests

Usage:
    sched = VirtualScheduler()
    h = sched.call_later(30, on_timeout)
    h.cancel()
    sched.advance(31)          # on_timeout never fires
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from typing import Callable, Optional, Protocol

logger = logging.getLogger("pegdrop.scheduler")


class Handle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable, *args) -> Handle: ...
    def time(self) -> float: ...


# ═══════════════════════════════════════════════════════════════
# asyncio
# ═══════════════════════════════════════════════════════════════

class AsyncioScheduler:
    """Thin adapter over loop.call_later (callbacks run on the loop thread)."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay: float, callback: Callable, *args) -> asyncio.TimerHandle:
        return self.loop.call_later(max(0.0, delay), callback, *args)

    def time(self) -> float:
        return self.loop.time()


# ═══════════════════════════════════════════════════════════════
# Virtual clock
# ═══════════════════════════════════════════════════════════════

class VirtualHandle:
    __slots__ = ("when", "callback", "args", "cancelled")

    def __init__(self, when: float, callback: Callable, args: tuple):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class VirtualScheduler:
    """Single-threaded timer queue driven by an explicit clock.

    Callbacks due at the same instant run in scheduling order.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: list[tuple[float, int, VirtualHandle]] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable, *args) -> VirtualHandle:
        handle = VirtualHandle(self._now + max(0.0, delay), callback, args)
        heapq.heappush(self._queue, (handle.when, next(self._seq), handle))
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, h in self._queue if not h.cancelled)

    def _run_next(self, until: float) -> bool:
        while self._queue and self._queue[0][2].cancelled:
            heapq.heappop(self._queue)
        if not self._queue or self._queue[0][0] > until:
            return False
        when, _, handle = heapq.heappop(self._queue)
        self._now = max(self._now, when)
        handle.callback(*handle.args)
        return True

    def advance(self, seconds: float) -> int:
        """Run everything due within the next `seconds`. Returns callbacks run."""
        target = self._now + seconds
        ran = 0
        while self._run_next(target):
            ran += 1
        self._now = max(self._now, target)
        return ran

    def run_until_idle(self, max_callbacks: int = 1_000_000) -> int:
        """Drain the queue, advancing the clock as needed."""
        ran = 0
        while self._run_next(float("inf")):
            ran += 1
            if ran >= max_callbacks:
                logger.warning(f"run_until_idle stopped after {ran} callbacks")
                break
        return ran
