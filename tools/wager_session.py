"""
PEGDROP - Wager Session Controller

Owns one player's GameSession and is the only thing allowed to mutate it.

State machine:
    IDLE --place_bet--> PLAYING   debit, stagger N drops, arm 30s failsafe
    PLAYING --last ball landed--> IDLE   disarm failsafe, run continuation
    PLAYING --failsafe--> IDLE           drop outstanding balls, run continuation

Continuation policy after every batch (at most one active):
    auto-bet  stop on bet count / net profit >= stop_on_profit /
              net profit <= -stop_on_loss / balance < bet, else same bet again
    all-in    stop when balance < MIN_BET, else bet the whole balance

Payouts come from the slot precommitted by the fairness engine for the
ball's nonce. The physics landing position is cosmetic; a disagreement is
logged, never paid.

Usage:
    sched = VirtualScheduler()
    board = SimulatedBoard(sched)
    session = WagerSession(sched, board)
    session.place_bet(10)
    sched.run_until_idle()
"""

from __future__ import annotations

import logging
import math
import random
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from config.game_schema import (
    AutoBetConfig, BetResult, GameSettings, SeedsUsed, SessionStatistics,
)
from config.settings import GameConfig
from tools.ledger import Ledger
from tools.multipliers import FeedbackTier, feedback_tier, get_multipliers, payout, slot_for_position
from tools.persistence import KeyValueStore, PersistenceError
from tools.physics_board import PhysicsBoard
from tools.provably_fair import RevealedSeed, commit, resolve_slot, verify
from tools.scheduler import Handle, Scheduler

logger = logging.getLogger("pegdrop.session")


# ═══════════════════════════════════════════════════════════════
# Data Models
# ═══════════════════════════════════════════════════════════════

class SessionState(str, Enum):
    IDLE    = "idle"
    PLAYING = "playing"


class AutoPlayMode(str, Enum):
    NONE     = "none"
    AUTO_BET = "auto_bet"
    ALL_IN   = "all_in"


class BetRejection(str, Enum):
    BELOW_MINIMUM        = "below_minimum"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    ALREADY_PLAYING      = "already_playing"
    INVALID_AMOUNT       = "invalid_amount"


class AutoStopReason(str, Enum):
    BET_LIMIT            = "bet_limit"
    PROFIT_TARGET        = "profit_target"
    LOSS_LIMIT           = "loss_limit"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    BANKRUPT             = "bankrupt"
    CANCELLED            = "cancelled"


@dataclass
class BetReceipt:
    """Outcome of place_bet. A rejection is a no-op with a reason."""
    accepted: bool
    bet_amount: float
    reason: Optional[BetRejection] = None
    batch_id: str = ""
    ball_count: int = 0


@dataclass
class Ball:
    id: str
    stake: float
    nonce: int
    target_slot: int


@dataclass
class Batch:
    id: str
    amount: float
    stakes: list[float]
    mode: AutoPlayMode
    rows: int
    slot_count: int
    center_bias: int
    multipliers: list[float]
    dropped: int = 0
    outstanding: dict[str, Ball] = field(default_factory=dict)
    results: list[BetResult] = field(default_factory=list)
    drop_handles: list[Handle] = field(default_factory=list)
    failsafe: Optional[Handle] = None

    @property
    def complete(self) -> bool:
        return self.dropped == len(self.stakes) and not self.outstanding

    @property
    def profit(self) -> float:
        return round(sum(r.profit for r in self.results), 2)


def split_stake(amount: float, balls: int) -> list[float]:
    """Split a bet across a batch in whole cents; the last ball takes the remainder."""
    share = math.floor(amount / balls * 100 + 1e-9) / 100
    return [share] * (balls - 1) + [round(amount - share * (balls - 1), 2)]


# ═══════════════════════════════════════════════════════════════
# Controller
# ═══════════════════════════════════════════════════════════════

class WagerSession:
    """Bet placement, multi-ball batches, auto-bet / all-in loops, failsafe."""

    def __init__(
        self,
        scheduler: Scheduler,
        board: PhysicsBoard,
        store: Optional[KeyValueStore] = None,
        ledger: Optional[Ledger] = None,
        settings: Optional[GameSettings] = None,
        rng: Optional[random.Random] = None,
    ):
        self.scheduler = scheduler
        self.board = board
        self.store = store
        self.ledger = ledger or Ledger()
        self._settings = settings or GameSettings()
        self._rng = rng or random.Random()

        self._state = SessionState.IDLE
        self._current_bet = GameConfig.DEFAULT_BET
        self._batch: Optional[Batch] = None
        self._nonce_cursor = self.ledger.nonce

        self._mode = AutoPlayMode.NONE
        self._auto_config = AutoBetConfig()
        self._auto_count = 0
        self._auto_base_bet = self._current_bet
        self._next_bet: Optional[Handle] = None

        # UI / sound collaborators
        self.result_listeners: list[Callable[[BetResult, FeedbackTier], None]] = []
        self.state_listeners: list[Callable[["WagerSession"], None]] = []
        self.auto_stop_listeners: list[Callable[[AutoStopReason], None]] = []

        self.board.bind(self.landed)

    @classmethod
    def load(cls, scheduler: Scheduler, board: PhysicsBoard,
             store: KeyValueStore, **kw) -> "WagerSession":
        """Restore from the persistence gateway, falling back to defaults."""
        blob = None
        try:
            blob = store.load(GameConfig.STATE_KEY)
        except PersistenceError as e:
            logger.warning(f"Could not load saved session, starting fresh: {e}")
        ledger, settings = Ledger.restore(blob)
        return cls(scheduler, board, store=store, ledger=ledger, settings=settings, **kw)

    # ─── Read-only state ──────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_playing(self) -> bool:
        return self._state is SessionState.PLAYING

    @property
    def balance(self) -> float:
        return self.ledger.balance

    @property
    def current_bet(self) -> float:
        return self._current_bet

    @property
    def auto_bet_active(self) -> bool:
        return self._mode is AutoPlayMode.AUTO_BET

    @property
    def all_in_active(self) -> bool:
        return self._mode is AutoPlayMode.ALL_IN

    @property
    def auto_bet_config(self) -> AutoBetConfig:
        return self._auto_config.model_copy()

    @property
    def auto_bet_count(self) -> int:
        return self._auto_count

    @property
    def settings(self) -> GameSettings:
        return self._settings.model_copy()

    @property
    def statistics(self) -> SessionStatistics:
        return self.ledger.statistics

    @property
    def recent_results(self) -> list[BetResult]:
        return self.ledger.recent_results

    @property
    def outstanding_balls(self) -> int:
        if self._batch is None:
            return 0
        return len(self._batch.outstanding) + len(self._batch.stakes) - self._batch.dropped

    def seed_commitment(self) -> dict:
        """What the player may see before betting. Never the server seed."""
        seeds = self.ledger.seeds
        return {
            "server_seed_hash": seeds.server_seed_hash,
            "client_seed": seeds.client_seed,
            "nonce": seeds.nonce,
        }

    # ─── Bet sizing ───────────────────────────────────────────

    def set_bet(self, amount: float) -> float:
        self._current_bet = round(max(GameConfig.MIN_BET, min(GameConfig.MAX_BET, amount)), 2)
        return self._current_bet

    def quick_bet(self, action: str) -> float:
        if action == "min":
            return self.set_bet(GameConfig.MIN_BET)
        if action == "half":
            return self.set_bet(self._current_bet / 2)
        if action == "double":
            return self.set_bet(self._current_bet * 2)
        if action == "max":
            return self.set_bet(min(self.balance, GameConfig.MAX_BET))
        raise ValueError(f"Unknown quick bet action: {action}")

    # ─── Placement ────────────────────────────────────────────

    def place_bet(self, amount: Optional[float] = None) -> BetReceipt:
        """IDLE -> PLAYING. Rejections leave every piece of state untouched."""
        amount = round(self._current_bet if amount is None else amount, 2)

        if self.is_playing:
            return self._reject(amount, BetRejection.ALREADY_PLAYING)
        if not math.isfinite(amount):
            return self._reject(amount, BetRejection.INVALID_AMOUNT)
        if amount < GameConfig.MIN_BET:
            return self._reject(amount, BetRejection.BELOW_MINIMUM)
        if amount > self.balance:
            return self._reject(amount, BetRejection.INSUFFICIENT_BALANCE)

        s = self._settings
        batch = Batch(
            id=str(uuid.uuid4())[:12],
            amount=amount,
            stakes=split_stake(amount, s.balls_at_once),
            mode=self._mode,
            rows=s.rows,
            slot_count=s.slot_count,
            center_bias=s.center_bias,
            multipliers=get_multipliers(s.rows, s.risk),
        )

        self.ledger.debit(amount)
        self._batch = batch
        self._state = SessionState.PLAYING

        for i in range(len(batch.stakes)):
            batch.drop_handles.append(
                self.scheduler.call_later(i * GameConfig.DROP_STAGGER_S, self._drop_ball, batch, i)
            )
        batch.failsafe = self.scheduler.call_later(
            GameConfig.FAILSAFE_TIMEOUT_S, self._failsafe, batch.id,
        )

        logger.info(f"Bet {batch.id}: {amount:.2f} across {len(batch.stakes)} ball(s), "
                    f"rows={s.rows} risk={s.risk.value} balance={self.balance:.2f}")
        self._emit_state()
        return BetReceipt(accepted=True, bet_amount=amount, batch_id=batch.id,
                          ball_count=len(batch.stakes))

    def _reject(self, amount: float, reason: BetRejection) -> BetReceipt:
        logger.debug(f"Bet {amount:.2f} rejected: {reason.value}")
        return BetReceipt(accepted=False, bet_amount=amount, reason=reason)

    def _reserve_nonce(self) -> int:
        self._nonce_cursor = max(self._nonce_cursor, self.ledger.nonce)
        nonce = self._nonce_cursor
        self._nonce_cursor += 1
        return nonce

    def _drop_ball(self, batch: Batch, index: int) -> None:
        if batch is not self._batch:
            return
        seeds = self.ledger.seeds
        nonce = self._reserve_nonce()
        target = resolve_slot(seeds.server_seed, seeds.client_seed, nonce,
                              batch.slot_count, batch.center_bias)
        ball = Ball(id=f"ball-{batch.id}-{index}", stake=batch.stakes[index],
                    nonce=nonce, target_slot=target)
        batch.outstanding[ball.id] = ball
        batch.dropped += 1

        start_x = self.board.width / 2 + self._rng.uniform(-10, 10)
        self.board.drop(ball.id, start_x, target, batch.slot_count)

    # ─── Resolution ───────────────────────────────────────────

    def landed(self, ball_id: str, final_x: float) -> Optional[BetResult]:
        """Physics callback. Unknown or repeated ball ids are ignored."""
        batch = self._batch
        ball = batch.outstanding.pop(ball_id, None) if batch else None
        if ball is None:
            logger.debug(f"Ignoring landing for untracked ball {ball_id}")
            return None

        physical = slot_for_position(final_x, self.board.width, batch.slot_count)
        if physical != ball.target_slot:
            logger.warning(f"{ball_id} settled in slot {physical} but nonce {ball.nonce} "
                           f"committed slot {ball.target_slot}; paying the committed slot")

        multiplier = batch.multipliers[ball.target_slot]
        paid = payout(ball.stake, multiplier)
        seeds = self.ledger.seeds
        result = BetResult(
            id=ball.id,
            timestamp=time.time(),
            bet_amount=ball.stake,
            multiplier=multiplier,
            payout=paid,
            profit=round(paid - ball.stake, 2),
            slot_index=ball.target_slot,
            seeds=SeedsUsed(server_seed_hash=seeds.server_seed_hash,
                            client_seed=seeds.client_seed, nonce=ball.nonce),
            slot_count=batch.slot_count,
            center_bias=batch.center_bias,
        )

        self.ledger.credit(paid)
        self.ledger.record_result(result)
        batch.results.append(result)

        tier = feedback_tier(multiplier)
        for listener in self.result_listeners:
            listener(result, tier)
        self.save()

        if batch.complete:
            self._finish_batch(batch, stalled=False)
        return result

    def _finish_batch(self, batch: Batch, stalled: bool) -> None:
        if batch.failsafe is not None:
            batch.failsafe.cancel()
        for h in batch.drop_handles:
            h.cancel()
        batch.outstanding.clear()
        self._batch = None
        self._state = SessionState.IDLE
        logger.info(f"Batch {batch.id} {'abandoned' if stalled else 'complete'}: "
                    f"{len(batch.results)}/{len(batch.stakes)} resolved, "
                    f"profit {batch.profit:+.2f}, balance {self.balance:.2f}")
        self._emit_state()
        self._continue(batch)

    def _failsafe(self, batch_id: str) -> None:
        batch = self._batch
        if batch is None or batch.id != batch_id:
            return
        logger.warning(f"Batch {batch_id} stalled: {self.outstanding_balls} ball(s) "
                       f"unresolved after {GameConfig.FAILSAFE_TIMEOUT_S:.0f}s, forcing idle")
        # Nonces handed to lost balls are burned, never reused.
        self.ledger.advance_nonce(self._nonce_cursor)
        batch.failsafe = None
        self._finish_batch(batch, stalled=True)
        self.save()

    # ─── Continuation policy ──────────────────────────────────

    def _continue(self, batch: Batch) -> None:
        if self._mode is AutoPlayMode.AUTO_BET:
            if batch.mode is AutoPlayMode.AUTO_BET:
                self._auto_count += 1
            reason = self._auto_bet_stop_reason()
            if reason is not None:
                self.stop_auto_play(reason)
                return
            self._adjust_auto_bet(batch)
            if self.balance < self._current_bet:
                self.stop_auto_play(AutoStopReason.INSUFFICIENT_BALANCE)
                return
            self._next_bet = self.scheduler.call_later(GameConfig.AUTO_BET_DELAY_S, self._auto_bet_tick)

        elif self._mode is AutoPlayMode.ALL_IN:
            if self.balance < GameConfig.MIN_BET:
                self.stop_auto_play(AutoStopReason.BANKRUPT)
                return
            self._next_bet = self.scheduler.call_later(GameConfig.ALL_IN_DELAY_S, self._all_in_tick)

    def _auto_bet_stop_reason(self) -> Optional[AutoStopReason]:
        cfg = self._auto_config
        if cfg.number_of_bets is not None and self._auto_count >= cfg.number_of_bets:
            return AutoStopReason.BET_LIMIT
        net = self.ledger.statistics.net_profit
        if cfg.stop_on_profit and net >= cfg.stop_on_profit:
            return AutoStopReason.PROFIT_TARGET
        if cfg.stop_on_loss and net <= -cfg.stop_on_loss:
            return AutoStopReason.LOSS_LIMIT
        return None

    def _adjust_auto_bet(self, batch: Batch) -> None:
        cfg = self._auto_config
        if batch.profit < 0 and cfg.increase_on_loss:
            self.set_bet(self._current_bet * (1 + cfg.increase_on_loss / 100))
        elif batch.profit > 0 and cfg.reset_on_win:
            self.set_bet(self._auto_base_bet)

    def _auto_bet_tick(self) -> None:
        self._next_bet = None
        if self._mode is not AutoPlayMode.AUTO_BET:
            return
        receipt = self.place_bet(self._current_bet)
        if not receipt.accepted and receipt.reason is not BetRejection.ALREADY_PLAYING:
            self.stop_auto_play(AutoStopReason.INSUFFICIENT_BALANCE)

    def _all_in_tick(self) -> None:
        self._next_bet = None
        if self._mode is not AutoPlayMode.ALL_IN:
            return
        receipt = self.place_bet(self.balance)
        if not receipt.accepted and receipt.reason is not BetRejection.ALREADY_PLAYING:
            self.stop_auto_play(AutoStopReason.BANKRUPT)

    def start_auto_bet(self, config: Optional[AutoBetConfig] = None) -> Optional[BetReceipt]:
        """Begin auto-betting the current bet. Places the first bet now when
        idle; otherwise the loop picks up after the in-flight batch."""
        if self._mode is not AutoPlayMode.NONE:
            self.stop_auto_play()
        self._auto_config = config or AutoBetConfig()
        self._auto_count = 0
        self._auto_base_bet = self._current_bet
        self._mode = AutoPlayMode.AUTO_BET
        logger.info(f"Auto-bet started: {self._auto_config.model_dump(exclude_none=True)}")
        self._emit_state()
        if self.is_playing:
            return None
        receipt = self.place_bet(self._current_bet)
        if not receipt.accepted:
            self.stop_auto_play(AutoStopReason.INSUFFICIENT_BALANCE)
        return receipt

    def start_all_in(self) -> Optional[BetReceipt]:
        """Bet the entire balance every round until it drops below MIN_BET."""
        if self._mode is not AutoPlayMode.NONE:
            self.stop_auto_play()
        self._mode = AutoPlayMode.ALL_IN
        logger.info(f"All-in started with balance {self.balance:.2f}")
        self._emit_state()
        if self.is_playing:
            return None
        receipt = self.place_bet(self.balance)
        if not receipt.accepted:
            self.stop_auto_play(AutoStopReason.BANKRUPT)
        return receipt

    def stop_auto_play(self, reason: AutoStopReason = AutoStopReason.CANCELLED) -> None:
        """Cancel future bets only; a batch in flight keeps resolving."""
        if self._mode is AutoPlayMode.NONE:
            return
        mode = self._mode
        self._mode = AutoPlayMode.NONE
        self._auto_count = 0
        if self._next_bet is not None:
            self._next_bet.cancel()
            self._next_bet = None
        logger.info(f"{mode.value} stopped: {reason.value}")
        for listener in self.auto_stop_listeners:
            listener(reason)
        self._emit_state()

    # ─── Settings + seeds ─────────────────────────────────────

    def update_settings(self, **changes) -> bool:
        """Apply validated setting changes. Refused while a batch is in flight."""
        if self.is_playing:
            logger.info("Settings change refused while playing")
            return False
        self._settings = GameSettings.model_validate({**self._settings.model_dump(), **changes})
        self.save()
        self._emit_state()
        return True

    def change_client_seed(self, client_seed: str) -> Optional[RevealedSeed]:
        """New client seed + new server seed; the old server seed is revealed."""
        if self.is_playing:
            return None
        revealed = self.ledger.rotate_seeds(client_seed=client_seed)
        self._nonce_cursor = self.ledger.nonce
        self.save()
        return revealed

    def reset(self) -> Optional[RevealedSeed]:
        """Initial balance, empty statistics, default settings, fresh seeds."""
        if self.is_playing:
            return None
        self.stop_auto_play()
        revealed = self.ledger.reset()
        self._nonce_cursor = self.ledger.nonce
        self._settings = GameSettings()
        self._current_bet = GameConfig.DEFAULT_BET
        self.save()
        self._emit_state()
        return revealed

    @staticmethod
    def verify_result(result: BetResult, revealed_server_seed: str,
                      slot_count: Optional[int] = None,
                      center_bias: Optional[int] = None) -> bool:
        """Audit one result against a revealed server seed."""
        if commit(revealed_server_seed) != result.seeds.server_seed_hash:
            return False
        slots = slot_count if slot_count is not None else result.slot_count
        bias = center_bias if center_bias is not None else (result.center_bias or 0)
        if slots is None:
            return False
        return verify(revealed_server_seed, result.seeds.client_seed, result.seeds.nonce,
                      slots, bias, result.slot_index)

    # ─── Persistence + listeners ──────────────────────────────

    def save(self) -> bool:
        if self.store is None:
            return False
        try:
            self.store.save(GameConfig.STATE_KEY, self.ledger.snapshot(self._settings))
            return True
        except PersistenceError as e:
            logger.warning(f"Session save failed, continuing in memory: {e}")
            return False

    def _emit_state(self) -> None:
        for listener in self.state_listeners:
            listener(self)
