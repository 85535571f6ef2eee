"""
PEGDROP - Ledger & Session Statistics

Owns the balance, the cumulative SessionStatistics, the bounded list of
recent results and the active SeedState. Every mutator runs inside one
re-entrant lock, so a result is folded into balance-adjacent state as a
single critical section even when balls resolve on different threads.

Balance policy: the balance is clamped at 0. A debit that would overdraw
succeeds and leaves the balance at 0; it is not an error path.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Optional

from pydantic import ValidationError

from config.game_schema import (
    BetResult, GameSettings, ProfitPoint, SeedState, SessionSnapshot,
    SessionStatistics,
)
from config.settings import GameConfig
from tools.provably_fair import RevealedSeed, new_seed_state, rotate_seeds

logger = logging.getLogger("pegdrop.ledger")


def _cents(value: float) -> float:
    return round(value, 2)


class Ledger:
    """Balance + statistics + seeds for one player session."""

    def __init__(
        self,
        balance: float = GameConfig.INITIAL_BALANCE,
        statistics: Optional[SessionStatistics] = None,
        recent_results: Optional[list[BetResult]] = None,
        seeds: Optional[SeedState] = None,
    ):
        self._lock = threading.RLock()
        self._balance = max(0.0, _cents(balance))
        self._stats = statistics or SessionStatistics()
        self._recent: list[BetResult] = list(recent_results or [])[:GameConfig.MAX_RECENT_RESULTS]
        self._seeds = seeds or new_seed_state()

    # ─── Read-only views ──────────────────────────────────────

    @property
    def balance(self) -> float:
        return self._balance

    @property
    def statistics(self) -> SessionStatistics:
        with self._lock:
            return self._stats.model_copy(deep=True)

    @property
    def recent_results(self) -> list[BetResult]:
        with self._lock:
            return list(self._recent)

    @property
    def seeds(self) -> SeedState:
        with self._lock:
            return self._seeds.model_copy()

    @property
    def nonce(self) -> int:
        return self._seeds.nonce

    # ─── Balance ──────────────────────────────────────────────

    def debit(self, amount: float) -> float:
        with self._lock:
            self._balance = max(0.0, _cents(self._balance - amount))
            return self._balance

    def credit(self, amount: float) -> float:
        with self._lock:
            self._balance = max(0.0, _cents(self._balance + amount))
            return self._balance

    # ─── Results ──────────────────────────────────────────────

    def record_result(self, result: BetResult) -> SessionStatistics:
        """Append to recent results, fold into statistics, advance nonce."""
        with self._lock:
            self._recent.insert(0, result)
            del self._recent[GameConfig.MAX_RECENT_RESULTS:]

            s = self._stats
            s.total_bets += 1
            s.total_wagered = _cents(s.total_wagered + result.bet_amount)
            s.total_won = _cents(s.total_won + result.payout)
            s.net_profit = _cents(s.net_profit + result.profit)
            s.biggest_win = max(s.biggest_win, result.profit)
            s.biggest_loss = min(s.biggest_loss, result.profit)
            if result.profit > 0:
                s.wins += 1
            s.win_rate = s.wins / s.total_bets * 100
            s.return_rate = (s.total_won / s.total_wagered * 100) if s.total_wagered > 0 else 0.0
            s.multiplier_hits[result.multiplier] = s.multiplier_hits.get(result.multiplier, 0) + 1
            s.profit_history.append(ProfitPoint(timestamp=result.timestamp, profit=s.net_profit))
            del s.profit_history[:-GameConfig.MAX_PROFIT_HISTORY]

            self.advance_nonce(result.nonce + 1)
            return s.model_copy(deep=True)

    def advance_nonce(self, nonce: int) -> int:
        """Move the nonce forward to `nonce`; never moves it backward."""
        with self._lock:
            if nonce > self._seeds.nonce:
                self._seeds.nonce = nonce
            return self._seeds.nonce

    # ─── Seeds ────────────────────────────────────────────────

    def rotate_seeds(self, client_seed: Optional[str] = None) -> RevealedSeed:
        with self._lock:
            self._seeds, revealed = rotate_seeds(self._seeds, client_seed=client_seed)
            return revealed

    def reset(self) -> RevealedSeed:
        """Back to defaults: initial balance, empty statistics, fresh seeds."""
        with self._lock:
            revealed = self.rotate_seeds()
            self._balance = GameConfig.INITIAL_BALANCE
            self._stats = SessionStatistics()
            self._recent = []
            logger.info("Ledger reset to initial balance %.2f", self._balance)
            return revealed

    # ─── Persistence ──────────────────────────────────────────

    def snapshot(self, settings: GameSettings) -> str:
        """JSON blob of the persisted subset."""
        with self._lock:
            snap = SessionSnapshot(
                balance=self._balance,
                settings=settings,
                statistics=self._stats,
                recent_results=self._recent,
                seeds=self._seeds,
            )
            return snap.model_dump_json()

    @classmethod
    def restore(cls, blob: Optional[str]) -> tuple["Ledger", GameSettings]:
        """Rebuild a ledger + settings from a snapshot blob.

        Missing or corrupt sections fall back to their defaults. Inside the
        settings and statistics sections each invalid field falls back on its
        own, and each invalid recent result is dropped. This never raises.
        """
        data = {}
        if blob:
            try:
                parsed = json.loads(blob)
                if isinstance(parsed, dict):
                    data = parsed
                else:
                    logger.warning("Saved state is not an object, using defaults")
            except (TypeError, ValueError) as e:
                logger.warning(f"Saved state is corrupt, using defaults: {e}")

        balance = _section(data, "balance", lambda v: SessionSnapshot(balance=v).balance,
                           GameConfig.INITIAL_BALANCE)
        settings = _section(data, "settings", lambda v: _fields(GameSettings, v), None) or GameSettings()
        stats = _section(data, "statistics", lambda v: _fields(SessionStatistics, v), None)
        recent = _section(data, "recent_results", _results, [])
        seeds = _section(data, "seeds", SeedState.model_validate, None)

        return cls(balance=balance, statistics=stats, recent_results=recent, seeds=seeds), settings


def _fields(model, value):
    """Validate a saved section key by key: invalid or unknown keys take
    their defaults, valid siblings are kept."""
    if not isinstance(value, dict):
        raise TypeError(f"expected an object, got {type(value).__name__}")
    try:
        return model.model_validate(value)
    except ValidationError as e:
        bad = {err["loc"][0] for err in e.errors() if err["loc"]}
        logger.warning(f"Saved {model.__name__} fields {sorted(map(str, bad))} are invalid, using defaults")
        return model.model_validate({k: v for k, v in value.items() if k not in bad})


def _results(value) -> list[BetResult]:
    if not isinstance(value, list):
        raise TypeError(f"expected a list, got {type(value).__name__}")
    kept = []
    for raw in value:
        try:
            kept.append(BetResult.model_validate(raw))
        except ValidationError:
            logger.warning(f"Dropping invalid saved result {raw!r:.60}")
    return kept[:GameConfig.MAX_RECENT_RESULTS]


def _section(data: dict, key: str, parse, default):
    if key not in data or data[key] is None:
        return default
    try:
        return parse(data[key])
    except (ValidationError, TypeError, ValueError) as e:
        logger.warning(f"Saved '{key}' is invalid, using default: {e}")
        return default
