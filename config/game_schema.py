"""
PEGDROP - Game State Schemas

Pydantic models for everything that crosses the persistence boundary:
settings, auto-bet configuration, seeds, bet results and the cumulative
session statistics. The session controller owns live instances; the
persistence gateway only ever sees `SessionSnapshot` JSON.

Usage:
    from config.game_schema import GameSettings, SessionSnapshot
    settings = GameSettings(rows=14, risk="high")
    blob = SessionSnapshot(balance=1000, settings=settings).model_dump_json()
"""

from __future__ import annotations

from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from config.settings import GameConfig


# ═══════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════

class RiskLevel(str, Enum):
    LOW    = "low"
    MEDIUM = "medium"
    HIGH   = "high"


# ═══════════════════════════════════════════════════════════════
# Player-facing configuration
# ═══════════════════════════════════════════════════════════════

class GameSettings(BaseModel):
    """Board + presentation settings. Sound/animation fields are UI-only."""
    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    rows: int = Field(12, ge=8, le=16)
    risk: RiskLevel = RiskLevel.MEDIUM
    balls_at_once: int = Field(1, ge=1, le=10)
    center_bias: int = Field(0, ge=-5, le=5)
    sound_enabled: bool = True
    sound_volume: int = Field(50, ge=0, le=100)
    animation_speed: float = Field(1.0, ge=0.5, le=2.0)

    @property
    def slot_count(self) -> int:
        return self.rows + 1


class AutoBetConfig(BaseModel):
    """Auto-bet loop configuration.

    number_of_bets=None means run until a stop condition fires.
    A stop_on_profit / stop_on_loss of None or 0 disables that stop.
    increase_on_loss is a percentage applied to the next bet after a
    losing batch; reset_on_win returns to the base bet after a winning one.
    """
    number_of_bets: Optional[int] = Field(10, ge=1)
    stop_on_profit: Optional[float] = Field(None, ge=0)
    stop_on_loss: Optional[float] = Field(None, ge=0)
    increase_on_loss: Optional[float] = Field(None, ge=0, le=1000)
    reset_on_win: bool = False


# ═══════════════════════════════════════════════════════════════
# Seeds, results, statistics
# ═══════════════════════════════════════════════════════════════

class SeedState(BaseModel):
    """Active commit-reveal state.

    server_seed stays secret until rotated out; server_seed_hash is the
    commitment shown to the player before any bet uses the seed.
    nonce is the next nonce to be consumed.
    """
    server_seed: str
    server_seed_hash: str
    client_seed: str
    nonce: int = Field(0, ge=0)


class SeedsUsed(BaseModel):
    model_config = ConfigDict(frozen=True)

    server_seed_hash: str
    client_seed: str
    nonce: int


class BetResult(BaseModel):
    """One resolved ball. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: float
    bet_amount: float
    multiplier: float
    payout: float
    profit: float
    slot_index: int
    seeds: SeedsUsed
    # Board shape the slot was resolved against; needed to re-verify.
    slot_count: Optional[int] = None
    center_bias: Optional[int] = None

    @property
    def nonce(self) -> int:
        return self.seeds.nonce


class ProfitPoint(BaseModel):
    timestamp: float
    profit: float


class SessionStatistics(BaseModel):
    total_bets: int = 0
    total_wagered: float = 0.0
    total_won: float = 0.0
    net_profit: float = 0.0
    biggest_win: float = 0.0
    biggest_loss: float = 0.0
    wins: int = 0                 # balls with profit > 0
    win_rate: float = 0.0         # wins / total_bets * 100
    return_rate: float = 0.0      # total_won / total_wagered * 100
    multiplier_hits: dict[float, int] = Field(default_factory=dict)
    profit_history: list[ProfitPoint] = Field(default_factory=list)


class SessionSnapshot(BaseModel):
    """The persisted subset of a session."""
    balance: float = GameConfig.INITIAL_BALANCE
    settings: GameSettings = Field(default_factory=GameSettings)
    statistics: SessionStatistics = Field(default_factory=SessionStatistics)
    recent_results: list[BetResult] = Field(default_factory=list)
    seeds: Optional[SeedState] = None

    @field_validator("balance", mode="before")
    @classmethod
    def clamp_balance(cls, v):
        return max(0.0, float(v))
