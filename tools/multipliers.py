"""
PEGDROP - Multiplier Tables

Per-slot payout multipliers for a board of `rows` peg rows (rows + 1 slots)
at a given risk level. Tables are a pure function of (rows, risk): edge
slots pay more, the centre pays less.

For slot i:  mid = floor((rows + 1) / 2),  normalized = |i - mid| / mid

    low     >0.8 10x | >0.6 5x | >0.4 2x | >0.2 1x | else 0.5x
    medium  >0.9 50x | >0.7 20x | >0.5 5x | >0.3 1x | >0.1 0.5x | else 0.3x
    high    outermost two slots 1000x,
            >0.95 500x | >0.8 100x | >0.6 10x | >0.4 2x | >0.2 0.5x | else 0.2x
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache

from config.game_schema import RiskLevel
from tools.provably_fair import slot_probabilities

MIN_ROWS = 8
MAX_ROWS = 16

# (threshold, multiplier) checked in order; first normalized > threshold wins
RISK_BUCKETS = {
    RiskLevel.LOW: [(0.8, 10), (0.6, 5), (0.4, 2), (0.2, 1)],
    RiskLevel.MEDIUM: [(0.9, 50), (0.7, 20), (0.5, 5), (0.3, 1), (0.1, 0.5)],
    RiskLevel.HIGH: [(0.95, 500), (0.8, 100), (0.6, 10), (0.4, 2), (0.2, 0.5)],
}
RISK_FLOOR = {
    RiskLevel.LOW: 0.5,
    RiskLevel.MEDIUM: 0.3,
    RiskLevel.HIGH: 0.2,
}
HIGH_RISK_EDGE_MULTIPLIER = 1000


class ColorClass(str, Enum):
    LOSS       = "loss"
    SMALL_LOSS = "small-loss"
    SMALL_WIN  = "small-win"
    MEDIUM_WIN = "medium-win"
    BIG_WIN    = "big-win"
    JACKPOT    = "jackpot"


CLASS_COLORS = {
    ColorClass.LOSS: "#ef4444",
    ColorClass.SMALL_LOSS: "#f97316",
    ColorClass.SMALL_WIN: "#fbbf24",
    ColorClass.MEDIUM_WIN: "#a3e635",
    ColorClass.BIG_WIN: "#22c55e",
    ColorClass.JACKPOT: "#ffd700",
}


class FeedbackTier(str, Enum):
    """Sound/animation tier emitted per resolved ball."""
    LOSS       = "loss"
    SMALL_WIN  = "small-win"
    MEDIUM_WIN = "medium-win"
    BIG_WIN    = "big-win"
    JACKPOT    = "jackpot"


@dataclass(frozen=True)
class MultiplierSlot:
    index: int
    multiplier: float
    color_class: ColorClass
    color: str
    x: float = 0.0
    width: float = 0.0


def _check_inputs(rows: int, risk) -> RiskLevel:
    if not MIN_ROWS <= rows <= MAX_ROWS:
        raise ValueError(f"rows must be in [{MIN_ROWS}, {MAX_ROWS}], got {rows}")
    try:
        return RiskLevel(risk)
    except ValueError:
        raise ValueError(f"Unknown risk level: {risk}. Available: {[r.value for r in RiskLevel]}")


def _multiplier_for(i: int, slot_count: int, risk: RiskLevel) -> float:
    if risk is RiskLevel.HIGH and i in (0, slot_count - 1):
        return HIGH_RISK_EDGE_MULTIPLIER
    mid = slot_count // 2
    normalized = abs(i - mid) / mid
    for threshold, mult in RISK_BUCKETS[risk]:
        if normalized > threshold:
            return mult
    return RISK_FLOOR[risk]


@lru_cache(maxsize=None)
def _table(rows: int, risk: RiskLevel) -> tuple[float, ...]:
    slot_count = rows + 1
    return tuple(float(_multiplier_for(i, slot_count, risk)) for i in range(slot_count))


def get_multipliers(rows: int, risk) -> list[float]:
    """Ordered multipliers, length rows + 1."""
    return list(_table(rows, _check_inputs(rows, risk)))


def build_table(rows: int, risk) -> list[tuple[float, ColorClass]]:
    """Ordered (multiplier, color class) pairs."""
    return [(m, color_class_of(m)) for m in get_multipliers(rows, risk)]


def build_slots(rows: int, risk, board_width: float = 0.0) -> list[MultiplierSlot]:
    """Full slot records, with x/width geometry when board_width is given."""
    mults = get_multipliers(rows, risk)
    width = board_width / len(mults) if board_width else 0.0
    slots = []
    for i, m in enumerate(mults):
        cls = color_class_of(m)
        slots.append(MultiplierSlot(
            index=i, multiplier=m, color_class=cls, color=CLASS_COLORS[cls],
            x=i * width, width=width,
        ))
    return slots


def color_class_of(multiplier: float) -> ColorClass:
    if multiplier < 0.5:
        return ColorClass.LOSS
    if multiplier < 1:
        return ColorClass.SMALL_LOSS
    if multiplier <= 2:
        return ColorClass.SMALL_WIN
    if multiplier <= 10:
        return ColorClass.MEDIUM_WIN
    if multiplier <= 100:
        return ColorClass.BIG_WIN
    return ColorClass.JACKPOT


def feedback_tier(multiplier: float) -> FeedbackTier:
    if multiplier >= 100:
        return FeedbackTier.JACKPOT
    if multiplier >= 10:
        return FeedbackTier.BIG_WIN
    if multiplier >= 2:
        return FeedbackTier.MEDIUM_WIN
    if multiplier >= 1:
        return FeedbackTier.SMALL_WIN
    return FeedbackTier.LOSS


def payout(bet: float, multiplier: float) -> float:
    return round(bet * multiplier, 2)


def slot_for_position(final_x: float, board_width: float, slot_count: int) -> int:
    """Map a physical resting x-coordinate to a slot index (display domain)."""
    if board_width <= 0 or slot_count < 1:
        raise ValueError("board_width and slot_count must be positive")
    idx = math.floor(final_x / (board_width / slot_count))
    return max(0, min(idx, slot_count - 1))


def expected_return(rows: int, risk, center_bias: float = 0) -> float:
    """Exact RTP (1.0 = break-even) under the fairness engine's slot
    distribution."""
    mults = get_multipliers(rows, risk)
    probs = slot_probabilities(len(mults), center_bias)
    return sum(p * m for p, m in zip(probs, mults))
