"""
PEGDROP - Base Simulator

Monte Carlo harness shared by game simulators: runs N rounds through the
real outcome derivation and reports measured vs theoretical return.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class SimResult:
    """Simulation results for one board configuration."""
    game_type: str
    rounds: int
    house_edge_theoretical: float
    house_edge_measured: float
    avg_multiplier: float
    max_multiplier_hit: float
    hit_rate: float  # share of rounds returning >= the stake
    total_wagered: float
    total_returned: float
    rtp: float  # 1 - house_edge_measured
    confidence_95: tuple = (0.0, 0.0)
    distribution: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "game_type": self.game_type,
            "rounds": self.rounds,
            "house_edge_theoretical": round(self.house_edge_theoretical, 6),
            "house_edge_measured": round(self.house_edge_measured, 6),
            "rtp": round(self.rtp, 4),
            "avg_multiplier": round(self.avg_multiplier, 4),
            "max_multiplier_hit": round(self.max_multiplier_hit, 2),
            "hit_rate": round(self.hit_rate, 4),
            "total_wagered": round(self.total_wagered, 2),
            "total_returned": round(self.total_returned, 2),
            "confidence_95": [round(x, 6) for x in self.confidence_95],
            "distribution": self.distribution,
        }


class BaseSimulator(ABC):
    """Abstract base: subclasses resolve one round for a given nonce."""

    game_type: str = "base"

    @abstractmethod
    def compute_house_edge(self, config: dict) -> float:
        """Theoretical house edge for a config."""
        ...

    @abstractmethod
    def simulate_round(self, config: dict, nonce: int) -> tuple[float, int]:
        """Resolve one round. Returns (multiplier, outcome bucket)."""
        ...

    def run(self, config: dict, rounds: int = 100_000) -> SimResult:
        if rounds <= 0:
            raise ValueError("rounds must be positive")

        total_returned = 0.0
        sum_sq = 0.0
        hits = 0
        max_mult = 0.0
        buckets: dict[int, int] = {}

        for nonce in range(rounds):
            mult, bucket = self.simulate_round(config, nonce)
            total_returned += mult
            sum_sq += mult * mult
            if mult >= 1:
                hits += 1
            if mult > max_mult:
                max_mult = mult
            buckets[bucket] = buckets.get(bucket, 0) + 1

        total_wagered = float(rounds)
        rtp = total_returned / total_wagered
        he_measured = 1 - rtp
        variance = max(0.0, sum_sq / rounds - rtp * rtp)
        std_err = math.sqrt(variance / rounds)

        return SimResult(
            game_type=self.game_type,
            rounds=rounds,
            house_edge_theoretical=self.compute_house_edge(config),
            house_edge_measured=he_measured,
            avg_multiplier=rtp,
            max_multiplier_hit=max_mult,
            hit_rate=hits / rounds,
            total_wagered=total_wagered,
            total_returned=total_returned,
            rtp=rtp,
            confidence_95=(he_measured - 1.96 * std_err, he_measured + 1.96 * std_err),
            distribution={k: round(v / rounds, 4) for k, v in sorted(buckets.items())},
        )
