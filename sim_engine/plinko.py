"""Plinko - measured return under the provably fair slot derivation."""
import hashlib

from sim_engine.base import BaseSimulator, SimResult
from tools.multipliers import expected_return, get_multipliers
from tools.provably_fair import commit, resolve_slot


class PlinkoSimulator(BaseSimulator):
    game_type = "plinko"

    def generate_config(self, rows: int = 12, risk: str = "medium",
                        center_bias: int = 0, seed: int = 42) -> dict:
        # Deterministic seed pair so a run can be reproduced exactly
        server_seed = hashlib.sha256(f"pegdrop-sim-{seed}".encode()).hexdigest()
        return {
            "rows": rows,
            "risk": risk,
            "center_bias": center_bias,
            "multipliers": get_multipliers(rows, risk),
            "server_seed": server_seed,
            "server_seed_hash": commit(server_seed),
            "client_seed": f"sim-{seed}",
        }

    def compute_house_edge(self, config: dict) -> float:
        return 1.0 - expected_return(config["rows"], config["risk"], config.get("center_bias", 0))

    def simulate_round(self, config: dict, nonce: int) -> tuple[float, int]:
        mults = config["multipliers"]
        slot = resolve_slot(config["server_seed"], config["client_seed"], nonce,
                            len(mults), config.get("center_bias", 0))
        return mults[slot], slot

    def simulate(self, rows: int = 12, risk: str = "medium", center_bias: int = 0,
                 rounds: int = 100_000, seed: int = 42) -> SimResult:
        config = self.generate_config(rows=rows, risk=risk, center_bias=center_bias, seed=seed)
        return self.run(config, rounds=rounds)
