"""
PEGDROP - Return-to-Player Simulation

Usage:
    from sim_engine import PlinkoSimulator
    result = PlinkoSimulator().simulate(rows=12, risk="medium", rounds=100_000)
    print(result.to_dict())
"""

from sim_engine.base import SimResult
from sim_engine.plinko import PlinkoSimulator

__all__ = ["PlinkoSimulator", "SimResult"]
