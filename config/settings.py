"""
PEGDROP - Game Configuration

All tunables for the wager session live here. Every numeric value can be
overridden from the environment (or a .env file) with the PEGDROP_ prefix:

    PEGDROP_INITIAL_BALANCE=500
    PEGDROP_FAILSAFE_TIMEOUT_S=45
"""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

DATA_DIR = Path(os.getenv("PEGDROP_DATA_DIR", "./data"))


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(f"PEGDROP_{name}")
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(f"PEGDROP_{name}")
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class GameConfig:

    # --- Bankroll ---
    INITIAL_BALANCE = _env_float("INITIAL_BALANCE", 1000.0)
    MIN_BET = _env_float("MIN_BET", 0.1)
    MAX_BET = _env_float("MAX_BET", 1000.0)
    DEFAULT_BET = _env_float("DEFAULT_BET", 1.0)

    # --- History caps ---
    MAX_RECENT_RESULTS = _env_int("MAX_RECENT_RESULTS", 20)
    MAX_PROFIT_HISTORY = _env_int("MAX_PROFIT_HISTORY", 100)

    # --- Timing (seconds) ---
    # Stagger between balls of one batch, and the stalled-batch failsafe.
    DROP_STAGGER_S = _env_float("DROP_STAGGER_S", 0.2)
    FAILSAFE_TIMEOUT_S = _env_float("FAILSAFE_TIMEOUT_S", 30.0)
    AUTO_BET_DELAY_S = _env_float("AUTO_BET_DELAY_S", 0.5)
    ALL_IN_DELAY_S = _env_float("ALL_IN_DELAY_S", 0.5)

    # --- Board geometry (display domain only) ---
    BOARD_WIDTH = _env_float("BOARD_WIDTH", 800.0)
    BALL_FALL_S = _env_float("BALL_FALL_S", 3.0)

    # --- Persistence ---
    STATE_KEY = os.getenv("PEGDROP_STATE_KEY", "plinko-game-state")
    STATE_DB = os.getenv("PEGDROP_STATE_DB", str(DATA_DIR / "pegdrop.db"))

    # --- Logging ---
    LOG_LEVEL = os.getenv("PEGDROP_LOG_LEVEL", "INFO")

    @classmethod
    def as_dict(cls) -> dict:
        """Return every upper-case setting, for diagnostics."""
        return {k: getattr(cls, k) for k in dir(cls) if k.isupper()}
