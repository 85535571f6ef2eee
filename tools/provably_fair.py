"""
PEGDROP - Provably Fair Slot Engine

Server-seed + client-seed + nonce scheme that maps every dropped ball to a
landing slot before the ball is released.

Architecture:
    server_seed_hash = SHA-256(server_seed) is shown before any bet.
    For each ball:
        digest = SHA-256(server_seed + "-" + client_seed + "-" + nonce)
        value  = int(digest[:8], 16) / 2^32              -> [0, 1)
        biased = apply_bias(value, center_bias)          -> [0, 1)
        slot   = min(floor(biased * slot_count), slot_count - 1)
    When the seed pair is rotated the old server_seed is revealed, so every
    past ball can be recomputed with verify().

Bias ("risk shaping") with n = center_bias / 5:
    n > 0:  biased = 0.5 + (value - 0.5) * (1 - 0.7n)
    n < 0:  value < 0.5  -> value * (1 + 0.7|n|)
            value >= 0.5 -> 1 - (1 - value) * (1 + 0.7|n|)
    n = 0:  identity

Usage:
    from tools.provably_fair import new_seed_state, resolve_slot, verify
    seeds = new_seed_state()
    slot = resolve_slot(seeds.server_seed, seeds.client_seed, 0, 13, 0)
    assert verify(seeds.server_seed, seeds.client_seed, 0, 13, 0, slot)
"""

from __future__ import annotations

import hashlib
import logging
import math
import random
import secrets
import time
from dataclasses import dataclass, field
from typing import Optional

from config.game_schema import SeedState

logger = logging.getLogger("pegdrop.fairness")

SEED_BYTES = 32
BIAS_STRENGTH = 0.7
MAX_CENTER_BIAS = 5

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


# ═══════════════════════════════════════════════════════════════
# Seeds + commitment
# ═══════════════════════════════════════════════════════════════

def generate_server_seed() -> str:
    """32 bytes of secret entropy, hex-encoded.

    Falls back to the Mersenne Twister only when the OS has no secure
    random source. A seed from the fallback is predictable and voids the
    unpredictability guarantee; a warning is logged when it happens.
    """
    try:
        raw = secrets.token_bytes(SEED_BYTES)
    except NotImplementedError:
        logger.warning("No secure random source available: server seed is NOT unpredictable")
        raw = bytes(random.getrandbits(8) for _ in range(SEED_BYTES))
    return raw.hex()


def _to_base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_BASE36[r])
    return "".join(reversed(out))


def generate_client_seed() -> str:
    """Readable default client seed: '<base36 millis>-<13 random base36>'."""
    stamp = _to_base36(int(time.time() * 1000))
    rand = "".join(secrets.choice(_BASE36) for _ in range(13))
    return f"{stamp}-{rand}"


def commit(secret: str) -> str:
    """SHA-256 commitment of a server seed (hex)."""
    return hashlib.sha256(secret.encode()).hexdigest()


def verify_server_seed(server_seed: str, expected_hash: str) -> bool:
    """Check a revealed server seed against the commitment shown earlier."""
    return commit(server_seed) == expected_hash


def new_seed_state(client_seed: Optional[str] = None) -> SeedState:
    """Fresh seed pair with nonce 0."""
    server_seed = generate_server_seed()
    return SeedState(
        server_seed=server_seed,
        server_seed_hash=commit(server_seed),
        client_seed=client_seed or generate_client_seed(),
        nonce=0,
    )


@dataclass
class RevealedSeed:
    """An outgoing server seed, disclosed at rotation time."""
    server_seed: str
    server_seed_hash: str
    client_seed: str
    final_nonce: int              # first nonce NOT used under this pair
    revealed_at: float = 0

    def __post_init__(self):
        if not self.revealed_at:
            self.revealed_at = time.time()

    def to_dict(self) -> dict:
        return {
            "server_seed": self.server_seed,
            "server_seed_hash": self.server_seed_hash,
            "client_seed": self.client_seed,
            "final_nonce": self.final_nonce,
            "revealed_at": self.revealed_at,
        }


def rotate_seeds(seeds: SeedState, client_seed: Optional[str] = None) -> tuple[SeedState, RevealedSeed]:
    """Replace the server seed (nonce back to 0) and reveal the old one."""
    revealed = RevealedSeed(
        server_seed=seeds.server_seed,
        server_seed_hash=seeds.server_seed_hash,
        client_seed=seeds.client_seed,
        final_nonce=seeds.nonce,
    )
    fresh = new_seed_state(client_seed=client_seed)
    logger.info(f"Seed rotated: revealed {revealed.server_seed_hash[:12]}… "
                f"after {revealed.final_nonce} nonces, new commitment {fresh.server_seed_hash[:12]}…")
    return fresh, revealed


# ═══════════════════════════════════════════════════════════════
# Outcome derivation
# ═══════════════════════════════════════════════════════════════

def derive_digest(server_seed: str, client_seed: str, nonce: int) -> str:
    """SHA-256 of 'server-client-nonce' (hex)."""
    combined = f"{server_seed}-{client_seed}-{nonce}"
    return hashlib.sha256(combined.encode()).hexdigest()


def _digest_to_float(hex_digest: str) -> float:
    """First 8 hex chars as a fraction of 2^32, so always < 1."""
    return int(hex_digest[:8], 16) / 0x100000000


def derive_unit_interval(server_seed: str, client_seed: str, nonce: int) -> float:
    return _digest_to_float(derive_digest(server_seed, client_seed, nonce))


def _normalize_bias(center_bias: float) -> float:
    if not -MAX_CENTER_BIAS <= center_bias <= MAX_CENTER_BIAS:
        raise ValueError(f"center_bias must be in [-5, 5], got {center_bias}")
    return center_bias / MAX_CENTER_BIAS


def apply_bias(value: float, center_bias: float) -> float:
    n = _normalize_bias(center_bias)
    if n > 0:
        return 0.5 + (value - 0.5) * (1 - n * BIAS_STRENGTH)
    if n < 0:
        stretch = 1 + abs(n) * BIAS_STRENGTH
        if value < 0.5:
            return value * stretch
        return 1 - (1 - value) * stretch
    return value


def resolve_slot(server_seed: str, client_seed: str, nonce: int,
                 slot_count: int, center_bias: float = 0) -> int:
    """Precommitted landing slot for one ball."""
    if slot_count < 1:
        raise ValueError(f"slot_count must be positive, got {slot_count}")
    if nonce < 0:
        raise ValueError(f"nonce must be non-negative, got {nonce}")
    biased = apply_bias(derive_unit_interval(server_seed, client_seed, nonce), center_bias)
    return min(math.floor(biased * slot_count), slot_count - 1)


def verify(server_seed: str, client_seed: str, nonce: int, slot_count: int,
           center_bias: float, claimed_index: int) -> bool:
    """Recompute a slot from a revealed seed. Returns False on any mismatch
    or malformed input; never raises."""
    try:
        return resolve_slot(server_seed, client_seed, nonce, slot_count, center_bias) == claimed_index
    except (TypeError, ValueError, AttributeError, OverflowError) as e:
        logger.debug(f"verify() rejected malformed input: {e}")
        return False


# ═══════════════════════════════════════════════════════════════
# Exact slot distribution
# ═══════════════════════════════════════════════════════════════

def _bias_pieces(center_bias: float) -> list[tuple[float, float, float, float]]:
    """The bias map as increasing linear pieces (v_lo, v_hi, slope, intercept)."""
    n = _normalize_bias(center_bias)
    if n > 0:
        k = 1 - n * BIAS_STRENGTH
        return [(0.0, 1.0, k, 0.5 - 0.5 * k)]
    if n < 0:
        m = 1 + abs(n) * BIAS_STRENGTH
        return [(0.0, 0.5, m, 0.0), (0.5, 1.0, m, 1 - m)]
    return [(0.0, 1.0, 1.0, 0.0)]


def slot_probabilities(slot_count: int, center_bias: float = 0) -> list[float]:
    """Probability of each slot, treating the derived value as continuous
    uniform on [0, 1)."""
    if slot_count < 1:
        raise ValueError(f"slot_count must be positive, got {slot_count}")
    probs = [0.0] * slot_count
    for v_lo, v_hi, slope, intercept in _bias_pieces(center_bias):
        for i in range(slot_count):
            a, b = i / slot_count, (i + 1) / slot_count
            pre_lo = max(v_lo, (a - intercept) / slope)
            pre_hi = min(v_hi, (b - intercept) / slope)
            if pre_hi > pre_lo:
                probs[i] += pre_hi - pre_lo
    return probs


# ═══════════════════════════════════════════════════════════════
# Audit trail
# ═══════════════════════════════════════════════════════════════

@dataclass
class RoundAudit:
    """Everything a third party needs to recompute one ball."""
    server_seed: str
    client_seed: str
    nonce: int
    slot_count: int
    center_bias: float
    digest: str
    raw_value: float
    biased_value: float
    slot_index: int
    server_seed_hash: str = ""
    steps: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "server_seed": self.server_seed,
            "server_seed_hash": self.server_seed_hash,
            "client_seed": self.client_seed,
            "nonce": self.nonce,
            "slot_count": self.slot_count,
            "center_bias": self.center_bias,
            "digest": self.digest,
            "raw_value": self.raw_value,
            "biased_value": self.biased_value,
            "slot_index": self.slot_index,
            "verification_steps": self.steps,
        }


def round_audit(server_seed: str, client_seed: str, nonce: int,
                slot_count: int, center_bias: float = 0) -> RoundAudit:
    digest = derive_digest(server_seed, client_seed, nonce)
    raw = _digest_to_float(digest)
    biased = apply_bias(raw, center_bias)
    slot = min(math.floor(biased * slot_count), slot_count - 1)
    return RoundAudit(
        server_seed=server_seed,
        client_seed=client_seed,
        nonce=nonce,
        slot_count=slot_count,
        center_bias=center_bias,
        digest=digest,
        raw_value=raw,
        biased_value=biased,
        slot_index=slot,
        server_seed_hash=commit(server_seed),
        steps=[
            "1. Check SHA-256(server_seed) == server_seed_hash",
            f"2. digest = SHA-256('{server_seed[:8]}…-{client_seed}-{nonce}')",
            "3. value = int(digest[:8], 16) / 2^32",
            f"4. biased = apply_bias(value, center_bias={center_bias})",
            f"5. slot = min(floor(biased * {slot_count}), {slot_count - 1})",
        ],
    )
