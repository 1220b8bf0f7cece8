"""Bucket state transition and key lifecycle rules.

Python rendition of FILL_BUCKET_SCRIPT, used by the in-memory backend.
Both must produce the same numbers for the same inputs.
"""

import math
from dataclasses import dataclass
from typing import Optional

MICROTOKENS = 1_000_000


@dataclass(frozen=True)
class Transition:
    """Outcome of one bucket state transition.

    Attributes:
        level: New bucket level (may be negative)
        now: Timestamp the transition was computed at
        write: Whether the record must be persisted
        ttl: Seconds both keys live for when written (None when not written)
    """
    level: float
    now: float
    write: bool
    ttl: Optional[int] = None


def bucket_ttl(level: float, capacity: int, fill_rate: int, slack: int = 1) -> int:
    """Seconds until a bucket at ``level`` has refilled to ``capacity``.

    Rounded down, plus ``slack``, never below one second. Once this has
    elapsed the stored record carries no information a missing record
    would not, so Redis may drop it.
    """
    ttl = math.floor((capacity - level) / fill_rate) + slack
    return max(1, ttl)


def compute_transition(
    prior_level: Optional[float],
    prior_time: Optional[float],
    now: float,
    capacity: int,
    fill_rate: int,
    amount: int,
    ttl_slack: int = 1,
) -> Transition:
    """Refill a bucket for the elapsed time, then drain ``amount`` from it."""
    if prior_level is None or prior_time is None:
        prior_level = capacity
        prior_time = now

    elapsed = max(0.0, now - prior_time)
    level = min(capacity, prior_level + elapsed * fill_rate) - amount

    if amount == 0 and level >= capacity:
        return Transition(level=level, now=now, write=False)
    return Transition(
        level=level,
        now=now,
        write=True,
        ttl=bucket_ttl(level, capacity, fill_rate, ttl_slack),
    )


def encode_level(level: float) -> tuple[int, int]:
    """Split a level into (whole tokens, microtokens) as the Lua script does."""
    whole = math.floor(level)
    micro = math.floor((level - whole) * MICROTOKENS + 0.5)
    if micro >= MICROTOKENS:
        whole += 1
        micro = 0
    return whole, micro


def decode_level(whole: int, micro: int) -> float:
    """Rebuild a level from the (whole tokens, microtokens) pair."""
    return int(whole) + int(micro) / MICROTOKENS
