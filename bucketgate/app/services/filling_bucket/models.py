"""Data models for filling bucket rate limiting."""

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class BucketState:
    """Snapshot of a bucket as computed by one store round trip.

    Attributes:
        level: Tokens currently available. Has no floor; a negative value
            is accumulated overdraft.
        capacity: Maximum number of tokens the bucket holds
        fill_rate: Tokens restored per second
        drained: Tokens removed by the operation that produced this state
            (0 for an inspect)
    """
    level: float
    capacity: int
    fill_rate: int
    drained: int = 0

    @property
    def empty(self) -> bool:
        return self.level <= 0

    @property
    def full(self) -> bool:
        return self.level >= self.capacity

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "level": self.level,
            "capacity": self.capacity,
            "fill_rate": self.fill_rate,
            "drained": self.drained,
        }

    def headers(self) -> dict[str, str]:
        """Rate limit telemetry as HTTP response headers."""
        return {
            "X-Ratelimit-Cost": str(self.drained),
            "X-Ratelimit-Level": str(math.floor(self.level)),
            "X-Ratelimit-Capacity": str(self.capacity),
        }
