"""The Bucket entity: one named, parameterized rate limit."""

import hashlib
import json
import time
from inspect import isawaitable
from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence, Union

from bucketgate.app.core.config import settings
from bucketgate.app.core.logging import get_log_context, get_logger
from bucketgate.app.exceptions import InvalidArgumentError, Throttled, compute_retry_in_seconds
from bucketgate.app.services.filling_bucket.models import BucketState

if TYPE_CHECKING:
    from bucketgate.app.services.filling_bucket.backends import BucketBackend

logger = get_logger(__name__)

BucketKey = Union[str, int, Sequence[Union[str, int]]]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def bucket_identity(*discriminators: Union[str, int]) -> str:
    """Combine discriminators into one bucket identity.

    A single string or integer is used verbatim. Several are hashed in the
    order given, so ("user42", "search") and ("search", "user42") are two
    different buckets.

    Example:
        >>> bucket_identity("user42")
        'user42'
        >>> len(bucket_identity("user42", "/search"))
        40
    """
    if not discriminators:
        raise InvalidArgumentError("at least one discriminator is required")
    for d in discriminators:
        if not isinstance(d, str) and not _is_int(d):
            raise InvalidArgumentError("discriminators must be strings or integers")
    if len(discriminators) == 1:
        return str(discriminators[0])
    encoded = json.dumps(list(discriminators), separators=(",", ":"))
    return hashlib.sha1(encoded.encode("utf-8")).hexdigest()


class Bucket:
    """A filling bucket rate limit.

    Holds no state of its own: every method is one round trip to the
    backend, so a Bucket can be built fresh wherever a check is needed.

    Attributes:
        key: Bucket identity
        fill_rate: Tokens restored per second
        capacity: Maximum tokens the bucket holds
    """

    def __init__(
        self,
        key: BucketKey,
        fill_rate: int,
        capacity: int,
        backend: "BucketBackend",
        key_prefix: Optional[str] = None,
    ) -> None:
        if isinstance(key, (list, tuple)):
            key = bucket_identity(*key)
        elif _is_int(key):
            key = str(key)
        if not isinstance(key, str) or not key:
            raise InvalidArgumentError("key must be a string, integer or a sequence of them")
        if not _is_int(fill_rate):
            raise InvalidArgumentError("fill_rate must be an integer")
        if not _is_int(capacity):
            raise InvalidArgumentError("capacity must be an integer")
        if fill_rate <= 0:
            raise InvalidArgumentError("fill_rate must be positive")
        if capacity <= 0:
            raise InvalidArgumentError("capacity must be positive")

        self.key = key
        self.fill_rate = fill_rate
        self.capacity = capacity
        self._backend = backend
        self._key_prefix = key_prefix or settings.bucket_key_prefix

    def __repr__(self) -> str:
        return f"Bucket(key={self.key!r}, fill_rate={self.fill_rate}, capacity={self.capacity})"

    @property
    def level_key(self) -> str:
        return f"{self._key_prefix}.{self.key}.level"

    @property
    def last_updated_key(self) -> str:
        return f"{self._key_prefix}.{self.key}.last_updated"

    async def inspect(self) -> BucketState:
        """Current state of the bucket. Never creates a record for a full bucket."""
        return await self._backend.run_transition(self, 0)

    async def empty(self) -> bool:
        return (await self.inspect()).empty

    async def full(self) -> bool:
        return (await self.inspect()).full

    async def drain(self, amount: int) -> BucketState:
        """Remove ``amount`` tokens from the bucket.

        The level may go below zero; draining more than is available is
        recorded as overdraft and must be refilled before the bucket is
        usable again.

        Raises:
            InvalidArgumentError: If amount is not a non-negative integer
        """
        if not _is_int(amount):
            raise InvalidArgumentError("drain amount must be an integer")
        if amount < 0:
            raise InvalidArgumentError("drain amount must be a positive number")
        return await self._backend.run_transition(self, amount)

    async def drain_timed(self, work: Callable[[], Any]) -> BucketState:
        """Run ``work`` and drain one token per millisecond it took.

        The drain happens exactly once, after ``work`` finishes. Work that
        raises still drains the time it spent; its exception is re-raised
        after the drain.

        Args:
            work: Zero-argument callable; a coroutine function or a plain one

        Returns:
            BucketState after the drain

        Raises:
            InvalidArgumentError: If work is not callable
        """
        if not callable(work):
            raise InvalidArgumentError("work must be callable")
        started = time.monotonic()
        try:
            result = work()
            if isawaitable(result):
                await result
        finally:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            state = await self.drain(elapsed_ms)
        return state

    async def throttle_check(self) -> BucketState:
        """Admission gate: return the state, or raise Throttled if empty.

        Raises:
            Throttled: If the bucket level is zero or below
        """
        state = await self.inspect()
        if state.empty:
            retry_in = compute_retry_in_seconds(state, settings.throttle_retry_margin_seconds)
            logger.info(
                f"Throttling bucket {self.key}, retry in {retry_in}s",
                extra=get_log_context(
                    bucket_key=self.key,
                    level=state.level,
                    capacity=state.capacity,
                    retry_in_seconds=retry_in,
                ),
            )
            raise Throttled(state, retry_in)
        return state
