"""Storage backends for filling buckets.

RedisBucketBackend keeps bucket state in Redis and is safe across any number
of processes and machines. InMemoryBucketBackend keeps it in the current
process only; it is suitable for single-instance deployments and tests.
"""

import asyncio
import heapq
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, List, Optional, Tuple

import redis.asyncio as aioredis

from bucketgate.app.core.config import settings
from bucketgate.app.core.logging import get_log_context, get_logger
from bucketgate.app.services.filling_bucket.engine import compute_transition, decode_level
from bucketgate.app.services.filling_bucket.models import BucketState
from bucketgate.app.services.filling_bucket.redis_lua import FILL_BUCKET_SCRIPT
from bucketgate.app.services.filling_bucket.script_cache import ScriptCache

if TYPE_CHECKING:
    from bucketgate.app.services.filling_bucket.bucket import Bucket

logger = get_logger(__name__)


class BucketBackend(ABC):
    """Abstract base class for bucket backends."""

    @abstractmethod
    async def run_transition(self, bucket: "Bucket", amount: int) -> BucketState:
        """Refill the bucket for elapsed time and drain ``amount`` atomically.

        Args:
            bucket: Bucket to operate on
            amount: Tokens to drain, 0 to only inspect

        Returns:
            BucketState after the transition
        """
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass


class RedisBucketBackend(BucketBackend):
    """Bucket backend running FILL_BUCKET_SCRIPT on a Redis server.

    Accepts either a redis.asyncio client or a redis.asyncio connection pool.
    With a pool, one connection is checked out per script call and returned
    as soon as the call finishes, whether it succeeded or not.

    Network errors are raised as-is. A timed out call may still have been
    applied on the server, so it is never retried here.
    """

    def __init__(
        self,
        redis: Optional[Any] = None,
        redis_url: Optional[str] = None,
        ttl_slack: Optional[int] = None,
    ) -> None:
        """Initialize the Redis backend.

        Args:
            redis: redis.asyncio.Redis client or redis.asyncio.ConnectionPool
            redis_url: URL to connect to when no client is given
            ttl_slack: Seconds added to key TTLs (defaults to settings)
        """
        self._owns_client = redis is None
        if redis is None:
            redis = aioredis.from_url(
                redis_url or settings.redis_url,
                socket_timeout=settings.redis_socket_timeout,
            )
        if isinstance(redis, aioredis.ConnectionPool):
            self._pool: Optional[aioredis.ConnectionPool] = redis
            self._redis = None
        else:
            self._pool = None
            self._redis = redis
        self._ttl_slack = settings.bucket_ttl_slack_seconds if ttl_slack is None else ttl_slack
        self.script = ScriptCache(FILL_BUCKET_SCRIPT)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        """Yield a client for the duration of one script call."""
        if self._pool is None:
            yield self._redis
            return
        client = aioredis.Redis(connection_pool=self._pool, single_connection_client=True)
        try:
            yield client
        finally:
            await client.aclose()

    async def run_transition(self, bucket: "Bucket", amount: int) -> BucketState:
        async with self._connection() as client:
            result = await self.script.evaluate(
                client,
                keys=[bucket.level_key, bucket.last_updated_key],
                args=[bucket.capacity, bucket.fill_rate, amount, self._ttl_slack],
            )
        level_whole, level_micro, capacity, fill_rate, drained = result
        state = BucketState(
            level=decode_level(level_whole, level_micro),
            capacity=int(capacity),
            fill_rate=int(fill_rate),
            drained=int(drained),
        )
        logger.debug(
            "Bucket transition applied",
            extra=get_log_context(
                bucket_key=bucket.key,
                level=state.level,
                capacity=state.capacity,
                drained=state.drained,
            ),
        )
        return state

    async def close(self) -> None:
        """Close the Redis connection if this backend created it."""
        if self._owns_client and self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class InMemoryBucketBackend(BucketBackend):
    """Process-local bucket backend.

    Applies the same transition rules as the Lua script under an asyncio
    lock. Records expire like Redis keys would, so buckets that went idle
    do not pile up.

    Memory optimization:
    - Every transition first drops all records whose TTL has passed; expiry
      deadlines sit in a heap so only records that are due get touched
    - Limits max entries; the least recently written records are evicted
      first, and an evicted bucket starts over full
    """

    DEFAULT_MAX_ENTRIES = 100_000

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        ttl_slack: Optional[int] = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        """Initialize the in-memory backend.

        Args:
            clock: Wall clock in seconds, injectable for tests
            ttl_slack: Seconds added to record TTLs (defaults to settings)
            max_entries: Maximum number of records to keep (LRU eviction)
        """
        self._clock = clock
        self._ttl_slack = settings.bucket_ttl_slack_seconds if ttl_slack is None else ttl_slack
        self._max_entries = max_entries
        # level_key -> (level, last_updated, expires_at), least recently written first
        self._records: OrderedDict[str, Tuple[float, float, float]] = OrderedDict()
        # (expires_at, level_key); may still hold deadlines of overwritten records
        self._deadlines: List[Tuple[float, str]] = []
        self._lock = asyncio.Lock()

    def _get_record(self, key: str, now: float) -> Optional[Tuple[float, float, float]]:
        record = self._records.get(key)
        if record is not None and record[2] <= now:
            del self._records[key]
            return None
        return record

    def _purge_expired(self, now: float) -> int:
        """Drop every record whose deadline has passed."""
        removed = 0
        while self._deadlines and self._deadlines[0][0] <= now:
            _, key = heapq.heappop(self._deadlines)
            record = self._records.get(key)
            if record is not None and record[2] <= now:
                del self._records[key]
                removed += 1
        return removed

    def _store(self, key: str, record: Tuple[float, float, float]) -> None:
        self._records[key] = record
        self._records.move_to_end(key)
        heapq.heappush(self._deadlines, (record[2], key))

        if len(self._deadlines) > 2 * max(len(self._records), 1024):
            self._deadlines = [(r[2], k) for k, r in self._records.items()]
            heapq.heapify(self._deadlines)

        self._enforce_lru_limit()

    def _enforce_lru_limit(self) -> None:
        """Enforce max entries limit using LRU eviction."""
        if len(self._records) > self._max_entries:
            # Remove oldest 20% of entries
            remove_count = max(1, int(self._max_entries * 0.2))
            for _ in range(remove_count):
                self._records.popitem(last=False)
            logger.warning(
                f"In-memory bucket store over {self._max_entries} entries, "
                f"evicted {remove_count} least recently used"
            )

    def has_record(self, bucket: "Bucket") -> bool:
        """Whether state is currently stored for the bucket."""
        return self._get_record(bucket.level_key, self._clock()) is not None

    def ttl(self, bucket: "Bucket") -> Optional[float]:
        """Seconds until the bucket's record expires, None if there is none."""
        now = self._clock()
        record = self._get_record(bucket.level_key, now)
        if record is None:
            return None
        return record[2] - now

    async def run_transition(self, bucket: "Bucket", amount: int) -> BucketState:
        async with self._lock:
            now = self._clock()
            self._purge_expired(now)
            record = self._get_record(bucket.level_key, now)
            prior_level, prior_time = (record[0], record[1]) if record else (None, None)
            transition = compute_transition(
                prior_level,
                prior_time,
                now,
                bucket.capacity,
                bucket.fill_rate,
                amount,
                self._ttl_slack,
            )
            if transition.write:
                self._store(
                    bucket.level_key,
                    (transition.level, transition.now, now + transition.ttl),
                )
        return BucketState(
            level=transition.level,
            capacity=bucket.capacity,
            fill_rate=bucket.fill_rate,
            drained=amount,
        )

    async def cleanup(self) -> int:
        """Clean up expired records.

        Returns:
            Number of records removed
        """
        async with self._lock:
            now = self._clock()
            expired = [key for key, record in self._records.items() if record[2] <= now]
            for key in expired:
                del self._records[key]
            self._deadlines = [(r[2], k) for k, r in self._records.items()]
            heapq.heapify(self._deadlines)
            return len(expired)

    async def close(self) -> None:
        self._records.clear()
        self._deadlines.clear()
