"""Bucket creator: the entry point for setting up buckets."""

from typing import Any, Optional

from bucketgate.app.core.config import settings
from bucketgate.app.core.logging import get_logger
from bucketgate.app.services.filling_bucket.backends import (
    BucketBackend,
    InMemoryBucketBackend,
    RedisBucketBackend,
)
from bucketgate.app.services.filling_bucket.bucket import Bucket, BucketKey

logger = get_logger(__name__)


class BucketCreator:
    """Builds buckets bound to one backend.

    Example:
        >>> creator = BucketCreator(redis=redis.asyncio.from_url("redis://localhost"))
        >>> bucket = creator.setup_bucket(key="user42", fill_rate=600, capacity=4000)
        >>> await bucket.throttle_check()
    """

    def __init__(
        self,
        redis: Optional[Any] = None,
        backend: Optional[BucketBackend] = None,
    ) -> None:
        """Initialize the creator.

        Args:
            redis: redis.asyncio client or connection pool
            backend: Explicit backend, takes priority over ``redis``
        """
        if backend is None:
            if redis is None:
                raise ValueError("either redis or backend is required")
            backend = RedisBucketBackend(redis)
        self.backend = backend

    def setup_bucket(self, key: BucketKey, fill_rate: int, capacity: int) -> Bucket:
        """Create a bucket. Does not touch the store."""
        return Bucket(key, fill_rate, capacity, self.backend)

    async def close(self) -> None:
        await self.backend.close()


_bucket_creator: Optional[BucketCreator] = None


def get_bucket_creator(
    redis: Optional[Any] = None,
    backend: Optional[BucketBackend] = None,
) -> BucketCreator:
    """Get the global bucket creator instance.

    When no redis client or backend is given, a Redis backend is built from
    settings.redis_url if settings.redis_enabled, otherwise buckets are kept
    in process memory.
    """
    global _bucket_creator
    if _bucket_creator is None:
        if redis is None and backend is None:
            if settings.redis_enabled:
                backend = RedisBucketBackend(redis_url=settings.redis_url)
                logger.info("Using Redis bucket backend")
            else:
                backend = InMemoryBucketBackend()
                logger.info("Using in-memory bucket backend")
        _bucket_creator = BucketCreator(redis=redis, backend=backend)
    return _bucket_creator


def reset_bucket_creator() -> None:
    """Reset the global bucket creator instance."""
    global _bucket_creator
    _bucket_creator = None


def setup_bucket(key: BucketKey, fill_rate: int, capacity: int) -> Bucket:
    """Create a bucket on the global creator."""
    return get_bucket_creator().setup_bucket(key=key, fill_rate=fill_rate, capacity=capacity)
