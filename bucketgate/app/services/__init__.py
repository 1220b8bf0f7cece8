"""Services package for bucketgate."""

from bucketgate.app.services.filling_bucket import (
    Bucket,
    BucketCreator,
    BucketState,
    get_bucket_creator,
    reset_bucket_creator,
    setup_bucket,
)

__all__ = [
    "Bucket",
    "BucketCreator",
    "BucketState",
    "get_bucket_creator",
    "reset_bucket_creator",
    "setup_bucket",
]
