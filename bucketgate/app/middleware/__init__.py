"""Middleware package for bucketgate."""

from bucketgate.app.middleware.rate_limit import (
    FillingBucketMiddleware,
    get_client_key,
    register_exception_handlers,
)

__all__ = [
    "FillingBucketMiddleware",
    "get_client_key",
    "register_exception_handlers",
]
