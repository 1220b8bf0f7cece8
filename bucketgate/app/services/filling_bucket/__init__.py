"""Filling bucket rate limiting backed by Redis.

A bucket holds up to ``capacity`` tokens and refills at ``fill_rate`` tokens
per second. Callers drain it as they do work and check it before starting
more. All state lives in Redis and every change runs as one Lua script, so
any number of processes can share a bucket without locks.
"""

from .backends import BucketBackend, InMemoryBucketBackend, RedisBucketBackend
from .bucket import Bucket, bucket_identity
from .creator import (
    BucketCreator,
    get_bucket_creator,
    reset_bucket_creator,
    setup_bucket,
)
from .engine import Transition, bucket_ttl, compute_transition, decode_level, encode_level
from .models import BucketState
from .redis_lua import FILL_BUCKET_SCRIPT, FILL_BUCKET_SCRIPT_SHA
from .script_cache import ScriptCache

__all__ = [
    "BucketState",
    "Bucket",
    "bucket_identity",
    "BucketBackend",
    "InMemoryBucketBackend",
    "RedisBucketBackend",
    "BucketCreator",
    "get_bucket_creator",
    "reset_bucket_creator",
    "setup_bucket",
    "Transition",
    "bucket_ttl",
    "compute_transition",
    "encode_level",
    "decode_level",
    "FILL_BUCKET_SCRIPT",
    "FILL_BUCKET_SCRIPT_SHA",
    "ScriptCache",
]
