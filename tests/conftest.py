"""Shared fixtures for bucketgate tests."""

import hashlib

import pytest
from redis.exceptions import NoScriptError

from bucketgate.app.services.filling_bucket import (
    BucketCreator,
    InMemoryBucketBackend,
    RedisBucketBackend,
    compute_transition,
    encode_level,
    reset_bucket_creator,
)


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """Async stand-in for redis.asyncio.Redis.

    Covers GET, TTL, SCRIPT LOAD, SCRIPT FLUSH and EVALSHA of the bucket
    script. The script itself is emulated with compute_transition, reading
    the time from the injected clock the way the real script reads TIME.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.data: dict[str, str] = {}
        self.expires: dict[str, float] = {}
        self.scripts: dict[str, str] = {}
        self.evalsha_calls = 0
        self.script_load_calls = 0

    def _live(self, key: str) -> bool:
        if key in self.expires and self.expires[key] <= self.clock():
            self.data.pop(key, None)
            self.expires.pop(key, None)
        return key in self.data

    async def get(self, key: str):
        if not self._live(key):
            return None
        return self.data[key].encode()

    async def ttl(self, key: str) -> int:
        if not self._live(key):
            return -2
        if key not in self.expires:
            return -1
        return round(self.expires[key] - self.clock())

    async def script_load(self, body: str) -> str:
        self.script_load_calls += 1
        sha = hashlib.sha1(body.encode("utf-8")).hexdigest()
        self.scripts[sha] = body
        return sha

    async def script_flush(self) -> bool:
        self.scripts.clear()
        return True

    async def evalsha(self, sha: str, numkeys: int, *args):
        self.evalsha_calls += 1
        if sha not in self.scripts:
            raise NoScriptError("No matching script. Please use EVAL.")
        level_key, last_updated_key = args[:numkeys]
        capacity, fill_rate, amount, ttl_slack = (int(a) for a in args[numkeys:])
        now = self.clock()

        prior_level = await self.get(level_key)
        prior_time = await self.get(last_updated_key)
        transition = compute_transition(
            float(prior_level) if prior_level is not None else None,
            float(prior_time) if prior_time is not None else None,
            now,
            capacity,
            fill_rate,
            amount,
            ttl_slack,
        )
        if transition.write:
            for key, value in ((level_key, transition.level), (last_updated_key, now)):
                self.data[key] = f"{value:.6f}"
                self.expires[key] = now + transition.ttl
        whole, micro = encode_level(transition.level)
        return [whole, micro, capacity, fill_rate, amount]

    async def aclose(self) -> None:
        pass


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset global state before each test."""
    reset_bucket_creator()
    yield
    reset_bucket_creator()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_backend(clock):
    return InMemoryBucketBackend(clock=clock, ttl_slack=1)


@pytest.fixture
def memory_creator(memory_backend):
    return BucketCreator(backend=memory_backend)


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def redis_creator(fake_redis):
    return BucketCreator(backend=RedisBucketBackend(fake_redis, ttl_slack=1))

