"""
Shared fixtures for the EdgeCache test suite.
"""
import fnmatch
import os

os.environ.setdefault("TESTING", "1")
os.environ.pop("REDIS_URL", None)

import pytest

from edgecache.shared.caching.cache_manager import CacheConfig, ResponseCacheStore


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePipeline:
    """Queues commands and applies them in order on execute().

    After watch() commands run immediately until multi() is called.
    """

    def __init__(self, redis):
        self.redis = redis
        self.commands = []
        self.immediate = False

    async def watch(self, *names):
        self.immediate = True

    def multi(self):
        self.immediate = False

    def __getattr__(self, name):
        method = getattr(self.redis, name)
        if self.immediate:
            return method

        def queue(*args, **kwargs):
            self.commands.append((method, args, kwargs))
            return self

        return queue

    async def execute(self):
        results = []
        for method, args, kwargs in self.commands:
            results.append(await method(*args, **kwargs))
        self.commands = []
        return results


class FakeRedis:
    """In-memory double of the redis.asyncio commands the store uses."""

    def __init__(self):
        self.values = {}
        self.sets = {}
        self.ttls = {}

    async def ping(self):
        return True

    async def get(self, name):
        return self.values.get(name)

    async def set(self, name, value, ex=None):
        self.values[name] = value
        self.ttls[name] = ex
        return True

    async def delete(self, *names):
        deleted = 0
        for name in names:
            if name in self.values:
                del self.values[name]
                deleted += 1
            elif name in self.sets:
                del self.sets[name]
                deleted += 1
            self.ttls.pop(name, None)
        return deleted

    async def smembers(self, name):
        return set(self.sets.get(name, set()))

    async def sadd(self, name, *values):
        members = self.sets.setdefault(name, set())
        before = len(members)
        members.update(values)
        return len(members) - before

    async def srem(self, name, *values):
        members = self.sets.get(name, set())
        removed = len(members & set(values))
        members.difference_update(values)
        if not members:
            self.sets.pop(name, None)
        return removed

    async def expire(self, name, time, nx=False, xx=False, gt=False, lt=False):
        self.ttls[name] = time
        return True

    async def scan_iter(self, match=None, count=None):
        for name in list(self.values) + list(self.sets):
            if match is None or fnmatch.fnmatchcase(name, match):
                yield name

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def transaction(self, func, *watches, value_from_callable=False):
        pipe = self.pipeline()
        await pipe.watch(*watches)
        value = await func(pipe)
        results = await pipe.execute()
        return value if value_from_callable else results

    async def aclose(self):
        return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache_config():
    return CacheConfig(default_ttl=300, max_entries=100, cleanup_interval=0)


@pytest.fixture
def store(cache_config, clock):
    return ResponseCacheStore(cache_config, clock=clock)


@pytest.fixture
def fake_redis():
    return FakeRedis()
