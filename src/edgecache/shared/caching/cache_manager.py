"""
Tag-aware response cache store for EdgeCache.

Provides a thread-safe in-memory store with TTL expiry, LRU bounding and a
tag index, an optional Redis backend with the same contract, and the
ResponseCacheStore facade that the HTTP layer talks to. The facade never
raises cache-layer errors: a failing Redis degrades to the memory store.
"""

import asyncio
import base64
import fnmatch
import json
import threading
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import (
    Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple, TypeVar,
)

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..config import Settings, get_settings
from ..errors import CacheBackendError, CacheEntryCorruptError
from ..logging_config import get_logger

T = TypeVar('T')

# Tag sets outlive the entries they index by this many seconds.
TAG_TTL_BUFFER = 60


@dataclass
class CacheConfig:
    """Cache store configuration."""
    default_ttl: int = 300
    max_entries: int = 10000
    cleanup_interval: int = 120

    # Redis settings; no URL means memory only
    redis_url: Optional[str] = None
    redis_key_prefix: str = "edgecache:"
    redis_timeout: int = 5
    redis_max_connections: int = 10

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CacheConfig":
        settings = settings or get_settings()
        return cls(
            default_ttl=settings.cache.cache_default_ttl,
            max_entries=settings.cache.cache_max_entries,
            cleanup_interval=settings.cache.cache_cleanup_interval_seconds,
            redis_url=settings.redis.redis_url,
            redis_key_prefix=settings.redis.redis_key_prefix,
            redis_timeout=settings.redis.redis_timeout,
            redis_max_connections=settings.redis.redis_pool_size,
        )


@dataclass
class CacheEntry:
    """Cache entry with metadata."""
    key: str
    value: Any
    expires_at: float
    created_at: float
    tags: FrozenSet[str] = field(default_factory=frozenset)
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def touch(self):
        self.access_count += 1


@dataclass
class CachedResponse:
    """A captured HTTP response, replayable verbatim."""
    status_code: int
    body: bytes
    media_type: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status_code': self.status_code,
            'body': base64.b64encode(self.body).decode('ascii'),
            'media_type': self.media_type,
            'headers': self.headers,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedResponse":
        return cls(
            status_code=int(data['status_code']),
            body=base64.b64decode(data['body']),
            media_type=data.get('media_type'),
            headers=dict(data.get('headers') or {}),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "CachedResponse":
        return cls.from_dict(json.loads(raw))


def encode_value(value: Any) -> str:
    """Serialize a cache value for remote storage."""
    if isinstance(value, CachedResponse):
        return json.dumps({'kind': 'response', 'value': value.to_dict()})
    return json.dumps({'kind': 'json', 'value': value}, default=str)


def decode_value(raw: str) -> Any:
    """Deserialize a remote cache value."""
    try:
        document = json.loads(raw)
        if document['kind'] == 'response':
            return CachedResponse.from_dict(document['value'])
        if document['kind'] == 'json':
            return document['value']
    except (TypeError, ValueError, KeyError) as exc:
        raise CacheEntryCorruptError("Stored cache entry could not be decoded") from exc
    raise CacheEntryCorruptError(f"Unknown cache entry kind: {document.get('kind')}")


class MemoryTagStore:
    """Thread-safe LRU store with TTL expiry and a tag index."""

    def __init__(self, max_size: int = 10000, clock: Callable[[], float] = time.monotonic):
        self.max_size = max_size
        self.clock = clock
        self.entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.tag_index: Dict[str, Set[str]] = {}
        self.lock = threading.RLock()
        self.stats = {
            'evictions': 0,
            'expirations': 0,
        }

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache; expired entries are removed on access."""
        with self.lock:
            entry = self.entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self.clock()):
                self._remove(key)
                self.stats['expirations'] += 1
                return None

            self.entries.move_to_end(key)
            entry.touch()
            return entry.value

    def set(self, key: str, value: Any, ttl: int, tags: Iterable[str] = ()) -> None:
        """Store or overwrite an entry, reconciling the tag index."""
        new_tags = frozenset(tags)
        with self.lock:
            now = self.clock()
            previous = self.entries.get(key)
            if previous is not None:
                for tag in previous.tags - new_tags:
                    self._unindex(tag, key)

            self.entries[key] = CacheEntry(
                key=key,
                value=value,
                expires_at=now + ttl,
                created_at=now,
                tags=new_tags,
            )
            self.entries.move_to_end(key)
            for tag in new_tags:
                self.tag_index.setdefault(tag, set()).add(key)

            while len(self.entries) > self.max_size:
                oldest_key = next(iter(self.entries))
                self._remove(oldest_key)
                self.stats['evictions'] += 1

    def delete(self, key: str) -> bool:
        with self.lock:
            if key in self.entries:
                self._remove(key)
                return True
            return False

    def clear_by_tags(self, tags: Iterable[str]) -> int:
        """Delete every key indexed under any of the tags; returns distinct keys deleted."""
        with self.lock:
            keys: Set[str] = set()
            for tag in tags:
                keys |= self.tag_index.get(tag, set())
            for key in keys:
                self._remove(key)
            return len(keys)

    def clear_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob pattern (`*` also matches `/`)."""
        with self.lock:
            keys = [key for key in self.entries if fnmatch.fnmatchcase(key, pattern)]
            for key in keys:
                self._remove(key)
            return len(keys)

    def clear(self) -> int:
        with self.lock:
            size = len(self.entries)
            self.entries.clear()
            self.tag_index.clear()
            return size

    def purge_expired(self) -> int:
        """Proactively remove expired entries."""
        with self.lock:
            now = self.clock()
            expired = [key for key, entry in self.entries.items() if entry.is_expired(now)]
            for key in expired:
                self._remove(key)
            self.stats['expirations'] += len(expired)
            return len(expired)

    def keys_for_tag(self, tag: str) -> Set[str]:
        with self.lock:
            return set(self.tag_index.get(tag, set()))

    def __len__(self) -> int:
        with self.lock:
            return len(self.entries)

    def _remove(self, key: str) -> None:
        entry = self.entries.pop(key, None)
        if entry is None:
            return
        for tag in entry.tags:
            self._unindex(tag, key)

    def _unindex(self, tag: str, key: str) -> None:
        keys = self.tag_index.get(tag)
        if keys is None:
            return
        keys.discard(key)
        if not keys:
            del self.tag_index[tag]

    def get_stats(self) -> Dict[str, Any]:
        with self.lock:
            return {
                **self.stats,
                'entries': len(self.entries),
                'tags': len(self.tag_index),
                'max_size': self.max_size,
            }


class RedisTagStore:
    """Redis-based store with the same contract as MemoryTagStore.

    Layout under the key prefix:
        entry:<key>   serialized value with a Redis TTL
        tag:<tag>     set of keys carrying the tag
        tagsof:<key>  set of tags of the key, for reconciling on overwrite
    """

    def __init__(self, config: CacheConfig, client: Optional[Redis] = None):
        self.config = config
        self.redis_client: Optional[Redis] = client
        self.logger = get_logger(__name__, 'redis_cache')
        self.prefix = config.redis_key_prefix

    async def connect(self) -> None:
        """Connect to Redis and verify the connection."""
        try:
            if self.redis_client is None:
                self.redis_client = redis.from_url(
                    self.config.redis_url,
                    decode_responses=True,
                    socket_timeout=self.config.redis_timeout,
                    socket_connect_timeout=self.config.redis_timeout,
                    max_connections=self.config.redis_max_connections,
                )
            await self.redis_client.ping()
            self.logger.info("Connected to Redis successfully", operation="connect")
        except (RedisError, OSError, ValueError) as exc:
            raise CacheBackendError(f"Failed to connect to Redis: {exc}") from exc

    async def disconnect(self) -> None:
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None
            self.logger.info("Disconnected from Redis", operation="disconnect")

    async def ping(self) -> bool:
        if self.redis_client is None:
            return False
        try:
            return bool(await self.redis_client.ping())
        except (RedisError, OSError):
            return False

    def _client(self) -> Redis:
        if self.redis_client is None:
            raise CacheBackendError("Redis client is not connected")
        return self.redis_client

    def _entry_key(self, key: str) -> str:
        return f"{self.prefix}entry:{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self.prefix}tag:{tag}"

    def _tagsof_key(self, key: str) -> str:
        return f"{self.prefix}tagsof:{key}"

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._client().get(self._entry_key(key))
        except (RedisError, OSError) as exc:
            raise CacheBackendError(f"Redis get failed: {exc}") from exc
        if raw is None:
            return None
        return decode_value(raw)

    async def set(self, key: str, value: Any, ttl: int, tags: Iterable[str] = ()) -> None:
        new_tags = set(tags)
        payload = encode_value(value)
        reverse_key = self._tagsof_key(key)
        tag_ttl = ttl + TAG_TTL_BUFFER

        async def write(pipe) -> None:
            # Runs under WATCH on the reverse set and is retried if that set changes
            old_tags = set(await pipe.smembers(reverse_key))
            pipe.multi()
            for tag in old_tags - new_tags:
                pipe.srem(self._tag_key(tag), key)
            pipe.set(self._entry_key(key), payload, ex=ttl)
            pipe.delete(reverse_key)
            if new_tags:
                pipe.sadd(reverse_key, *new_tags)
                pipe.expire(reverse_key, tag_ttl)
                for tag in new_tags:
                    tag_key = self._tag_key(tag)
                    pipe.sadd(tag_key, key)
                    # Never shorten a tag set shared with a longer-lived entry
                    pipe.expire(tag_key, tag_ttl, nx=True)
                    pipe.expire(tag_key, tag_ttl, gt=True)

        try:
            await self._client().transaction(write, reverse_key)
        except (RedisError, OSError) as exc:
            raise CacheBackendError(f"Redis set failed: {exc}") from exc

    async def delete(self, key: str) -> bool:
        return await self._purge_keys({key}) > 0

    async def clear_by_tags(self, tags: Iterable[str]) -> int:
        memberships: Dict[str, Set[str]] = {}
        try:
            client = self._client()
            for tag in set(tags):
                for key in await client.smembers(self._tag_key(tag)):
                    memberships.setdefault(key, set()).add(tag)
        except (RedisError, OSError) as exc:
            raise CacheBackendError(f"Redis tag lookup failed: {exc}") from exc
        return await self._purge_keys(set(memberships), memberships)

    async def clear_pattern(self, pattern: str) -> int:
        entry_prefix = self._entry_key('')
        try:
            keys = {
                raw[len(entry_prefix):]
                async for raw in self._client().scan_iter(match=f"{entry_prefix}{pattern}", count=100)
            }
        except (RedisError, OSError) as exc:
            raise CacheBackendError(f"Redis scan failed: {exc}") from exc
        return await self._purge_keys(keys)

    async def clear(self) -> int:
        entry_prefix = self._entry_key('')
        deleted = 0
        try:
            client = self._client()
            batch: List[str] = []
            async for raw in client.scan_iter(match=f"{self.prefix}*", count=100):
                if raw.startswith(entry_prefix):
                    deleted += 1
                batch.append(raw)
                if len(batch) >= 100:
                    await client.delete(*batch)
                    batch = []
            if batch:
                await client.delete(*batch)
        except (RedisError, OSError) as exc:
            raise CacheBackendError(f"Redis clear failed: {exc}") from exc
        return deleted

    async def _purge_keys(self, keys: Set[str], memberships: Optional[Dict[str, Set[str]]] = None) -> int:
        """Delete entries and every index reference to them.

        Tag sets lose only the purged keys, never whole sets: a key tagged
        after the members were read keeps its membership.
        """
        if not keys:
            return 0
        memberships = memberships or {}
        try:
            client = self._client()
            tags_of: Dict[str, Set[str]] = {}
            for key in keys:
                tags_of[key] = set(await client.smembers(self._tagsof_key(key))) | memberships.get(key, set())

            pipe = client.pipeline(transaction=True)
            ordered = sorted(keys)
            for key in ordered:
                pipe.delete(self._entry_key(key))
            for key in ordered:
                pipe.delete(self._tagsof_key(key))
                for tag in tags_of[key]:
                    pipe.srem(self._tag_key(tag), key)
            results = await pipe.execute()
        except (RedisError, OSError) as exc:
            raise CacheBackendError(f"Redis delete failed: {exc}") from exc
        return sum(1 for result in results[:len(ordered)] if result)


class ResponseCacheStore:
    """Cache store facade used by the HTTP layer.

    Serves from Redis when configured and healthy, from the memory store
    otherwise. Counts hits, misses, sets and invalidations, and serializes
    concurrent fills of the same key.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        redis_client: Optional[Redis] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CacheConfig()
        self.logger = get_logger(__name__, 'cache_store')
        self.memory = MemoryTagStore(self.config.max_entries, clock=clock)

        self.remote: Optional[RedisTagStore] = None
        if self.config.redis_url or redis_client is not None:
            self.remote = RedisTagStore(self.config, client=redis_client)
        self.remote_healthy = False

        # Invalidations issued while degraded, replayed against Redis on recovery
        self._pending_tags: Set[str] = set()
        self._pending_clear_all = False

        self._fill_locks: Dict[str, List[Any]] = {}

        self.running = False
        self.sweeper_task: Optional[asyncio.Task] = None

        self.metrics = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'invalidations': 0,
            'errors': 0,
        }

    @property
    def backend(self) -> str:
        return 'redis' if self._use_remote() else 'memory'

    @property
    def degraded(self) -> bool:
        return self.remote is not None and not self.remote_healthy

    async def initialize(self) -> None:
        """Connect the remote backend (if any) and start the expiry sweeper."""
        if self.remote is not None:
            try:
                await self.remote.connect()
                self.remote_healthy = True
            except CacheBackendError as exc:
                self._mark_degraded('initialize', exc)

        if self.config.cleanup_interval > 0 and not self.running:
            self.running = True
            self.sweeper_task = asyncio.create_task(self._sweeper_worker())

        self.logger.info("Cache store initialized", operation="initialize", backend=self.backend)

    async def shutdown(self) -> None:
        """Stop the sweeper and disconnect the remote backend."""
        self.running = False
        if self.sweeper_task:
            self.sweeper_task.cancel()
            try:
                await self.sweeper_task
            except asyncio.CancelledError:
                pass
            self.sweeper_task = None

        if self.remote is not None:
            try:
                await self.remote.disconnect()
            except (RedisError, OSError) as exc:
                self.logger.warning("Error disconnecting from Redis", operation="shutdown", error=str(exc))
        self.remote_healthy = False
        self.logger.info("Cache store shutdown completed", operation="shutdown")

    def _use_remote(self) -> bool:
        return self.remote is not None and self.remote_healthy

    def _mark_degraded(self, operation: str, exc: Exception) -> None:
        self.metrics['errors'] += 1
        if self.remote_healthy or operation == 'initialize':
            self.logger.error(
                "Remote cache unavailable, falling back to memory store",
                operation=operation,
                error=str(exc),
            )
        self.remote_healthy = False

    async def _read(self, key: str) -> Optional[Any]:
        """Read without touching the hit/miss counters."""
        if self._use_remote():
            try:
                return await self.remote.get(key)
            except CacheEntryCorruptError as exc:
                self.metrics['errors'] += 1
                self.logger.warning("Discarding corrupt cache entry", operation="get", key=key, error=str(exc))
                await self.delete(key)
                return None
            except CacheBackendError as exc:
                self._mark_degraded('get', exc)
        return self.memory.get(key)

    async def get(self, key: str) -> Optional[Any]:
        """Get a value; None means not found (never set, expired or unreadable)."""
        value = await self._read(key)
        if value is None:
            self.metrics['misses'] += 1
            self.logger.debug("Cache miss", operation="get", key=key)
        else:
            self.metrics['hits'] += 1
            self.logger.debug("Cache hit", operation="get", key=key)
        return value

    async def lookup(self, key: str) -> Tuple[Optional[Any], bool]:
        """Get a value as a (value, found) pair."""
        value = await self.get(key)
        return value, value is not None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None, tags: Iterable[str] = ()) -> bool:
        """Store a value, replacing its TTL and tags."""
        if value is None:
            raise ValueError("None cannot be cached")
        if ttl is None:
            ttl = self.config.default_ttl
        if ttl <= 0:
            raise ValueError("TTL must be a positive number of seconds")
        tags = frozenset(tags)

        if self._use_remote():
            try:
                await self.remote.set(key, value, ttl, tags)
                self.metrics['sets'] += 1
                self.logger.debug("Cache set", operation="set", key=key, ttl=ttl, tags=sorted(tags))
                return True
            except CacheBackendError as exc:
                self._mark_degraded('set', exc)

        self.memory.set(key, value, ttl, tags)
        self.metrics['sets'] += 1
        self.logger.debug("Cache set", operation="set", key=key, ttl=ttl, tags=sorted(tags))
        return True

    async def delete(self, key: str) -> bool:
        deleted = self.memory.delete(key)
        if self._use_remote():
            try:
                deleted = await self.remote.delete(key) or deleted
            except CacheBackendError as exc:
                self._mark_degraded('delete', exc)
        return deleted

    async def clear_by_tags(self, tags: Iterable[str]) -> int:
        """Delete every entry carrying any of the tags; returns distinct entries deleted."""
        tags = set(tags)
        if not tags:
            return 0

        cleared = self.memory.clear_by_tags(tags)
        if self._use_remote():
            try:
                cleared = max(cleared, await self.remote.clear_by_tags(tags))
            except CacheBackendError as exc:
                self._mark_degraded('clear_by_tags', exc)
                self._pending_tags |= tags
        elif self.remote is not None:
            self._pending_tags |= tags

        self.metrics['invalidations'] += cleared
        self.logger.info("Cache tags invalidated", operation="clear_by_tags",
                         tags=sorted(tags), keys_deleted=cleared)
        return cleared

    async def clear_pattern(self, pattern: str) -> int:
        """Delete entries whose key matches a glob pattern."""
        cleared = self.memory.clear_pattern(pattern)
        if self._use_remote():
            try:
                cleared = max(cleared, await self.remote.clear_pattern(pattern))
            except CacheBackendError as exc:
                self._mark_degraded('clear_pattern', exc)

        self.metrics['invalidations'] += cleared
        self.logger.info("Cache pattern invalidated", operation="clear_pattern",
                         pattern=pattern, keys_deleted=cleared)
        return cleared

    async def clear_all(self) -> int:
        """Empty the store and its tag index."""
        cleared = self.memory.clear()
        if self._use_remote():
            try:
                cleared = max(cleared, await self.remote.clear())
            except CacheBackendError as exc:
                self._mark_degraded('clear_all', exc)
                self._pending_clear_all = True
        elif self.remote is not None:
            self._pending_clear_all = True

        self.logger.info("Cache cleared", operation="clear_all", keys_deleted=cleared)
        return cleared

    @asynccontextmanager
    async def _fill_lock(self, key: str):
        slot = self._fill_locks.get(key)
        if slot is None:
            slot = self._fill_locks[key] = [asyncio.Lock(), 0]
        slot[1] += 1
        try:
            async with slot[0]:
                yield
        finally:
            slot[1] -= 1
            if slot[1] == 0:
                del self._fill_locks[key]

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
        ttl: Optional[int] = None,
        tags: Iterable[str] = (),
        cacheable: Optional[Callable[[T], bool]] = None,
        accept: Optional[Callable[[Any], bool]] = None,
    ) -> Tuple[T, bool]:
        """Return (value, hit). Concurrent callers for one key wait for the first fill.

        `cacheable` decides whether a computed value is stored; `accept`
        rejects stored values of the wrong shape, which are then recomputed
        and overwritten.
        """
        async with self._fill_lock(key):
            value = await self._read(key)
            if value is not None and accept is not None and not accept(value):
                self.metrics['errors'] += 1
                self.logger.warning("Discarding malformed cache entry", operation="get_or_compute", key=key)
                value = None

            if value is not None:
                self.metrics['hits'] += 1
                return value, True

            self.metrics['misses'] += 1
            value = await compute()
            if cacheable is None or cacheable(value):
                await self.set(key, value, ttl, tags)
            return value, False

    async def purge_expired(self) -> int:
        purged = self.memory.purge_expired()
        if purged:
            self.logger.debug("Memory cache cleanup", operation="purge_expired", entries_removed=purged)
        return purged

    async def _recover_remote(self) -> None:
        """Reconnect a degraded Redis and replay invalidations it missed."""
        if not self.degraded:
            return
        try:
            if not await self.remote.ping():
                await self.remote.connect()
            if self._pending_clear_all:
                await self.remote.clear()
            elif self._pending_tags:
                await self.remote.clear_by_tags(self._pending_tags)
        except CacheBackendError as exc:
            self.logger.warning("Remote cache recovery failed", operation="recover", error=str(exc))
            return

        self._pending_clear_all = False
        self._pending_tags = set()
        # Entries written while degraded may since have been invalidated only in Redis
        self.memory.clear()
        self.remote_healthy = True
        self.logger.info("Remote cache recovered", operation="recover")

    async def _sweeper_worker(self) -> None:
        """Background worker purging expired entries."""
        while self.running:
            try:
                await asyncio.sleep(self.config.cleanup_interval)
                await self.purge_expired()
                if self.remote is not None:
                    await self._recover_remote()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in cache sweeper: {e}", operation="sweeper")

    def reset_metrics(self) -> None:
        for name in self.metrics:
            self.metrics[name] = 0

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total_requests = self.metrics['hits'] + self.metrics['misses']
        hit_rate = self.metrics['hits'] / total_requests if total_requests > 0 else 0

        return {
            **self.metrics,
            'hit_rate': hit_rate,
            'total_requests': total_requests,
            'backend': self.backend,
            'degraded': self.degraded,
            'entries': len(self.memory),
            'memory': self.memory.get_stats(),
        }


def create_cache_store(settings: Optional[Settings] = None) -> ResponseCacheStore:
    """Build a store from application settings."""
    return ResponseCacheStore(CacheConfig.from_settings(settings))
