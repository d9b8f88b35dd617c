#!/usr/bin/env python3
"""
Keyed TTL Store Module
Namespaced key/value and list storage with per-entry TTL.

Two backends share one async interface:
- MemoryKeyValueStore: process-local, expired entries are dropped on access
  and by a periodic sweep
- RedisKeyValueStore: external store using native key expiry, so state
  survives restarts and can be shared by several relay instances
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis

from .config import StoreSettings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    """Single stored value with optional absolute expiry"""
    data: Any
    timestamp: float
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass
class StoreStatistics:
    """Store access statistics"""
    hits: int = 0
    misses: int = 0
    updates: int = 0
    evictions: int = 0
    last_sweep: Optional[float] = None

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "updates": self.updates,
            "evictions": self.evictions,
            "hit_rate": f"{self.hit_rate:.1f}%",
            "last_sweep": datetime.fromtimestamp(self.last_sweep).isoformat() if self.last_sweep else None,
        }


class KeyValueStore:
    """Async interface implemented by every backend"""

    async def get(self, namespace: str, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set(self, namespace: str, key: str, value: Any, ttl: Optional[float] = None) -> None:
        raise NotImplementedError

    async def pop(self, namespace: str, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def delete(self, namespace: str, key: str) -> bool:
        raise NotImplementedError

    async def touch(self, namespace: str, key: str, ttl: Optional[float]) -> bool:
        raise NotImplementedError

    async def keys(self, namespace: str) -> List[str]:
        raise NotImplementedError

    async def push(self, namespace: str, key: str, item: Any, max_len: int, ttl: Optional[float] = None) -> int:
        raise NotImplementedError

    async def drain(self, namespace: str, key: str, limit: Optional[int] = None) -> List[Any]:
        raise NotImplementedError

    async def peek(self, namespace: str, key: str, limit: Optional[int] = None) -> List[Any]:
        raise NotImplementedError

    async def length(self, namespace: str, key: str) -> int:
        raise NotImplementedError

    async def trim_older_than(self, namespace: str, key: str, field: str, cutoff: float) -> int:
        """Atomically drop list items whose `field` is below `cutoff`; returns how many were dropped"""
        raise NotImplementedError

    async def sweep(self) -> int:
        return 0

    async def close(self) -> None:
        return None


class MemoryKeyValueStore(KeyValueStore):
    """In-process store. Values are kept as given; callers store plain JSON data."""

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self.stats = StoreStatistics()
        self.lock = asyncio.Lock()
        logger.info("MemoryKeyValueStore initialized")

    @staticmethod
    def _k(namespace: str, key: str) -> str:
        return f"{namespace}:{key}"

    def _live(self, full_key: str) -> Optional[CacheEntry]:
        """Return the entry if present and not expired; expired entries are evicted"""
        entry = self._entries.get(full_key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[full_key]
            self.stats.evictions += 1
            return None
        return entry

    def _expiry(self, ttl: Optional[float]) -> Optional[float]:
        return self._clock() + ttl if ttl is not None else None

    async def get(self, namespace, key):
        async with self.lock:
            entry = self._live(self._k(namespace, key))
            if entry is None:
                self.stats.misses += 1
                return None
            self.stats.hits += 1
            return entry.data

    async def set(self, namespace, key, value, ttl=None):
        async with self.lock:
            now = self._clock()
            self._entries[self._k(namespace, key)] = CacheEntry(
                data=value, timestamp=now, expires_at=self._expiry(ttl)
            )
            self.stats.updates += 1

    async def pop(self, namespace, key):
        async with self.lock:
            full_key = self._k(namespace, key)
            entry = self._live(full_key)
            if entry is None:
                self.stats.misses += 1
                return None
            del self._entries[full_key]
            self.stats.hits += 1
            return entry.data

    async def delete(self, namespace, key):
        async with self.lock:
            return self._entries.pop(self._k(namespace, key), None) is not None

    async def touch(self, namespace, key, ttl):
        async with self.lock:
            entry = self._live(self._k(namespace, key))
            if entry is None:
                return False
            entry.expires_at = self._expiry(ttl)
            return True

    async def keys(self, namespace):
        async with self.lock:
            prefix = f"{namespace}:"
            result = []
            for full_key in list(self._entries):
                if full_key.startswith(prefix) and self._live(full_key) is not None:
                    result.append(full_key[len(prefix):])
            return result

    async def push(self, namespace, key, item, max_len, ttl=None):
        async with self.lock:
            full_key = self._k(namespace, key)
            entry = self._live(full_key)
            if entry is None:
                entry = CacheEntry(data=[], timestamp=self._clock(), expires_at=self._expiry(ttl))
                self._entries[full_key] = entry
            elif ttl is not None:
                entry.expires_at = self._expiry(ttl)
            queue: List[Any] = entry.data
            while len(queue) >= max_len:
                queue.pop(0)
            queue.append(item)
            self.stats.updates += 1
            return len(queue)

    async def drain(self, namespace, key, limit=None):
        async with self.lock:
            entry = self._live(self._k(namespace, key))
            if entry is None:
                return []
            queue: List[Any] = entry.data
            count = len(queue) if limit is None else max(0, min(limit, len(queue)))
            taken = queue[:count]
            del queue[:count]
            return taken

    async def peek(self, namespace, key, limit=None):
        async with self.lock:
            entry = self._live(self._k(namespace, key))
            if entry is None:
                return []
            queue: List[Any] = entry.data
            return list(queue if limit is None else queue[:max(0, limit)])

    async def length(self, namespace, key):
        async with self.lock:
            entry = self._live(self._k(namespace, key))
            return len(entry.data) if entry is not None else 0

    async def trim_older_than(self, namespace, key, field, cutoff):
        async with self.lock:
            entry = self._live(self._k(namespace, key))
            if entry is None:
                return 0
            queue: List[Any] = entry.data
            fresh = [item for item in queue if item.get(field, cutoff) >= cutoff]
            removed = len(queue) - len(fresh)
            queue[:] = fresh
            return removed

    async def sweep(self):
        async with self.lock:
            now = self._clock()
            expired = [k for k, entry in self._entries.items() if entry.is_expired(now)]
            for full_key in expired:
                del self._entries[full_key]
            self.stats.evictions += len(expired)
            self.stats.last_sweep = now
            if expired:
                logger.debug(f"Swept {len(expired)} expired entries")
            return len(expired)


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store. Values are JSON encoded; expiry is native key TTL."""

    def __init__(self, redis_url: str, key_prefix: str = "relay", client: Optional[redis.Redis] = None):
        self.key_prefix = key_prefix
        self._redis = client or redis.from_url(redis_url, decode_responses=True)
        logger.info(f"RedisKeyValueStore using prefix '{key_prefix}'")

    def _k(self, namespace: str, key: str) -> str:
        return f"{self.key_prefix}:{namespace}:{key}"

    @staticmethod
    def _ms(ttl: Optional[float]) -> Optional[int]:
        return max(1, int(ttl * 1000)) if ttl is not None else None

    async def get(self, namespace, key):
        raw = await self._redis.get(self._k(namespace, key))
        return json.loads(raw) if raw is not None else None

    async def set(self, namespace, key, value, ttl=None):
        await self._redis.set(self._k(namespace, key), json.dumps(value), px=self._ms(ttl))

    async def pop(self, namespace, key):
        raw = await self._redis.getdel(self._k(namespace, key))
        return json.loads(raw) if raw is not None else None

    async def delete(self, namespace, key):
        return bool(await self._redis.delete(self._k(namespace, key)))

    async def touch(self, namespace, key, ttl):
        full_key = self._k(namespace, key)
        if ttl is None:
            return bool(await self._redis.persist(full_key)) or bool(await self._redis.exists(full_key))
        return bool(await self._redis.pexpire(full_key, self._ms(ttl)))

    async def keys(self, namespace):
        prefix = f"{self.key_prefix}:{namespace}:"
        return [k[len(prefix):] async for k in self._redis.scan_iter(match=f"{prefix}*")]

    async def push(self, namespace, key, item, max_len, ttl=None):
        full_key = self._k(namespace, key)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.rpush(full_key, json.dumps(item))
            pipe.ltrim(full_key, -max_len, -1)
            if ttl is not None:
                pipe.pexpire(full_key, self._ms(ttl))
            pipe.llen(full_key)
            results = await pipe.execute()
        return int(results[-1])

    async def drain(self, namespace, key, limit=None):
        full_key = self._k(namespace, key)
        async with self._redis.pipeline(transaction=True) as pipe:
            if limit is None:
                pipe.lrange(full_key, 0, -1)
                pipe.delete(full_key)
            else:
                if limit <= 0:
                    return []
                pipe.lrange(full_key, 0, limit - 1)
                pipe.ltrim(full_key, limit, -1)
            results = await pipe.execute()
        return [json.loads(raw) for raw in results[0]]

    async def peek(self, namespace, key, limit=None):
        end = -1 if limit is None else limit - 1
        if limit is not None and limit <= 0:
            return []
        raw_items = await self._redis.lrange(self._k(namespace, key), 0, end)
        return [json.loads(raw) for raw in raw_items]

    async def length(self, namespace, key):
        return int(await self._redis.llen(self._k(namespace, key)))

    async def trim_older_than(self, namespace, key, field, cutoff):
        full_key = self._k(namespace, key)

        async def trim(pipe) -> int:
            # runs under WATCH; a concurrent push makes EXEC fail and redis-py retries
            raw_items = await pipe.lrange(full_key, 0, -1)
            fresh = [raw for raw in raw_items if json.loads(raw).get(field, cutoff) >= cutoff]
            removed = len(raw_items) - len(fresh)
            if not removed:
                return 0
            ttl_ms = await pipe.pttl(full_key)
            pipe.multi()
            pipe.delete(full_key)
            if fresh:
                pipe.rpush(full_key, *fresh)
                if ttl_ms > 0:
                    pipe.pexpire(full_key, ttl_ms)
            return removed

        return await self._redis.transaction(trim, full_key, value_from_callable=True)

    async def close(self):
        await self._redis.aclose()


def create_store(settings: StoreSettings) -> KeyValueStore:
    """Build the configured backend"""
    if settings.backend == "redis":
        return RedisKeyValueStore(settings.redis_url, key_prefix=settings.key_prefix)
    return MemoryKeyValueStore()


SweepCallback = Callable[[], Awaitable[Any]]


class Sweeper:
    """Runs registered sweep callbacks on a fixed interval in a background task"""

    def __init__(self, interval: float = 60.0):
        self.interval = interval
        self._callbacks: List[tuple] = []
        self._task: Optional[asyncio.Task] = None

    def register(self, name: str, callback: SweepCallback):
        self._callbacks.append((name, callback))

    async def run_once(self) -> Dict[str, Any]:
        results = {}
        for name, callback in self._callbacks:
            try:
                results[name] = await callback()
            except Exception as e:
                logger.error(f"Sweep '{name}' failed: {e}")
                results[name] = None
        return results

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info(f"Sweeper started ({self.interval}s interval, {len(self._callbacks)} callbacks)")

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
