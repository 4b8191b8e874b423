"""
Key-value storage for status snapshots, fleet summaries and job records.

Values are JSON strings. Both backends share the same semantics apart from
durability:

    MemoryStore   process-local dict, entries expire lazily on read
    RedisStore    redis.asyncio client, expiry via SET ... PX

Keys:
    status:<device_id>   StatusSnapshot
    fleet:<filter_key>   FleetSummary
    job:<job_id>         Job
"""
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis

log = logging.getLogger(__name__)


class KeyValueStore(ABC):

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value or None when missing or expired."""

    @abstractmethod
    async def put(self, key: str, value: str, ttl: Optional[float] = None):
        """Store value, replacing any previous one; ttl in seconds."""

    @abstractmethod
    async def delete(self, key: str):
        """Remove key if present."""

    async def close(self):
        pass


class MemoryStore(KeyValueStore):
    """In-memory store. Expired keys are dropped on read and swept from put
    at most once every sweep_interval seconds."""

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_interval: float = 60):
        self.clock = clock
        self.sweep_interval = sweep_interval
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._next_sweep = clock() + sweep_interval

    async def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires = entry
        if expires is not None and self.clock() >= expires:
            del self._data[key]
            return None
        return value

    async def put(self, key: str, value: str, ttl: Optional[float] = None):
        now = self.clock()
        if now >= self._next_sweep:
            self._sweep(now)
        expires = now + ttl if ttl is not None else None
        self._data[key] = (value, expires)

    def _sweep(self, now: float):
        expired = [k for k, (_, expires) in self._data.items() if expires is not None and now >= expires]
        for key in expired:
            del self._data[key]
        self._next_sweep = now + self.sweep_interval
        if expired:
            log.debug(f"Swept {len(expired)} expired key(s)")

    async def delete(self, key: str):
        self._data.pop(key, None)

    async def close(self):
        self._data.clear()

    def __len__(self):
        return len(self._data)


class RedisStore(KeyValueStore):
    """Redis backed store; survives process restarts."""

    def __init__(self, url: str = "redis://localhost:6379/0", prefix: str = "pyminerfleet:",
                 client: Optional[aioredis.Redis] = None):
        self.prefix = prefix
        self._client = client if client is not None else aioredis.Redis.from_url(url, decode_responses=True)

    def _key(self, key: str) -> str:
        return self.prefix + key

    async def get(self, key: str) -> Optional[str]:
        value = await self._client.get(self._key(key))
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def put(self, key: str, value: str, ttl: Optional[float] = None):
        px = max(1, int(ttl * 1000)) if ttl is not None else None
        await self._client.set(self._key(key), value, px=px)

    async def delete(self, key: str):
        await self._client.delete(self._key(key))

    async def close(self):
        await self._client.aclose()


def create_store(settings) -> KeyValueStore:
    """Pick the store backend from settings.redis_url."""
    if settings.redis_url:
        log.info("Using Redis store")
        return RedisStore(settings.redis_url)
    log.debug("Using in-memory store")
    return MemoryStore()
