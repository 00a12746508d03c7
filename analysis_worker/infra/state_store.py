"""
Pluggable keyed store for the worker's shared mutable state.

Dedup entries, rate-limit buckets, breaker counters and refund markers are
small JSON documents addressed by key. The in-memory store is correct for a
single consumer process; the Redis store shares the same state between
replicas.
"""

import json
import time
from typing import Any, Callable, Protocol

from analysis_worker.config.logging import get_logger
from analysis_worker.config.settings import Settings, StateStoreBackend

logger = get_logger(__name__)


class StateStore(Protocol):
    """Protocol for keyed JSON state backends."""

    async def get(self, key: str) -> dict[str, Any] | None:
        ...

    async def set(self, key: str, value: dict[str, Any], ttl_s: float | None = None) -> None:
        ...

    async def set_if_absent(
        self, key: str, value: dict[str, Any], ttl_s: float | None = None
    ) -> bool:
        """Atomically create `key`; return False when it already exists."""
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def scan(self, prefix: str) -> dict[str, dict[str, Any]]:
        """Return every entry whose key starts with `prefix`."""
        ...

    async def close(self) -> None:
        ...


class InMemoryStateStore:
    """Process-local store. Coroutines here never suspend, so each call is atomic."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: dict[str, tuple[dict[str, Any], float | None]] = {}

    def _live(self, key: str) -> dict[str, Any] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def _expiry(self, ttl_s: float | None) -> float | None:
        return self._clock() + ttl_s if ttl_s is not None else None

    async def get(self, key: str) -> dict[str, Any] | None:
        value = self._live(key)
        return dict(value) if value is not None else None

    async def set(self, key: str, value: dict[str, Any], ttl_s: float | None = None) -> None:
        self._data[key] = (dict(value), self._expiry(ttl_s))

    async def set_if_absent(
        self, key: str, value: dict[str, Any], ttl_s: float | None = None
    ) -> bool:
        if self._live(key) is not None:
            return False
        self._data[key] = (dict(value), self._expiry(ttl_s))
        return True

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def scan(self, prefix: str) -> dict[str, dict[str, Any]]:
        result = {}
        for key in [k for k in self._data if k.startswith(prefix)]:
            value = self._live(key)
            if value is not None:
                result[key] = dict(value)
        return result

    async def close(self) -> None:
        self._data.clear()


class RedisStateStore:
    """Redis-backed store shared by every consumer replica."""

    def __init__(self, client, namespace: str = "analysis_worker"):
        self._client = client
        self._namespace = namespace

    @classmethod
    def from_url(cls, url: str, namespace: str = "analysis_worker") -> "RedisStateStore":
        import redis.asyncio as redis

        return cls(redis.Redis.from_url(url, decode_responses=True), namespace)

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    @staticmethod
    def _px(ttl_s: float | None) -> int | None:
        return max(1, int(ttl_s * 1000)) if ttl_s is not None else None

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = await self._client.get(self._key(key))
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: dict[str, Any], ttl_s: float | None = None) -> None:
        await self._client.set(self._key(key), json.dumps(value), px=self._px(ttl_s))

    async def set_if_absent(
        self, key: str, value: dict[str, Any], ttl_s: float | None = None
    ) -> bool:
        created = await self._client.set(
            self._key(key), json.dumps(value), px=self._px(ttl_s), nx=True
        )
        return bool(created)

    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(self._key(key)))

    async def scan(self, prefix: str) -> dict[str, dict[str, Any]]:
        result = {}
        strip = len(self._namespace) + 1
        async for full_key in self._client.scan_iter(match=f"{self._key(prefix)}*"):
            raw = await self._client.get(full_key)
            if raw is not None:
                result[full_key[strip:]] = json.loads(raw)
        return result

    async def close(self) -> None:
        await self._client.aclose()


def create_state_store(settings: Settings) -> StateStore:
    """Build the configured state backend."""
    if settings.state_store_backend == StateStoreBackend.REDIS:
        logger.info("Using Redis state store", redis_url=settings.redis_url)
        return RedisStateStore.from_url(settings.redis_url)

    logger.info("Using in-memory state store")
    return InMemoryStateStore()
