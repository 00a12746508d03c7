"""
Token-bucket rate limiting.

Two independent layers share the same bucket arithmetic:

- admission limits (global per minute, per user per hour, per IP per hour)
  are a hard gate checked when a job is admitted;
- the provider gate smooths outbound inference calls, sleeping with
  exponential backoff until a token is available.

Buckets refill continuously: ``tokens += elapsed / window * capacity``,
clamped to ``capacity``. State lives in the shared state store so replicas
using the Redis backend see the same buckets.
"""

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from analysis_worker.config.logging import get_logger
from analysis_worker.config.settings import Settings
from analysis_worker.infra.state_store import StateStore
from analysis_worker.v1.core.exceptions import RateLimitedError

logger = get_logger(__name__)

T = TypeVar("T")

MINUTE = 60.0
HOUR = 3600.0


@dataclass
class TokenBucket:
    scope: str
    capacity: float
    window_s: float
    tokens: float
    last_refill: float

    @classmethod
    def full(cls, scope: str, capacity: float, window_s: float, now: float) -> "TokenBucket":
        return cls(scope, capacity, window_s, capacity, now)

    @classmethod
    def from_state(
        cls, scope: str, capacity: float, window_s: float, state: dict[str, Any]
    ) -> "TokenBucket":
        return cls(
            scope,
            capacity,
            window_s,
            min(capacity, max(0.0, float(state["tokens"]))),
            float(state["last_refill"]),
        )

    def to_state(self) -> dict[str, Any]:
        return {"tokens": self.tokens, "last_refill": self.last_refill}

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(
            self.capacity, self.tokens + elapsed / self.window_s * self.capacity
        )
        self.last_refill = now

    def retry_after(self) -> float:
        """Seconds until one whole token is available."""
        if self.tokens >= 1:
            return 0.0
        return (1 - self.tokens) / self.capacity * self.window_s

    def consume(self) -> None:
        self.tokens = max(0.0, self.tokens - 1)


@dataclass
class RateLimitDecision:
    allowed: bool
    scope: str | None = None
    retry_after_s: float = 0.0


class _BucketStore:
    """Loads and saves buckets under ``ratelimit:{scope}:{key}``."""

    def __init__(self, store: StateStore, clock: Callable[[], float]):
        self.store = store
        self.clock = clock

    async def load(self, scope: str, key: str, capacity: float, window_s: float) -> TokenBucket:
        now = self.clock()
        state = await self.store.get(self._key(scope, key))
        if state is None:
            bucket = TokenBucket.full(scope, capacity, window_s, now)
        else:
            bucket = TokenBucket.from_state(scope, capacity, window_s, state)
        bucket.refill(now)
        return bucket

    async def save(self, key: str, bucket: TokenBucket) -> None:
        # An idle bucket refills completely within one window, so it can expire
        await self.store.set(
            self._key(bucket.scope, key), bucket.to_state(), ttl_s=bucket.window_s
        )

    @staticmethod
    def _key(scope: str, key: str) -> str:
        return f"ratelimit:{scope}:{key}"


class AdmissionRateLimiter:
    """Hard admission gate across global, per-user and per-IP scopes."""

    def __init__(
        self,
        store: StateStore,
        global_per_minute: int = 100,
        user_per_hour: int = 5,
        ip_per_hour: int = 20,
        clock: Callable[[], float] = time.time,
    ):
        self.buckets = _BucketStore(store, clock)
        self.global_per_minute = global_per_minute
        self.user_per_hour = user_per_hour
        self.ip_per_hour = ip_per_hour
        self.throttled: dict[str, int] = {"global": 0, "user": 0, "ip": 0}
        self.admitted = 0

    @classmethod
    def from_settings(
        cls, settings: Settings, store: StateStore, clock: Callable[[], float] = time.time
    ) -> "AdmissionRateLimiter":
        return cls(
            store,
            global_per_minute=settings.rate_limit_global_per_minute,
            user_per_hour=settings.rate_limit_user_per_hour,
            ip_per_hour=settings.rate_limit_ip_per_hour,
            clock=clock,
        )

    def _scopes(self, user_id: str, ip: str | None) -> list[tuple[str, str, float, float]]:
        scopes = [
            ("global", "all", self.global_per_minute, MINUTE),
            ("user", user_id, self.user_per_hour, HOUR),
        ]
        if ip:
            scopes.append(("ip", ip, self.ip_per_hour, HOUR))
        return scopes

    async def check_and_consume(self, user_id: str, ip: str | None = None) -> RateLimitDecision:
        """Admit when every scope holds a whole token, consuming one from each."""
        loaded = []
        for scope, key, capacity, window in self._scopes(user_id, ip):
            bucket = await self.buckets.load(scope, key, capacity, window)
            if bucket.tokens < 1:
                self.throttled[scope] += 1
                retry_after = bucket.retry_after()
                logger.warning(
                    "Admission rate limit exceeded",
                    scope=scope,
                    user_id=user_id,
                    retry_after_s=round(retry_after, 3),
                )
                return RateLimitDecision(False, scope, retry_after)
            loaded.append((key, bucket))

        for key, bucket in loaded:
            bucket.consume()
            await self.buckets.save(key, bucket)

        self.admitted += 1
        return RateLimitDecision(True)

    async def tokens(self, user_id: str, ip: str | None = None) -> dict[str, float]:
        result = {}
        for scope, key, capacity, window in self._scopes(user_id, ip):
            bucket = await self.buckets.load(scope, key, capacity, window)
            result[scope] = bucket.tokens
        return result

    def stats(self) -> dict[str, Any]:
        return {
            "admitted": self.admitted,
            "throttled": dict(self.throttled),
            "limits": {
                "global_per_minute": self.global_per_minute,
                "user_per_hour": self.user_per_hour,
                "ip_per_hour": self.ip_per_hour,
            },
        }


class ProviderRateGate:
    """Waits for a provider token before each outbound inference call."""

    def __init__(
        self,
        store: StateStore,
        requests_per_minute: int = 15,
        max_attempts: int = 5,
        base_delay_s: float = 1.0,
        max_delay_s: float = 30.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ):
        self.buckets = _BucketStore(store, clock)
        self.requests_per_minute = requests_per_minute
        self.max_attempts = max_attempts
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self._sleep = sleep
        self._jitter = jitter
        self.throttled = 0
        self.rejected = 0
        self.executed = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: StateStore,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "ProviderRateGate":
        return cls(
            store,
            requests_per_minute=settings.inference_requests_per_minute,
            max_attempts=settings.inference_max_attempts,
            base_delay_s=settings.inference_base_delay_ms / 1000,
            max_delay_s=settings.inference_max_delay_ms / 1000,
            clock=clock,
            sleep=sleep,
        )

    async def acquire(self, job_id: str | None = None) -> None:
        """Take one provider token, sleeping between attempts."""
        for attempt in range(self.max_attempts):
            bucket = await self.buckets.load(
                "provider", "inference", self.requests_per_minute, MINUTE
            )
            if bucket.tokens >= 1:
                bucket.consume()
                await self.buckets.save("inference", bucket)
                return

            self.throttled += 1
            if attempt == self.max_attempts - 1:
                break

            backoff = self.base_delay_s * (2**attempt)
            delay = min(
                self.max_delay_s,
                max(bucket.retry_after(), backoff) + self._jitter() * self.base_delay_s,
            )
            logger.info(
                "Provider rate limit reached, waiting",
                job_id=job_id,
                attempt=attempt + 1,
                delay_s=round(delay, 3),
            )
            await self._sleep(delay)

        self.rejected += 1
        bucket = await self.buckets.load(
            "provider", "inference", self.requests_per_minute, MINUTE
        )
        raise RateLimitedError(
            "provider",
            bucket.retry_after(),
            f"Provider rate limit exceeded after {self.max_attempts} attempts",
        )

    async def execute(self, fn: Callable[[], Awaitable[T]], job_id: str | None = None) -> T:
        await self.acquire(job_id)
        self.executed += 1
        return await fn()

    async def stats(self) -> dict[str, Any]:
        bucket = await self.buckets.load(
            "provider", "inference", self.requests_per_minute, MINUTE
        )
        return {
            "requests_per_minute": self.requests_per_minute,
            "current_tokens": round(bucket.tokens, 3),
            "executed": self.executed,
            "throttled": self.throttled,
            "rejected": self.rejected,
        }
