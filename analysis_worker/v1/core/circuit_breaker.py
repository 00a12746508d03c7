"""
Circuit breaker and classified retry around downstream dependencies.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from analysis_worker.config.logging import get_logger
from analysis_worker.config.settings import Settings
from analysis_worker.infra.state_store import StateStore
from analysis_worker.v1.core.exceptions import (
    DownstreamUnavailableError,
    is_retryable_error,
)

logger = get_logger(__name__)

T = TypeVar("T")


class BreakerStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    CLOSED: calls pass; ``threshold`` consecutive failures open the circuit.
    OPEN: calls are rejected locally until ``cooldown_s`` has elapsed since the
    last failure, after which calls are let through as trials (HALF_OPEN).
    ``recovery_successes`` consecutive trial successes close the circuit; any
    trial failure re-opens it and restarts the cooldown.

    Counters live in the state store under ``breaker:{name}``.
    """

    def __init__(
        self,
        name: str,
        store: StateStore,
        threshold: int = 5,
        cooldown_s: float = 60.0,
        recovery_successes: int = 3,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.store = store
        self.threshold = threshold
        self.cooldown_s = cooldown_s
        self.recovery_successes = recovery_successes
        self._clock = clock
        self._key = f"breaker:{name}"
        self.rejected_calls = 0

    @classmethod
    def from_settings(
        cls,
        name: str,
        settings: Settings,
        store: StateStore,
        clock: Callable[[], float] = time.time,
    ) -> "CircuitBreaker":
        return cls(
            name,
            store,
            threshold=settings.breaker_failure_threshold,
            cooldown_s=settings.breaker_cooldown_s,
            recovery_successes=settings.breaker_recovery_successes,
            clock=clock,
        )

    async def _load(self) -> dict[str, Any]:
        state = await self.store.get(self._key)
        if state is None:
            state = {
                "status": BreakerStatus.CLOSED.value,
                "failure_count": 0,
                "success_count": 0,
                "last_failure_time": None,
            }
        return state

    async def _save(self, state: dict[str, Any]) -> None:
        await self.store.set(self._key, state)

    async def before_call(self) -> None:
        """Raise DownstreamUnavailableError while the circuit is open."""
        state = await self._load()
        if state["status"] == BreakerStatus.CLOSED.value:
            return

        now = self._clock()
        remaining = state["last_failure_time"] + self.cooldown_s - now
        if state["status"] == BreakerStatus.OPEN.value and remaining > 0:
            self.rejected_calls += 1
            raise DownstreamUnavailableError(self.name, remaining)

        if state["status"] == BreakerStatus.OPEN.value:
            state["status"] = BreakerStatus.HALF_OPEN.value
            state["success_count"] = 0
            await self._save(state)
            logger.info("Circuit breaker entering trial mode", breaker=self.name)

    async def record_success(self) -> None:
        state = await self._load()
        if state["status"] == BreakerStatus.HALF_OPEN.value:
            state["success_count"] += 1
            if state["success_count"] >= self.recovery_successes:
                state.update(
                    status=BreakerStatus.CLOSED.value,
                    failure_count=0,
                    success_count=0,
                    last_failure_time=None,
                )
                logger.info("Circuit breaker closed", breaker=self.name)
        elif state["status"] == BreakerStatus.CLOSED.value:
            if state["failure_count"] == 0:
                return
            state["failure_count"] = 0
        await self._save(state)

    async def record_failure(self) -> None:
        state = await self._load()
        now = self._clock()
        state["last_failure_time"] = now

        if state["status"] == BreakerStatus.HALF_OPEN.value:
            state["status"] = BreakerStatus.OPEN.value
            state["success_count"] = 0
            logger.warning("Circuit breaker re-opened during trial", breaker=self.name)
        elif state["status"] == BreakerStatus.CLOSED.value:
            state["failure_count"] += 1
            if state["failure_count"] >= self.threshold:
                state["status"] = BreakerStatus.OPEN.value
                logger.error(
                    "Circuit breaker opened",
                    breaker=self.name,
                    failure_count=state["failure_count"],
                    cooldown_s=self.cooldown_s,
                )
        await self._save(state)

    async def status(self) -> BreakerStatus:
        return BreakerStatus((await self._load())["status"])

    async def reset(self) -> None:
        await self.store.delete(self._key)

    async def stats(self) -> dict[str, Any]:
        state = await self._load()
        return {
            "name": self.name,
            **state,
            "threshold": self.threshold,
            "cooldown_s": self.cooldown_s,
            "rejected_calls": self.rejected_calls,
        }


class ResilientClient:
    """Runs downstream calls through the breaker with classified retry."""

    def __init__(
        self,
        breaker: CircuitBreaker,
        max_retries: int = 3,
        base_delay_s: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.breaker = breaker
        self.max_retries = max_retries
        self.base_delay_s = base_delay_s
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        breaker: CircuitBreaker,
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "ResilientClient":
        return cls(
            breaker,
            max_retries=settings.client_max_retries,
            base_delay_s=settings.client_retry_base_ms / 1000,
            sleep=sleep,
        )

    async def call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Execute ``fn`` with up to ``max_retries`` retries.

        Retryable failures (network errors, timeouts, 5xx, 429) are retried
        after ``base * 2^(attempt-1)``. Anything else propagates at once. An
        open circuit raises DownstreamUnavailableError without calling ``fn``.
        """
        attempt = 0
        while True:
            attempt += 1
            await self.breaker.before_call()
            try:
                result = await fn()
            except Exception as e:
                retryable = is_retryable_error(e)
                if retryable:
                    await self.breaker.record_failure()
                else:
                    # The dependency answered; the request itself was rejected
                    await self.breaker.record_success()
                    raise

                if attempt > self.max_retries:
                    logger.error(
                        "Downstream call failed, retries exhausted",
                        operation=operation,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise

                delay = self.base_delay_s * (2 ** (attempt - 1))
                logger.warning(
                    "Downstream call failed, retrying",
                    operation=operation,
                    attempt=attempt,
                    delay_s=delay,
                    error=str(e),
                )
                await self._sleep(delay)
                continue

            await self.breaker.record_success()
            return result
