"""
Token refunds for jobs that failed after the user was charged.

A refund is requested at most once per job (marker in the state store), so
the dead-letter router and the reconciler can both ask without
double-crediting. Refunds that fail are queued and retried in the background.
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import httpx

from analysis_worker.config.logging import get_logger
from analysis_worker.config.settings import Settings
from analysis_worker.infra.state_store import StateStore

logger = get_logger(__name__)

REFUND_MARKER_TTL_S = 7 * 24 * 3600


class RefundGateway(Protocol):
    async def refund(self, user_id: str, amount: int, job_id: str, reason: str) -> None:
        ...


class HttpRefundGateway:
    """Credits tokens back through the token-balance service."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        self._http = http_client or httpx.AsyncClient(
            base_url=settings.auth_service_url, timeout=10.0
        )
        self._headers = {
            "X-Internal-Service": "true",
            "X-Service-Key": settings.internal_service_key,
        }

    async def refund(self, user_id: str, amount: int, job_id: str, reason: str) -> None:
        response = await self._http.post(
            "/internal/token-balance/refund",
            json={"userId": user_id, "amount": amount, "jobId": job_id, "reason": reason},
            headers=self._headers,
        )
        response.raise_for_status()

    async def close(self) -> None:
        await self._http.aclose()


class RefundOutcome(str, Enum):
    REFUNDED = "refunded"
    QUEUED = "queued"
    DUPLICATE = "duplicate"


@dataclass
class PendingRefund:
    job_id: str
    user_id: str
    amount: int
    reason: str
    attempts: int = 1


class RefundService:
    def __init__(
        self,
        gateway: RefundGateway,
        store: StateStore,
        amount: int = 1,
        batch_size: int = 10,
        max_attempts: int = 3,
        drain_interval_s: float = 5.0,
    ):
        self.gateway = gateway
        self.store = store
        self.amount = amount
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.drain_interval_s = drain_interval_s
        self.queue: deque[PendingRefund] = deque()
        self._task: asyncio.Task | None = None
        self.refunded = 0
        self.abandoned = 0

    @classmethod
    def from_settings(
        cls, settings: Settings, gateway: RefundGateway, store: StateStore
    ) -> "RefundService":
        return cls(
            gateway,
            store,
            amount=settings.analysis_token_cost,
            batch_size=settings.refund_batch_size,
            max_attempts=settings.refund_max_attempts,
            drain_interval_s=settings.refund_drain_interval_s,
        )

    async def request_refund(self, job_id: str, user_id: str, reason: str) -> RefundOutcome:
        """Refund a job once. Failures are queued for retry, never raised."""
        first = await self.store.set_if_absent(
            f"refund:{job_id}",
            {"user_id": user_id, "reason": reason},
            ttl_s=REFUND_MARKER_TTL_S,
        )
        if not first:
            logger.info("Refund already requested", job_id=job_id)
            return RefundOutcome.DUPLICATE

        try:
            await self.gateway.refund(user_id, self.amount, job_id, reason)
        except Exception as e:
            self.queue.append(PendingRefund(job_id, user_id, self.amount, reason))
            logger.warning(
                "Refund failed, queued for retry", job_id=job_id, error=str(e)
            )
            return RefundOutcome.QUEUED

        self.refunded += 1
        logger.info("Tokens refunded", job_id=job_id, user_id=user_id, amount=self.amount)
        return RefundOutcome.REFUNDED

    async def drain(self) -> int:
        """Retry up to one batch of queued refunds."""
        batch = [self.queue.popleft() for _ in range(min(self.batch_size, len(self.queue)))]
        done = 0
        for pending in batch:
            try:
                await self.gateway.refund(
                    pending.user_id, pending.amount, pending.job_id, pending.reason
                )
            except Exception as e:
                pending.attempts += 1
                if pending.attempts >= self.max_attempts:
                    self.abandoned += 1
                    logger.error(
                        "Refund abandoned",
                        job_id=pending.job_id,
                        user_id=pending.user_id,
                        attempts=pending.attempts,
                        error=str(e),
                    )
                else:
                    self.queue.append(pending)
                continue
            done += 1
            self.refunded += 1
            logger.info("Queued refund processed", job_id=pending.job_id)
        return done

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.drain_interval_s)
            try:
                if self.queue:
                    await self.drain()
            except Exception:
                logger.exception("Error draining refund queue")

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self.queue:
            logger.warning("Refunds still queued at shutdown", pending=len(self.queue))

    def stats(self) -> dict[str, Any]:
        return {
            "queued": len(self.queue),
            "refunded": self.refunded,
            "abandoned": self.abandoned,
        }
