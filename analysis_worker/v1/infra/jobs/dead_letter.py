"""
Retry-or-dead-letter routing for failed jobs, plus the DLQ depth monitor.
"""

import asyncio
from enum import Enum
from typing import Any

from analysis_worker.config.logging import get_logger
from analysis_worker.config.settings import Settings
from analysis_worker.infra.broker import Broker, Delivery
from analysis_worker.v1.core.exceptions import AnalysisWorkerException, classify_error
from analysis_worker.v1.infra.archive_client import StatusWriteBuffer
from analysis_worker.v1.infra.events import EventPublisher
from analysis_worker.v1.infra.jobs.models import JobStatus
from analysis_worker.v1.infra.jobs.schemas import JobMessage
from analysis_worker.v1.infra.refunds import RefundService

logger = get_logger(__name__)


class RoutingDecision(str, Enum):
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


class DeadLetterRouter:
    """
    Decides what happens to a message whose job failed.

    Retryable errors with budget left are republished with the incremented
    count in both header and body, delayed in the broker by
    ``retry_delay * 2^(retry_count - 1)`` or the error's retry-after hint,
    whichever is longer. The original is acked as soon as the copy is
    published, so a waiting retry never holds a prefetch slot. Everything
    else is compensated (failed status, failed event, refund) and rejected
    without requeue so the broker moves it to the DLQ.
    """

    def __init__(
        self,
        broker: Broker,
        settings: Settings,
        buffer: StatusWriteBuffer,
        events: EventPublisher,
        refunds: RefundService,
    ):
        self.broker = broker
        self.settings = settings
        self.buffer = buffer
        self.events = events
        self.refunds = refunds
        self.max_retries = settings.max_retries
        self.retry_delay_s = settings.retry_delay_ms / 1000
        self.max_retry_delay_s = settings.max_retry_delay_s
        self.retried = 0
        self.dead_lettered = 0

    def retry_delay(self, retry_count: int) -> float:
        return self.retry_delay_s * (2 ** (retry_count - 1))

    async def handle(
        self, delivery: Delivery, message: JobMessage | None, error: BaseException
    ) -> RoutingDecision:
        classified = classify_error(error)
        next_count = (message.retry_count if message else 0) + 1

        if message is not None and classified.retryable and next_count <= self.max_retries:
            retry_after = getattr(classified, "retry_after_s", 0) or 0
            if retry_after > self.max_retry_delay_s:
                logger.warning(
                    "Retry-after hint too long, dead-lettering job",
                    retry_after_s=round(retry_after, 3),
                    max_retry_delay_s=self.max_retry_delay_s,
                    error_type=classified.error_code,
                )
            else:
                delay = max(self.retry_delay(next_count), retry_after)
                logger.info(
                    "Scheduling job retry",
                    retry_count=next_count,
                    max_retries=self.max_retries,
                    delay_s=round(delay, 3),
                    error_type=classified.error_code,
                )
                if await self._republish(delivery, message, classified, next_count, delay):
                    return RoutingDecision.RETRY
                return RoutingDecision.DEAD_LETTER

        await self._dead_letter(delivery, message, classified)
        return RoutingDecision.DEAD_LETTER

    async def _republish(
        self,
        delivery: Delivery,
        message: JobMessage,
        error: AnalysisWorkerException,
        retry_count: int,
        delay: float,
    ) -> bool:
        body = {**message.to_body(), "retry_count": retry_count}
        try:
            await self.broker.publish_delayed(
                body,
                headers={
                    "retry_count": retry_count,
                    "original_error": error.message[:500],
                    "error_type": error.error_code,
                },
                delay_s=delay,
            )
        except Exception as e:
            logger.error(
                "Failed to republish job for retry, dead-lettering",
                job_id=message.job_id,
                error=str(e),
            )
            await self._dead_letter(delivery, message, error)
            return False

        await delivery.ack()
        self.retried += 1
        return True

    async def _dead_letter(
        self,
        delivery: Delivery,
        message: JobMessage | None,
        error: AnalysisWorkerException,
    ) -> None:
        if message is not None:
            await self.compensate(message, error)
        else:
            logger.error("Undecodable message sent to dead-letter queue", error=error.message)
        await delivery.nack(requeue=False)
        self.dead_lettered += 1

    async def compensate(self, message: JobMessage, error: AnalysisWorkerException) -> None:
        """Mark the job failed, announce it and refund the user. Never raises."""
        job_id, user_id = message.job_id, message.user_id
        logger.error(
            "Job failed permanently",
            job_id=job_id,
            error_type=error.error_code,
            retry_count=message.retry_count,
        )

        try:
            await self.buffer.write_terminal(
                job_id,
                JobStatus.FAILED.value,
                error_message=error.message,
                error_code=error.error_code,
            )
        except Exception as e:
            logger.error("Failed to mark job as failed", job_id=job_id, error=str(e))

        try:
            await self.events.job_failed(
                job_id,
                user_id,
                error.message,
                {
                    "retry_count": message.retry_count,
                    "assessment_name": message.assessment_name,
                    "error_type": error.error_code,
                },
            )
        except Exception as e:
            logger.error("Failed to announce job failure", job_id=job_id, error=str(e))

        await self.refunds.request_refund(job_id, user_id, reason=error.error_code)

    def stats(self) -> dict[str, Any]:
        return {
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
            "max_retries": self.max_retries,
        }


class DeadLetterMonitor:
    """Periodically reports the DLQ depth and alerts past a threshold."""

    def __init__(self, broker: Broker, settings: Settings):
        self.broker = broker
        self.queue_name = settings.dead_letter_queue
        self.threshold = settings.dlq_alert_threshold
        self.interval_s = settings.dlq_monitor_interval_s
        self.last_depth: int | None = None

    async def check(self) -> int:
        depth = await self.broker.queue_depth(self.queue_name)
        self.last_depth = depth
        if depth >= self.threshold * 2:
            logger.critical(
                "Dead-letter queue critical", queue=self.queue_name, depth=depth
            )
        elif depth >= self.threshold:
            logger.error(
                "Dead-letter queue above alert threshold",
                queue=self.queue_name,
                depth=depth,
                threshold=self.threshold,
            )
        elif depth > 0:
            logger.warning("Messages in dead-letter queue", queue=self.queue_name, depth=depth)
        return depth

    async def run_forever(self) -> None:
        while True:
            try:
                await self.check()
            except Exception:
                logger.exception("Error checking dead-letter queue")
            await asyncio.sleep(self.interval_s)
