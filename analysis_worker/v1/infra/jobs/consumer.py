"""
Queue consumer with bounded concurrency.
"""

import asyncio
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from analysis_worker.config.logging import get_logger, job_log_context
from analysis_worker.config.settings import Settings
from analysis_worker.infra.broker import Broker, Delivery
from analysis_worker.v1.core.exceptions import ValidationError
from analysis_worker.v1.infra.jobs.dead_letter import DeadLetterRouter
from analysis_worker.v1.infra.jobs.processor import AssessmentProcessor
from analysis_worker.v1.infra.jobs.schemas import JobMessage

logger = get_logger(__name__)


def resolve_retry_count(headers: dict[str, Any], body: dict[str, Any]) -> int:
    """Effective retry count: the larger of the header and payload values.

    The header is authoritative; a payload value above it is reported but
    never lowers the retry budget already spent.
    """
    header_value = _as_count(headers.get("retry_count"))
    payload_value = _as_count(body.get("retry_count"))
    if header_value is None:
        return payload_value or 0
    if payload_value is not None and payload_value > header_value:
        logger.warning(
            "Retry count discrepancy between header and payload",
            header_retry_count=header_value,
            payload_retry_count=payload_value,
        )
    return max(header_value, payload_value or 0)


def _as_count(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return None


def decode_message(delivery: Delivery) -> JobMessage:
    try:
        body = delivery.json()
    except ValueError as e:
        raise ValidationError("Message body is not valid JSON", {"error": str(e)}) from e
    if not isinstance(body, dict):
        raise ValidationError("Message body must be a JSON object")

    body["retry_count"] = resolve_retry_count(delivery.headers, body)
    try:
        return JobMessage.model_validate(body)
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid job message",
            {"job_id": body.get("job_id"), "errors": e.errors(include_url=False)},
        ) from e


class MessageConsumer:
    """Dispatches deliveries to the pipeline, at most ``concurrency`` at a time."""

    def __init__(
        self,
        broker: Broker,
        processor: AssessmentProcessor,
        router: DeadLetterRouter,
        settings: Settings,
    ):
        self.broker = broker
        self.processor = processor
        self.router = router
        self.concurrency = settings.worker_concurrency
        self.shutdown_grace_s = settings.shutdown_grace_s
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._tasks: set[asyncio.Task] = set()
        self.running = False
        self.in_flight = 0
        self.processed = 0
        self.failed = 0

    async def start(self) -> None:
        if self.running:
            raise RuntimeError("Consumer is already running")
        await self.broker.consume(self._on_delivery, prefetch=self.concurrency)
        self.running = True
        logger.info("Consumer started", concurrency=self.concurrency)

    async def _on_delivery(self, delivery: Delivery) -> None:
        task = asyncio.create_task(self._dispatch(delivery))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, delivery: Delivery) -> None:
        async with self._semaphore:
            self.in_flight += 1
            try:
                await self.handle(delivery)
            finally:
                self.in_flight -= 1

    async def handle(self, delivery: Delivery) -> None:
        """Run one delivery through the pipeline and settle it."""
        message: JobMessage | None = None
        try:
            message = decode_message(delivery)
            with job_log_context(
                message.job_id, user_id=message.user_id, retry_count=message.retry_count
            ):
                await self.processor.run(message)
                await delivery.ack()
            self.processed += 1
        except Exception as e:
            self.failed += 1
            with job_log_context(message.job_id if message else None):
                logger.warning(
                    "Job failed", error=str(e), error_type=e.__class__.__name__
                )
                try:
                    await self.router.handle(delivery, message, e)
                except Exception:
                    logger.exception("Dead-letter routing failed, rejecting message")
                    await delivery.nack(requeue=False)

    async def stop(self) -> None:
        """Stop consuming and give in-flight jobs the grace period to finish."""
        if not self.running:
            return
        self.running = False
        await self.broker.cancel_consumer()

        pending = set(self._tasks)
        if pending:
            logger.info("Waiting for in-flight jobs", in_flight=len(pending))
            _, still_running = await asyncio.wait(pending, timeout=self.shutdown_grace_s)
            if still_running:
                logger.warning(
                    "Cancelling jobs still running after grace period",
                    in_flight=len(still_running),
                )
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)
        logger.info("Consumer stopped", processed=self.processed, failed=self.failed)

    def is_healthy(self) -> bool:
        return self.running and self.broker.is_connected

    def stats(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "concurrency": self.concurrency,
            "in_flight": self.in_flight,
            "processed": self.processed,
            "failed": self.failed,
        }
