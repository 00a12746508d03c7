"""
Per-job processing pipeline.

dedup admit -> admission limits -> heartbeat + started event -> provider gate
-> analyzer -> persist result -> dedup complete -> terminal write -> event.

The whole pipeline runs under one wall-clock timeout. Failures release the
dedup entry and the heartbeat, then propagate to the dead-letter router.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from analysis_worker.config.logging import get_logger
from analysis_worker.config.settings import Settings
from analysis_worker.v1.core.exceptions import (
    DuplicateJobError,
    ProcessingTimeoutError,
    RateLimitedError,
)
from analysis_worker.v1.core.rate_limiter import AdmissionRateLimiter, ProviderRateGate
from analysis_worker.v1.core.registries import AnalyzerRegistry
from analysis_worker.v1.infra.archive_client import ArchiveClient, StatusWriteBuffer
from analysis_worker.v1.infra.events import EventPublisher
from analysis_worker.v1.infra.jobs.dedup import DeduplicationGuard
from analysis_worker.v1.infra.jobs.heartbeat import Heartbeat
from analysis_worker.v1.infra.jobs.models import JobStatus
from analysis_worker.v1.infra.jobs.schemas import DedupReason, JobMessage

logger = get_logger(__name__)


@dataclass
class JobContext:
    """State a failed job leaves behind for cleanup."""

    job_id: str
    started_at: float
    content_hash: str | None = None
    owns_dedup_entry: bool = False
    heartbeat_started: bool = False


@dataclass
class ProcessOutcome:
    job_id: str
    status: JobStatus
    result_reference: str | None = None
    is_duplicate: bool = False
    original_job_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AssessmentProcessor:
    def __init__(
        self,
        settings: Settings,
        dedup: DeduplicationGuard,
        admission: AdmissionRateLimiter,
        provider_gate: ProviderRateGate,
        analyzers: AnalyzerRegistry,
        archive: ArchiveClient,
        buffer: StatusWriteBuffer,
        heartbeat: Heartbeat,
        events: EventPublisher,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.dedup = dedup
        self.admission = admission
        self.provider_gate = provider_gate
        self.analyzers = analyzers
        self.archive = archive
        self.buffer = buffer
        self.heartbeat = heartbeat
        self.events = events
        self._clock = clock
        self.timeout_s = settings.processing_timeout_s

    def _metadata(self, message: JobMessage, ctx: JobContext, **extra: Any) -> dict[str, Any]:
        return {
            "processing_time": round(self._clock() - ctx.started_at, 3),
            "retry_count": message.retry_count,
            "assessment_name": message.assessment_name,
            **extra,
        }

    async def run(self, message: JobMessage) -> ProcessOutcome:
        """Process one job under the wall-clock timeout."""
        ctx = JobContext(job_id=message.job_id, started_at=self._clock())
        try:
            return await asyncio.wait_for(self._process(message, ctx), self.timeout_s)
        except asyncio.TimeoutError as e:
            logger.error("Job processing timed out", timeout_s=self.timeout_s)
            await self._release(ctx)
            raise ProcessingTimeoutError(message.job_id, self.timeout_s) from e
        except Exception:
            await self._release(ctx)
            raise

    async def _process(self, message: JobMessage, ctx: JobContext) -> ProcessOutcome:
        job_id, user_id = message.job_id, message.user_id

        decision = await self.dedup.admit(job_id, user_id, message.payload)
        ctx.content_hash = decision.content_hash
        if not decision.admitted:
            if decision.reason == DedupReason.RECENTLY_PROCESSED:
                return await self._resolve_duplicate(
                    message, ctx, decision.original_job_id, decision.result_reference
                )
            raise DuplicateJobError(decision.original_job_id or "unknown", decision.reason.value)
        ctx.owns_dedup_entry = True

        limit = await self.admission.check_and_consume(user_id, message.user_ip)
        if not limit.allowed:
            raise RateLimitedError(limit.scope or "admission", limit.retry_after_s)

        logger.info(
            "Processing assessment",
            assessment_name=message.assessment_name,
            dedup_reason=decision.reason.value,
        )
        await self.buffer.enqueue(
            job_id, JobStatus.PROCESSING.value, retry_count=message.retry_count
        )
        await self.heartbeat.start(job_id, user_id)
        ctx.heartbeat_started = True
        await self.events.job_started(job_id, user_id, self._metadata(message, ctx))

        analyzer = self.analyzers.resolve(message.assessment_name)
        result = await self.provider_gate.execute(
            lambda: analyzer.analyze(job_id, user_id, message.payload, message.assessment_name),
            job_id,
        )

        result_id = await self.archive.create_result(
            user_id,
            message.payload,
            result,
            message.assessment_name,
            job_id=job_id,
            allow_overwrite=decision.allow_overwrite,
        )

        # Recorded before the terminal write so a redelivery resolves as a duplicate
        await self.dedup.complete(decision.content_hash, job_id, result_id)
        ctx.owns_dedup_entry = False

        heartbeat_fields = await self.heartbeat.stop(job_id) or {}
        ctx.heartbeat_started = False
        await self.buffer.write_terminal(
            job_id, JobStatus.COMPLETED.value, result_id=result_id, **heartbeat_fields
        )

        metadata = self._metadata(message, ctx)
        await self.events.job_completed(job_id, user_id, result_id, metadata)
        logger.info("Assessment processed", result_id=result_id, **metadata)
        return ProcessOutcome(job_id, JobStatus.COMPLETED, result_id, metadata=metadata)

    async def _resolve_duplicate(
        self,
        message: JobMessage,
        ctx: JobContext,
        original_job_id: str | None,
        result_reference: str | None,
    ) -> ProcessOutcome:
        """Complete a duplicate from the cached result without calling the provider."""
        await self.buffer.write_terminal(
            message.job_id, JobStatus.COMPLETED.value, result_id=result_reference
        )
        metadata = self._metadata(
            message, ctx, is_duplicate=True, original_job_id=original_job_id
        )
        await self.events.job_completed(
            message.job_id, message.user_id, result_reference, metadata
        )
        logger.info(
            "Duplicate job completed from cached result",
            original_job_id=original_job_id,
            result_reference=result_reference,
        )
        return ProcessOutcome(
            message.job_id,
            JobStatus.COMPLETED,
            result_reference,
            is_duplicate=True,
            original_job_id=original_job_id,
            metadata=metadata,
        )

    async def _release(self, ctx: JobContext) -> None:
        if ctx.heartbeat_started:
            try:
                await self.heartbeat.stop(ctx.job_id)
            except Exception as e:
                logger.warning("Failed to stop heartbeat", job_id=ctx.job_id, error=str(e))
        if ctx.owns_dedup_entry and ctx.content_hash:
            try:
                await self.dedup.fail(ctx.content_hash, ctx.job_id)
            except Exception as e:
                logger.warning("Failed to release dedup entry", job_id=ctx.job_id, error=str(e))
