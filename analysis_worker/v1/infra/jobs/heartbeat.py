"""
Per-job heartbeats.

While a job runs, a periodic task records liveness through the status write
buffer. A separate, slower sweep fails any job whose heartbeat has been
running longer than the absolute ceiling.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable

from analysis_worker.config.logging import get_logger
from analysis_worker.config.settings import Settings
from analysis_worker.v1.infra.archive_client import StatusWriteBuffer
from analysis_worker.v1.infra.jobs.models import JobStatus

logger = get_logger(__name__)


@dataclass
class HeartbeatRecord:
    job_id: str
    user_id: str
    start_time: float
    last_beat_time: float
    beat_count: int = 0
    task: asyncio.Task | None = field(default=None, repr=False)

    def elapsed(self, now: float) -> float:
        return now - self.start_time


class Heartbeat:
    def __init__(
        self,
        buffer: StatusWriteBuffer,
        interval_s: float = 30.0,
        max_age_s: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        self.buffer = buffer
        self.interval_s = interval_s
        self.max_age_s = max_age_s
        self._clock = clock
        self._records: dict[str, HeartbeatRecord] = {}

    @classmethod
    def from_settings(
        cls, settings: Settings, buffer: StatusWriteBuffer, clock: Callable[[], float] = time.time
    ) -> "Heartbeat":
        return cls(
            buffer,
            interval_s=settings.heartbeat_interval_s,
            max_age_s=settings.heartbeat_max_age_s,
            clock=clock,
        )

    async def start(self, job_id: str, user_id: str) -> None:
        if job_id in self._records:
            await self.stop(job_id)

        now = self._clock()
        record = HeartbeatRecord(job_id, user_id, start_time=now, last_beat_time=now)
        self._records[job_id] = record
        await self._beat(record)
        record.task = asyncio.create_task(self._run(record))
        logger.debug("Heartbeat started", job_id=job_id, interval_s=self.interval_s)

    async def _beat(self, record: HeartbeatRecord) -> None:
        now = self._clock()
        record.last_beat_time = now
        record.beat_count += 1
        try:
            await self.buffer.enqueue(
                record.job_id,
                JobStatus.PROCESSING.value,
                last_heartbeat=datetime.fromtimestamp(now, UTC).isoformat(),
                processing_duration_ms=int(record.elapsed(now) * 1000),
                heartbeat_count=record.beat_count,
            )
        except Exception as e:
            logger.warning("Heartbeat write failed", job_id=record.job_id, error=str(e))

    async def _run(self, record: HeartbeatRecord) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            await self._beat(record)

    async def stop(
        self, job_id: str, final_status: JobStatus | None = None
    ) -> dict[str, Any] | None:
        """Cancel the heartbeat and return its closing fields.

        With ``final_status`` one last buffered write is enqueued. Callers that
        make their own terminal write merge the returned fields into it instead.
        """
        record = self._records.pop(job_id, None)
        if record is None:
            return None
        if record.task is not None:
            record.task.cancel()
            try:
                await record.task
            except asyncio.CancelledError:
                pass

        now = self._clock()
        fields = {
            "last_heartbeat": datetime.fromtimestamp(now, UTC).isoformat(),
            "processing_duration_ms": int(record.elapsed(now) * 1000),
            "heartbeat_count": record.beat_count,
        }
        if final_status is not None:
            try:
                await self.buffer.enqueue(job_id, final_status.value, **fields)
            except Exception as e:
                logger.warning("Final heartbeat write failed", job_id=job_id, error=str(e))
        logger.debug("Heartbeat stopped", job_id=job_id, beats=record.beat_count)
        return fields

    async def sweep(self, now: float | None = None) -> list[str]:
        """Force-fail every job whose heartbeat exceeded the absolute ceiling."""
        now = self._clock() if now is None else now
        expired = [
            record for record in self._records.values() if record.elapsed(now) > self.max_age_s
        ]
        failed = []
        for record in expired:
            message = (
                f"Job timed out after {int(record.elapsed(now))} seconds. "
                "Worker heartbeat stopped responding."
            )
            logger.error(
                "Heartbeat ceiling exceeded, failing job",
                job_id=record.job_id,
                elapsed_s=int(record.elapsed(now)),
            )
            try:
                await self.buffer.write_terminal(
                    record.job_id, JobStatus.FAILED.value, error_message=message
                )
                failed.append(record.job_id)
            except Exception as e:
                logger.error(
                    "Failed to mark timed-out job as failed",
                    job_id=record.job_id,
                    error=str(e),
                )
            await self.stop(record.job_id)
        return failed

    def active_jobs(self) -> list[str]:
        return list(self._records)

    def get(self, job_id: str) -> HeartbeatRecord | None:
        return self._records.get(job_id)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "active": len(self._records),
            "interval_s": self.interval_s,
            "max_age_s": self.max_age_s,
            "longest_running_s": max(
                (record.elapsed(now) for record in self._records.values()), default=0
            ),
        }
