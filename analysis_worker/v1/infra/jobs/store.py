"""
Job status store backed by the relational job tables.

Transitions are conditional updates, so a status can only move along
ALLOWED_TRANSITIONS and a repair only touches a row still in the state the
reconciler observed.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, or_, select, update

from analysis_worker.config.logging import get_logger
from analysis_worker.infra.database import Database
from analysis_worker.v1.infra.jobs.models import (
    ALLOWED_TRANSITIONS,
    AnalysisJob,
    AnalysisResult,
    JobStatus,
    as_utc,
    utcnow,
)

logger = get_logger(__name__)


class JobStatusStore:
    def __init__(self, database: Database):
        self.database = database

    async def create(
        self,
        job_id: str,
        user_id: str,
        payload: dict[str, Any],
        assessment_name: str | None = None,
    ) -> AnalysisJob:
        async with self.database.SessionLocal() as session:
            job = AnalysisJob(
                job_id=job_id,
                user_id=user_id,
                payload=payload,
                assessment_name=assessment_name,
                status=JobStatus.QUEUED.value,
            )
            session.add(job)
            await session.commit()
            await session.refresh(job)
            return job

    async def get(self, job_id: str) -> AnalysisJob | None:
        async with self.database.SessionLocal() as session:
            return await session.get(AnalysisJob, job_id)

    async def transition(self, job_id: str, status: JobStatus, **fields: Any) -> bool:
        """Move a job forward. Returns False when the current status forbids it."""
        sources = [
            source.value
            for source, targets in ALLOWED_TRANSITIONS.items()
            if status in targets
        ]
        now = utcnow()
        values: dict[str, Any] = {"status": status.value, "updated_at": now, **fields}
        if status.is_terminal:
            values.setdefault("completed_at", now)

        async with self.database.SessionLocal() as session:
            result = await session.execute(
                update(AnalysisJob)
                .where(
                    and_(AnalysisJob.job_id == job_id, AnalysisJob.status.in_(sources))
                )
                .values(**values)
            )
            await session.commit()

        if result.rowcount != 1:
            logger.warning(
                "Refused job status transition", job_id=job_id, target_status=status.value
            )
            return False
        return True

    async def find_stale(
        self, processing_cutoff: datetime, queued_cutoff: datetime
    ) -> list[AnalysisJob]:
        """Processing jobs not updated since, and queued jobs created before, the cutoffs."""
        async with self.database.SessionLocal() as session:
            result = await session.execute(
                select(AnalysisJob)
                .where(
                    or_(
                        and_(
                            AnalysisJob.status == JobStatus.PROCESSING.value,
                            AnalysisJob.updated_at < processing_cutoff,
                        ),
                        and_(
                            AnalysisJob.status == JobStatus.QUEUED.value,
                            AnalysisJob.created_at < queued_cutoff,
                        ),
                    )
                )
                .order_by(AnalysisJob.created_at)
            )
            return list(result.scalars().all())

    async def find_correlated_result(
        self, user_id: str, window_start: datetime, window_end: datetime
    ) -> AnalysisResult | None:
        """Earliest completed result for the user created inside the window."""
        async with self.database.SessionLocal() as session:
            result = await session.execute(
                select(AnalysisResult)
                .where(
                    and_(
                        AnalysisResult.user_id == user_id,
                        AnalysisResult.status == JobStatus.COMPLETED.value,
                        AnalysisResult.created_at >= window_start,
                        AnalysisResult.created_at <= window_end,
                    )
                )
                .order_by(AnalysisResult.created_at)
                .limit(1)
            )
            return result.scalars().first()

    async def repair(
        self,
        job: AnalysisJob,
        status: JobStatus,
        result_id: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Conditionally finalize a stale job.

        Only applies when the row still has the status and ``updated_at`` the
        caller observed, so a job that progressed meanwhile is left alone.
        """
        if not job.can_transition_to(status):
            return False

        now = utcnow()
        values: dict[str, Any] = {
            "status": status.value,
            "updated_at": now,
            "completed_at": now,
        }
        if result_id is not None:
            values["result_id"] = result_id
        if error_message is not None:
            values["error_message"] = error_message

        async with self.database.SessionLocal() as session:
            result = await session.execute(
                update(AnalysisJob)
                .where(
                    and_(
                        AnalysisJob.job_id == job.job_id,
                        AnalysisJob.status == job.status,
                        AnalysisJob.updated_at == job.updated_at,
                    )
                )
                .values(**values)
            )
            await session.commit()
        return result.rowcount == 1

    async def statistics(self, processing_cutoff: datetime) -> dict[str, Any]:
        async with self.database.SessionLocal() as session:
            rows = await session.execute(
                select(
                    AnalysisJob.status,
                    func.count(),
                    func.min(AnalysisJob.created_at),
                    func.max(AnalysisJob.created_at),
                ).group_by(AnalysisJob.status)
            )
            by_status = {
                status: {"count": count, "oldest": as_utc(oldest), "newest": as_utc(newest)}
                for status, count, oldest, newest in rows.all()
            }

            stuck = await session.execute(
                select(
                    func.count(),
                    func.min(AnalysisJob.created_at),
                    func.max(AnalysisJob.updated_at),
                ).where(
                    and_(
                        AnalysisJob.status == JobStatus.PROCESSING.value,
                        AnalysisJob.updated_at < processing_cutoff,
                    )
                )
            )
            stuck_count, oldest_stuck, latest_stuck = stuck.one()

        for status in JobStatus:
            by_status.setdefault(status.value, {"count": 0, "oldest": None, "newest": None})

        return {
            "by_status": by_status,
            "stuck_count": stuck_count,
            "oldest_stuck_created_at": as_utc(oldest_stuck),
            "latest_stuck_updated_at": as_utc(latest_stuck),
        }
