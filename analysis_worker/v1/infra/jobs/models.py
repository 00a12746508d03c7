"""
Job state models for the analysis worker.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, TIMESTAMP, CheckConstraint, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from analysis_worker.infra.database import Base


class JobStatus(str, Enum):
    """Job status enumeration."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Forward transitions the pipeline may perform. The reconciler's repair
# transitions (queued|processing -> completed|failed) are the same set.
ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.QUEUED: {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class AnalysisJob(Base):
    """
    One submitted assessment analysis.

    Status only moves forward: queued -> processing -> completed|failed.
    """

    __tablename__ = "analysis_jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String(64), nullable=False, comment="Submitting user"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Assessment data"
    )
    assessment_name: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Assessment type, selects the analyzer"
    )

    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=JobStatus.QUEUED.value,
        comment="Job status: queued|processing|completed|failed",
    )
    result_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, comment="Reference to the analysis result"
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    last_heartbeat_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed')",
            name="analysis_jobs_status_check",
        ),
        Index("ix_analysis_jobs_status_updated_at", "status", "updated_at"),
        Index("ix_analysis_jobs_user_id", "user_id"),
    )

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)

    def is_active(self) -> bool:
        """Check if job is in an active state (queued, processing)."""
        return not self.job_status.is_terminal

    def can_transition_to(self, status: JobStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.job_status]


class AnalysisResult(Base):
    """Stored analysis output; the reconciler correlates jobs against it."""

    __tablename__ = "analysis_results"

    id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: str(uuid4())
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=JobStatus.COMPLETED.value
    )
    test_result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    assessment_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )

    __table_args__ = (
        Index("ix_analysis_results_user_created", "user_id", "created_at"),
    )
