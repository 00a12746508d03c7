"""
Pydantic schemas for job messages, events and operational reports.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_ASSESSMENT_NAME = "AI-Driven Talent Mapping"


class JobMessage(BaseModel):
    """Inbound job message consumed from the analysis queue."""

    model_config = ConfigDict(extra="ignore")

    job_id: str = Field(..., min_length=1, description="Job identifier")
    user_id: str = Field(..., min_length=1, description="Submitting user")
    contact_info: str | None = Field(default=None, description="User contact (email)")
    payload: dict[str, Any] = Field(..., description="Assessment data")
    assessment_name: str = Field(default=DEFAULT_ASSESSMENT_NAME)
    retry_count: int = Field(default=0, ge=0)
    timestamp: datetime | None = None
    user_ip: str | None = None

    @field_validator("payload")
    @classmethod
    def payload_not_empty(cls, v: dict[str, Any]) -> dict[str, Any]:
        if not v:
            raise ValueError("payload must not be empty")
        return v

    def to_body(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class DedupReason(str, Enum):
    NEW = "NEW"
    CURRENTLY_PROCESSING = "CURRENTLY_PROCESSING"
    RECENTLY_PROCESSED = "RECENTLY_PROCESSED"
    INCOMPLETE_RESULT_REPROCESSING = "INCOMPLETE_RESULT_REPROCESSING"


class DedupDecision(BaseModel):
    """Outcome of the deduplication guard for one job."""

    admitted: bool
    content_hash: str
    reason: DedupReason
    original_job_id: str | None = None
    result_reference: str | None = None
    allow_overwrite: bool = False


class EventType(str, Enum):
    STARTED = "analysis.started"
    COMPLETED = "analysis.completed"
    FAILED = "analysis.failed"


class JobEvent(BaseModel):
    """Lifecycle event published to the events exchange."""

    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    job_id: str
    user_id: str
    result_reference: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_body(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class CleanupRequest(BaseModel):
    """Parameters for an on-demand reconciler sweep."""

    dry_run: bool = Field(default=False, description="Report without mutating")
    processing_timeout_s: float | None = Field(
        default=None, gt=0, description="Override the processing staleness threshold"
    )
    queued_timeout_s: float | None = Field(
        default=None, gt=0, description="Override the queued staleness threshold"
    )


class ReconcileAction(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ReconcileOutcome(BaseModel):
    job_id: str
    user_id: str
    previous_status: str
    action: ReconcileAction
    result_id: str | None = None
    reason: str | None = None


class CleanupReport(BaseModel):
    dry_run: bool
    processing_timeout_s: float
    queued_timeout_s: float
    examined: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    refunds_requested: int = 0
    outcomes: list[ReconcileOutcome] = Field(default_factory=list)


class StatusBreakdown(BaseModel):
    count: int
    oldest: datetime | None = None
    newest: datetime | None = None


class JobStatsResponse(BaseModel):
    """Status breakdown and stuck-job summary."""

    by_status: dict[str, StatusBreakdown]
    stuck_count: int
    oldest_stuck_created_at: datetime | None = None
    latest_stuck_updated_at: datetime | None = None
    processing_timeout_s: float
