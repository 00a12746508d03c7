"""add analysis_jobs and analysis_results tables

Revision ID: 3a7c1e9d5b20
Revises:
Create Date: 2026-10-19 09:12:41.118305

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3a7c1e9d5b20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "analysis_jobs",
        sa.Column("job_id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False, comment="Submitting user"),
        sa.Column(
            "payload",
            sa.JSON,
            nullable=False,
            default={},
            comment="Assessment data",
        ),
        sa.Column(
            "assessment_name",
            sa.Text,
            nullable=True,
            comment="Assessment type, selects the analyzer",
        ),
        sa.Column(
            "status",
            sa.String(16),
            nullable=False,
            default="queued",
            comment="Job status: queued|processing|completed|failed",
        ),
        sa.Column(
            "result_id",
            sa.String(64),
            nullable=True,
            comment="Reference to the analysis result",
        ),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, default=0),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_heartbeat_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed')",
            name="analysis_jobs_status_check",
        ),
    )

    # Reconciler scans by status and age
    op.create_index(
        "ix_analysis_jobs_status_updated_at", "analysis_jobs", ["status", "updated_at"]
    )
    op.create_index("ix_analysis_jobs_user_id", "analysis_jobs", ["user_id"])

    op.create_table(
        "analysis_results",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, default="completed"),
        sa.Column("test_result", sa.JSON, nullable=True),
        sa.Column("assessment_name", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_analysis_results_user_created",
        "analysis_results",
        ["user_id", "created_at"],
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("analysis_results")
    op.drop_table("analysis_jobs")
