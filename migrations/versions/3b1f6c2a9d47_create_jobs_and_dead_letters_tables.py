"""create jobs and dead_letters tables

Revision ID: 3b1f6c2a9d47
Revises:
Create Date: 2026-10-18 09:12:40.118204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b1f6c2a9d47"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "job_id", sa.String(100), nullable=False, comment="Externally visible job id"
        ),
        sa.Column("type", sa.String(50), nullable=False, comment="Namespaced job type"),
        sa.Column(
            "priority",
            sa.SmallInteger,
            nullable=False,
            comment="Priority 1-20, higher is more urgent",
        ),
        sa.Column("data", sa.JSON, nullable=False, comment="Job payload"),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("attempts", sa.SmallInteger, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.SmallInteger, nullable=False),
        sa.Column("backoff_type", sa.String(20), nullable=False),
        sa.Column("backoff_delay", sa.Integer, nullable=False),
        sa.Column(
            "scheduled_for",
            sa.DateTime(timezone=True),
            nullable=True,
            comment="Not claimable before this time",
        ),
        sa.Column("batch_id", sa.String(64), nullable=True),
        sa.Column("batched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_id", sa.String(255), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "lock_timeout", sa.DateTime(timezone=True), nullable=True, comment="Lease expiry"
        ),
        sa.Column("result", sa.JSON, nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("error_stack", sa.Text, nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "processing_time", sa.Integer, nullable=True, comment="Handler run time in ms"
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("job_id", name="jobs_job_id_key"),
        sa.CheckConstraint(
            "status IN ('pending', 'batched', 'processing', 'completed', 'failed', 'cancelled')",
            name="jobs_status_check",
        ),
        sa.CheckConstraint("priority BETWEEN 1 AND 20", name="jobs_priority_check"),
        sa.CheckConstraint(
            "max_attempts BETWEEN 1 AND 10", name="jobs_max_attempts_check"
        ),
    )

    op.create_index(
        "ix_jobs_claim",
        "jobs",
        ["status", sa.text("priority DESC"), "created_at"],
    )
    op.create_index("ix_jobs_lease", "jobs", ["status", "lock_timeout"])
    op.create_index("ix_jobs_type", "jobs", ["type"])

    op.create_table(
        "dead_letters",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("original_job_id", sa.String(100), nullable=False),
        sa.Column("job_type", sa.String(50), nullable=False),
        sa.Column("job_data", sa.JSON, nullable=False),
        sa.Column("priority", sa.SmallInteger, nullable=False),
        sa.Column("attempts", sa.SmallInteger, nullable=False),
        sa.Column("max_attempts", sa.SmallInteger, nullable=False),
        sa.Column("failure_reason", sa.Text, nullable=False),
        sa.Column("error_stack", sa.Text, nullable=True),
        sa.Column("error_class", sa.String(255), nullable=True),
        sa.Column("worker_id", sa.String(255), nullable=True),
        sa.Column("processing_time", sa.Integer, nullable=True),
        sa.Column("last_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("original_created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "moved_to_dlq_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("dlq_reason", sa.String(32), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column(
            "reprocess_attempts", sa.SmallInteger, nullable=False, server_default="0"
        ),
        sa.Column(
            "max_reprocess_attempts",
            sa.SmallInteger,
            nullable=False,
            server_default="3",
        ),
        sa.Column("reprocessed_by", sa.String(255), nullable=True),
        sa.Column("last_reprocessed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(255), nullable=True),
        sa.Column("resolution", sa.Text, nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("impact_level", sa.String(20), nullable=True),
        sa.Column("business_context", sa.JSON, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'investigating', 'resolved', 'ignored', 'reprocessed')",
            name="dead_letters_status_check",
        ),
        sa.CheckConstraint(
            "severity IN ('low', 'medium', 'high', 'critical')",
            name="dead_letters_severity_check",
        ),
        sa.CheckConstraint(
            "reprocess_attempts <= max_reprocess_attempts",
            name="dead_letters_reprocess_bound_check",
        ),
    )

    op.create_index(
        "ix_dead_letters_triage", "dead_letters", ["status", "moved_to_dlq_at"]
    )
    op.create_index(
        "ix_dead_letters_type_status", "dead_letters", ["job_type", "status"]
    )
    op.create_index(
        "ix_dead_letters_original_job_id", "dead_letters", ["original_job_id"]
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("dead_letters")
    op.drop_table("jobs")
