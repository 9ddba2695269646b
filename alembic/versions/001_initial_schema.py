"""Initial schema with job, failed job, batch and lock tables

Revision ID: 001
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Envelopes waiting for or held by a worker
    op.create_table(
        "jobs",
        sa.Column("seq", sa.BigInteger, autoincrement=True, nullable=False),
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("queue", sa.String(255), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("exceptions", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_tries", sa.Integer, nullable=True),
        sa.Column("max_exceptions", sa.Integer, nullable=True),
        sa.Column("timeout", sa.Float, nullable=True),
        sa.Column("backoff", postgresql.JSONB, nullable=True),
        sa.Column("created_at", sa.Float, nullable=False),
        sa.Column("available_at", sa.Float, nullable=False),
        sa.Column("reserved_until", sa.Float, nullable=True),
        sa.Column("batch_id", sa.String(64), nullable=True),
        sa.Column("chain_remainder", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("chain_catch", sa.String(255), nullable=True),
        sa.Column("middleware", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.PrimaryKeyConstraint("seq"),
        sa.UniqueConstraint("id", name="uq_jobs_id"),
    )
    op.create_index("ix_jobs_batch_id", "jobs", ["batch_id"])

    # Index for reservation polling
    op.create_index("ix_jobs_reserve", "jobs", ["queue", "available_at", "seq"])

    op.create_table(
        "failed_jobs",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("original_id", sa.String(64), nullable=False),
        sa.Column("connection", sa.String(255), nullable=True),
        sa.Column("queue", sa.String(255), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("envelope", postgresql.JSONB, nullable=False),
        sa.Column("exception", sa.Text, nullable=False),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_failed_jobs_original_id", "failed_jobs", ["original_id"])
    op.create_index("ix_failed_jobs_failed_at", "failed_jobs", ["failed_at"])

    op.create_table(
        "job_batches",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("queue", sa.String(255), nullable=True),
        sa.Column("connection", sa.String(255), nullable=True),
        sa.Column("total_jobs", sa.Integer, nullable=False),
        sa.Column("pending_jobs", sa.Integer, nullable=False),
        sa.Column("failed_jobs", sa.Integer, nullable=False, server_default="0"),
        sa.Column("allow_failures", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("then_callback", sa.String(255), nullable=True),
        sa.Column("catch_callback", sa.String(255), nullable=True),
        sa.Column("finally_callback", sa.String(255), nullable=True),
        sa.Column("then_fired", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("catch_fired", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("finally_fired", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "job_batch_failures",
        sa.Column("batch_id", sa.String(64), nullable=False),
        sa.Column("job_id", sa.String(64), nullable=False),
        sa.ForeignKeyConstraint(["batch_id"], ["job_batches.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("batch_id", "job_id"),
    )

    op.create_table(
        "cache_locks",
        sa.Column("key", sa.String(255), nullable=False),
        sa.Column("owner", sa.String(64), nullable=False),
        sa.Column("expires_at", sa.Float, nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )
    op.create_index("ix_cache_locks_expires_at", "cache_locks", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_cache_locks_expires_at")
    op.drop_table("cache_locks")
    op.drop_table("job_batch_failures")
    op.drop_table("job_batches")
    op.drop_index("ix_failed_jobs_failed_at")
    op.drop_index("ix_failed_jobs_original_id")
    op.drop_table("failed_jobs")
    op.drop_index("ix_jobs_reserve")
    op.drop_index("ix_jobs_batch_id")
    op.drop_table("jobs")
