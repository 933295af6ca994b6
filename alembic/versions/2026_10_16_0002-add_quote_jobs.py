"""Add quote_jobs table with one active job per call.

Revision ID: 2026_10_16_0002
Revises: 2026_10_16_0001
Create Date: 2026-10-16

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_16_0002"
down_revision: str | None = "2026_10_16_0001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create quote_jobs table."""
    op.create_table(
        "quote_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "call_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("calls.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "scheduled_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "metadata",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_quote_jobs_status",
        ),
        sa.CheckConstraint("attempts >= 0", name="ck_quote_jobs_attempts_non_negative"),
        sa.CheckConstraint("max_attempts > 0", name="ck_quote_jobs_max_attempts_positive"),
        sa.CheckConstraint("error_count >= 0", name="ck_quote_jobs_error_count_non_negative"),
    )
    op.create_index(
        "uq_quote_jobs_active_call",
        "quote_jobs",
        ["call_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'processing')"),
    )
    op.create_index(
        "idx_quote_jobs_status_scheduled",
        "quote_jobs",
        ["status", "scheduled_at"],
        postgresql_where=sa.text("status IN ('pending', 'processing')"),
    )
    op.create_index("idx_quote_jobs_call_id", "quote_jobs", ["call_id"])
    op.create_index("idx_quote_jobs_created_at", "quote_jobs", ["created_at"])


def downgrade() -> None:
    """Drop quote_jobs table."""
    op.drop_index("idx_quote_jobs_created_at", table_name="quote_jobs")
    op.drop_index("idx_quote_jobs_call_id", table_name="quote_jobs")
    op.drop_index("idx_quote_jobs_status_scheduled", table_name="quote_jobs")
    op.drop_index("uq_quote_jobs_active_call", table_name="quote_jobs")
    op.drop_table("quote_jobs")
