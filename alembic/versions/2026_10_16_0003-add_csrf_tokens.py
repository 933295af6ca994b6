"""Add csrf_tokens table with one unused token per session.

Revision ID: 2026_10_16_0003
Revises: 2026_10_16_0002
Create Date: 2026-10-16

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_16_0003"
down_revision: str | None = "2026_10_16_0002"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create csrf_tokens table."""
    op.create_table(
        "csrf_tokens",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("token", sa.String(128), nullable=False, unique=True),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("sessions.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    # now() is not allowed in an index predicate; expiry is handled by the upsert
    op.create_index(
        "uq_csrf_tokens_live_session",
        "csrf_tokens",
        ["session_id"],
        unique=True,
        postgresql_where=sa.text("NOT used"),
    )
    op.create_index("idx_csrf_tokens_expires_at", "csrf_tokens", ["expires_at"])


def downgrade() -> None:
    """Drop csrf_tokens table."""
    op.drop_index("idx_csrf_tokens_expires_at", table_name="csrf_tokens")
    op.drop_index("uq_csrf_tokens_live_session", table_name="csrf_tokens")
    op.drop_table("csrf_tokens")
