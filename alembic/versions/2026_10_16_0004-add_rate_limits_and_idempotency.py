"""Add user_rate_limits and idempotency_keys tables.

Revision ID: 2026_10_16_0004
Revises: 2026_10_16_0003
Create Date: 2026-10-16

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_16_0004"
down_revision: str | None = "2026_10_16_0003"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create user_rate_limits and idempotency_keys tables."""
    op.create_table(
        "user_rate_limits",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("window_type", sa.String(10), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.CheckConstraint(
            "window_type IN ('minute', 'hour', 'day')", name="ck_user_rate_limits_window_type"
        ),
        sa.CheckConstraint("request_count >= 0", name="ck_user_rate_limits_count_non_negative"),
        sa.UniqueConstraint("user_id", "window_type", name="uq_user_rate_limits_user_window"),
    )
    op.create_index("idx_user_rate_limits_window_end", "user_rate_limits", ["window_end"])
    op.create_index("idx_user_rate_limits_user_id", "user_rate_limits", ["user_id"])

    op.create_table(
        "idempotency_keys",
        sa.Column("key", sa.String(255), primary_key=True),
        # NULL while a claim is in flight
        sa.Column("response", sa.LargeBinary(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_idempotency_keys_expires_at", "idempotency_keys", ["expires_at"])


def downgrade() -> None:
    """Drop idempotency_keys and user_rate_limits tables."""
    op.drop_index("idx_idempotency_keys_expires_at", table_name="idempotency_keys")
    op.drop_table("idempotency_keys")
    op.drop_index("idx_user_rate_limits_user_id", table_name="user_rate_limits")
    op.drop_index("idx_user_rate_limits_window_end", table_name="user_rate_limits")
    op.drop_table("user_rate_limits")
