"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations
(the one exception is the opaque quote job metadata bag).

Table and column names are the wire contract to the store.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

ACTIVE_JOB_STATUSES = ("pending", "processing")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class User(Base):
    """
    ORM model for users table.

    Owned by the user component; mapped here only as a foreign-key target.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<User(id={self.id}, email={self.email})>"


class Call(Base):
    """
    ORM model for calls table.

    Owned by the call component; quote jobs reference it by call_id.
    """

    __tablename__ = "calls"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    provider_call_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    phone_number: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="pending")
    transcript: Mapped[str | None] = mapped_column(Text, nullable=True)
    quote_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Call(id={self.id}, provider_call_id={self.provider_call_id})>"


class UserSession(Base):
    """
    ORM model for sessions table.

    Bearer-token sessions. previous_token/rotated_at hold the superseded
    token for the rotation grace window; at most one per session.
    """

    __tablename__ = "sessions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    token: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    last_active_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Token rotation
    previous_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    rotated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_sessions_user_id", "user_id"),
        Index("idx_sessions_expires_at", "expires_at"),
        Index(
            "idx_sessions_previous_token",
            "previous_token",
            postgresql_where=(previous_token.isnot(None)),
        ),
        Index(
            "idx_sessions_rotated_at",
            "rotated_at",
            postgresql_where=(rotated_at.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<UserSession(id={self.id}, user_id={self.user_id}, expires_at={self.expires_at})>"


class CSRFToken(Base):
    """
    ORM model for csrf_tokens table.

    One-time anti-forgery tokens, optionally bound to a session.
    At most one unused token per session (uq_csrf_tokens_live_session).
    """

    __tablename__ = "csrf_tokens"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    session_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=True,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index(
            "uq_csrf_tokens_live_session",
            "session_id",
            unique=True,
            postgresql_where=text("NOT used"),
        ),
        Index("idx_csrf_tokens_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<CSRFToken(id={self.id}, session_id={self.session_id}, used={self.used})>"


class UserRateLimit(Base):
    """
    ORM model for user_rate_limits table.

    One fixed-window counter per (user_id, window_type).
    """

    __tablename__ = "user_rate_limits"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    window_type: Mapped[str] = mapped_column(String(10), nullable=False)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "window_type IN ('minute', 'hour', 'day')", name="ck_user_rate_limits_window_type"
        ),
        CheckConstraint("request_count >= 0", name="ck_user_rate_limits_count_non_negative"),
        UniqueConstraint("user_id", "window_type", name="uq_user_rate_limits_user_window"),
        Index("idx_user_rate_limits_window_end", "window_end"),
        Index("idx_user_rate_limits_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UserRateLimit(user_id={self.user_id}, window={self.window_type}, "
            f"count={self.request_count})>"
        )


class IdempotencyKey(Base):
    """
    ORM model for idempotency_keys table.

    Cached responses of side-effecting operations. A NULL response marks
    an in-flight claim that has not produced a response yet.
    """

    __tablename__ = "idempotency_keys"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    response: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_idempotency_keys_expires_at", "expires_at"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<IdempotencyKey(key={self.key}, expires_at={self.expires_at})>"


class QuoteJob(Base):
    """
    ORM model for quote_jobs table.

    Retryable async quote generation jobs. Rows are never deleted.
    At most one pending/processing job per call (uq_quote_jobs_active_call).
    """

    __tablename__ = "quote_jobs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    call_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("calls.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Job state
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    # Timing
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Error tracking
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # "metadata" is reserved on declarative classes
    job_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_quote_jobs_status",
        ),
        CheckConstraint("attempts >= 0", name="ck_quote_jobs_attempts_non_negative"),
        CheckConstraint("max_attempts > 0", name="ck_quote_jobs_max_attempts_positive"),
        CheckConstraint("error_count >= 0", name="ck_quote_jobs_error_count_non_negative"),
        Index(
            "uq_quote_jobs_active_call",
            "call_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
        ),
        Index(
            "idx_quote_jobs_status_scheduled",
            "status",
            "scheduled_at",
            postgresql_where=text("status IN ('pending', 'processing')"),
        ),
        Index("idx_quote_jobs_call_id", "call_id"),
        Index("idx_quote_jobs_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<QuoteJob(id={self.id}, call_id={self.call_id}, status={self.status}, "
            f"attempts={self.attempts}/{self.max_attempts})>"
        )
