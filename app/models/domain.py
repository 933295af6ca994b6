"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
(Quote job metadata is the one opaque bag, carried unchanged.)

State changes return a new instance via dataclasses.replace(); the current
time is always passed in so callers control the clock.
"""

import hmac
import secrets
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from app.exceptions import InvalidJobTransitionError

DEFAULT_MAX_ATTEMPTS = 3


class QuoteJobStatus(str, Enum):
    """Quote job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WindowType(str, Enum):
    """Fixed rate-limit windows, aligned to UTC."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"

    @property
    def duration(self) -> timedelta:
        """Length of the window."""
        if self == WindowType.MINUTE:
            return timedelta(minutes=1)
        if self == WindowType.HOUR:
            return timedelta(hours=1)
        return timedelta(days=1)

    def window_end(self, now: datetime) -> datetime:
        """End of the window containing now: truncate(now, duration) + duration."""
        seconds = int(self.duration.total_seconds())
        epoch = int(now.timestamp())
        start = datetime.fromtimestamp(epoch - epoch % seconds, tz=UTC)
        return start + self.duration


def generate_session_token() -> str:
    """Random URL-safe bearer token (32 bytes of entropy)."""
    return secrets.token_urlsafe(32)


def generate_csrf_token() -> str:
    """Random URL-safe CSRF token (32 bytes of entropy)."""
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class SessionData:
    """Immutable session snapshot."""

    session_id: UUID
    user_id: UUID
    token: str
    expires_at: datetime
    created_at: datetime
    last_active_at: datetime | None
    ip_address: str | None
    user_agent: str | None
    previous_token: str | None = None
    rotated_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        """True once expires_at has passed."""
        return now >= self.expires_at

    def is_within_grace_period(self, now: datetime, grace: timedelta) -> bool:
        """True while the previous token is still accepted."""
        if self.previous_token is None or self.rotated_at is None:
            return False
        return now - self.rotated_at < grace

    def matches_token(self, token: str, now: datetime, grace: timedelta) -> bool:
        """Match the current token, or the previous one inside the grace window."""
        if hmac.compare_digest(self.token, token):
            return True
        return (
            self.previous_token is not None
            and hmac.compare_digest(self.previous_token, token)
            and self.is_within_grace_period(now, grace)
        )

    def should_rotate(self, now: datetime, interval: timedelta) -> bool:
        """True when the session has been idle longer than the rotation interval."""
        last = self.last_active_at or self.created_at
        return now - last > interval

    def touch(self, now: datetime) -> "SessionData":
        """Record activity."""
        return replace(self, last_active_at=now)

    def refresh(self, now: datetime, duration: timedelta) -> "SessionData":
        """Extend expiry from now and record activity."""
        return replace(self, expires_at=now + duration, last_active_at=now)

    def rotate_token(self, new_token: str, now: datetime) -> "SessionData":
        """Swap in a new token, keeping the old one for the grace window."""
        return replace(
            self,
            previous_token=self.token,
            token=new_token,
            rotated_at=now,
            last_active_at=now,
        )

    def invalidate_previous_token(self) -> "SessionData":
        """Drop the previous token immediately."""
        return replace(self, previous_token=None, rotated_at=None)


def new_session(
    user_id: UUID,
    token: str,
    duration: timedelta,
    now: datetime,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> SessionData:
    """Build a fresh session that has never been rotated."""
    return SessionData(
        session_id=uuid4(),
        user_id=user_id,
        token=token,
        expires_at=now + duration,
        created_at=now,
        last_active_at=now,
        ip_address=ip_address,
        user_agent=user_agent,
    )


@dataclass(frozen=True)
class CSRFTokenData:
    """Immutable CSRF token snapshot."""

    token_id: UUID
    token: str
    session_id: UUID | None
    expires_at: datetime
    created_at: datetime
    used: bool

    def is_valid(self, now: datetime) -> bool:
        """Unused and unexpired."""
        return not self.used and now < self.expires_at


def new_csrf_token(
    now: datetime,
    expiry: timedelta,
    session_id: UUID | None = None,
    token: str | None = None,
) -> CSRFTokenData:
    """Build an unused CSRF token valid for expiry from now."""
    return CSRFTokenData(
        token_id=uuid4(),
        token=token or generate_csrf_token(),
        session_id=session_id,
        expires_at=now + expiry,
        created_at=now,
        used=False,
    )


@dataclass(frozen=True)
class QuoteJobData:
    """
    Immutable quote job snapshot with an enforced state machine.

    pending -> processing -> completed
    processing -> pending (retry, backoff 5s, 15s, then 60s)
    processing -> failed (attempts exhausted)
    """

    job_id: UUID
    call_id: UUID
    status: QuoteJobStatus
    attempts: int
    max_attempts: int
    created_at: datetime
    updated_at: datetime
    scheduled_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None
    error_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate job counters."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be positive: {self.max_attempts}")
        if self.attempts < 0:
            raise ValueError(f"attempts cannot be negative: {self.attempts}")

    def _require(self, expected: QuoteJobStatus, target: QuoteJobStatus) -> None:
        if self.status != expected:
            raise InvalidJobTransitionError(self.job_id, self.status.value, target.value)

    def can_retry(self) -> bool:
        """True while attempts remain and the job has not completed."""
        return self.attempts < self.max_attempts and self.status != QuoteJobStatus.COMPLETED

    def is_terminal(self) -> bool:
        """True for completed and failed jobs."""
        return self.status in (QuoteJobStatus.COMPLETED, QuoteJobStatus.FAILED)

    def is_ready(self, now: datetime) -> bool:
        """Pending and its scheduled time has arrived."""
        return self.status == QuoteJobStatus.PENDING and self.scheduled_at <= now

    def backoff(self) -> timedelta:
        """Delay before the next attempt, by attempts made so far."""
        if self.attempts <= 1:
            return timedelta(seconds=5)
        if self.attempts == 2:
            return timedelta(seconds=15)
        return timedelta(seconds=60)

    def next_retry_at(self) -> datetime | None:
        """When a re-scheduled job becomes eligible again."""
        if self.status == QuoteJobStatus.PENDING and self.attempts > 0:
            return self.scheduled_at
        return None

    def mark_processing(self, now: datetime) -> "QuoteJobData":
        """pending -> processing; counts one attempt."""
        self._require(QuoteJobStatus.PENDING, QuoteJobStatus.PROCESSING)
        return replace(
            self,
            status=QuoteJobStatus.PROCESSING,
            attempts=self.attempts + 1,
            started_at=now,
            updated_at=now,
        )

    def mark_completed(self, now: datetime) -> "QuoteJobData":
        """processing -> completed."""
        self._require(QuoteJobStatus.PROCESSING, QuoteJobStatus.COMPLETED)
        return replace(
            self,
            status=QuoteJobStatus.COMPLETED,
            completed_at=now,
            updated_at=now,
        )

    def mark_failed(self, error: str, now: datetime) -> "QuoteJobData":
        """
        Record a failed attempt.

        Re-schedules with backoff while attempts remain, otherwise the job
        fails permanently.
        """
        if self.status != QuoteJobStatus.PROCESSING:
            raise InvalidJobTransitionError(
                self.job_id, self.status.value, "pending/failed"
            )
        if self.can_retry():
            return replace(
                self,
                status=QuoteJobStatus.PENDING,
                scheduled_at=now + self.backoff(),
                last_error=error,
                error_count=self.error_count + 1,
                updated_at=now,
            )
        return replace(
            self,
            status=QuoteJobStatus.FAILED,
            completed_at=now,
            last_error=error,
            error_count=self.error_count + 1,
            updated_at=now,
        )


def new_quote_job(
    call_id: UUID,
    now: datetime,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    metadata: dict[str, Any] | None = None,
) -> QuoteJobData:
    """Build a pending job eligible immediately."""
    return QuoteJobData(
        job_id=uuid4(),
        call_id=call_id,
        status=QuoteJobStatus.PENDING,
        attempts=0,
        max_attempts=max_attempts,
        created_at=now,
        updated_at=now,
        scheduled_at=now,
        metadata=dict(metadata or {}),
    )
