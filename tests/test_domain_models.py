"""
Tests for domain models.

Covers session token rotation, CSRF validity, rate-limit windows and the
quote job state machine.
"""

from dataclasses import FrozenInstanceError, replace
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from app.exceptions import InvalidJobTransitionError
from app.models.domain import (
    QuoteJobData,
    QuoteJobStatus,
    WindowType,
    generate_csrf_token,
    generate_session_token,
    new_csrf_token,
    new_quote_job,
    new_session,
)
from tests.conftest import FIXED_NOW

GRACE = timedelta(seconds=30)
ROTATION_INTERVAL = timedelta(minutes=15)


class TestTokenGeneration:
    """Random token helpers."""

    def test_session_tokens_are_unique(self):
        """Two calls never collide."""
        assert generate_session_token() != generate_session_token()

    def test_csrf_token_is_url_safe(self):
        """32 bytes base64url-encoded is 43 characters."""
        token = generate_csrf_token()
        assert len(token) == 43
        assert all(c.isalnum() or c in "-_" for c in token)


class TestSessionData:
    """Tests for SessionData."""

    def _session(self, **overrides):
        session = new_session(uuid4(), "token-a", timedelta(hours=24), FIXED_NOW)
        return replace(session, **overrides) if overrides else session

    def test_new_session_defaults(self):
        """A fresh session has never been rotated."""
        session = self._session()
        assert session.expires_at == FIXED_NOW + timedelta(hours=24)
        assert session.last_active_at == FIXED_NOW
        assert session.previous_token is None
        assert session.rotated_at is None

    def test_is_frozen(self):
        """Sessions are immutable."""
        session = self._session()
        with pytest.raises(FrozenInstanceError):
            session.token = "other"  # type: ignore[misc]

    def test_is_expired_at_boundary(self):
        """expires_at itself counts as expired."""
        session = self._session()
        assert not session.is_expired(session.expires_at - timedelta(seconds=1))
        assert session.is_expired(session.expires_at)

    def test_rotate_token_keeps_previous(self):
        """Rotation moves the old token into previous_token."""
        session = self._session()
        rotated = session.rotate_token("token-b", FIXED_NOW)

        assert rotated.token == "token-b"
        assert rotated.previous_token == "token-a"
        assert rotated.rotated_at == FIXED_NOW
        assert rotated.last_active_at == FIXED_NOW
        assert session.token == "token-a"

    def test_matches_current_token(self):
        """Current token always matches."""
        session = self._session()
        assert session.matches_token("token-a", FIXED_NOW, GRACE)
        assert not session.matches_token("token-z", FIXED_NOW, GRACE)

    def test_previous_token_valid_inside_grace(self):
        """Old token keeps working for the grace window."""
        rotated = self._session().rotate_token("token-b", FIXED_NOW)
        assert rotated.matches_token("token-a", FIXED_NOW + timedelta(seconds=29), GRACE)

    def test_previous_token_invalid_after_grace(self):
        """Old token stops working once the grace window has passed."""
        rotated = self._session().rotate_token("token-b", FIXED_NOW)
        assert not rotated.matches_token("token-a", FIXED_NOW + GRACE, GRACE)
        assert rotated.matches_token("token-b", FIXED_NOW + GRACE, GRACE)

    def test_invalidate_previous_token(self):
        """Invalidation ends the grace window immediately."""
        rotated = self._session().rotate_token("token-b", FIXED_NOW)
        cleared = rotated.invalidate_previous_token()

        assert cleared.previous_token is None
        assert cleared.rotated_at is None
        assert not cleared.is_within_grace_period(FIXED_NOW, GRACE)

    def test_should_rotate(self):
        """Idle sessions past the interval should rotate."""
        session = self._session()
        assert not session.should_rotate(FIXED_NOW + timedelta(minutes=15), ROTATION_INTERVAL)
        assert session.should_rotate(FIXED_NOW + timedelta(minutes=16), ROTATION_INTERVAL)

    def test_refresh_extends_expiry(self):
        """Refresh pushes expiry out from now."""
        later = FIXED_NOW + timedelta(hours=2)
        refreshed = self._session().refresh(later, timedelta(hours=24))
        assert refreshed.expires_at == later + timedelta(hours=24)
        assert refreshed.last_active_at == later

    def test_touch(self):
        """Touch only updates activity."""
        session = self._session()
        later = FIXED_NOW + timedelta(minutes=3)
        touched = session.touch(later)
        assert touched.last_active_at == later
        assert touched.expires_at == session.expires_at


class TestCSRFTokenData:
    """Tests for CSRFTokenData."""

    def test_new_token_is_valid(self):
        """Fresh tokens are unused and unexpired."""
        token = new_csrf_token(FIXED_NOW, timedelta(hours=24))
        assert token.is_valid(FIXED_NOW)
        assert token.used is False
        assert token.session_id is None

    def test_expired_token_is_invalid(self):
        """Tokens are invalid from expires_at onwards."""
        token = new_csrf_token(FIXED_NOW, timedelta(hours=1))
        assert not token.is_valid(FIXED_NOW + timedelta(hours=1))

    def test_explicit_token_value(self):
        """Callers can supply the token string."""
        session_id = uuid4()
        token = new_csrf_token(FIXED_NOW, timedelta(hours=1), session_id, token="abc")
        assert token.token == "abc"
        assert token.session_id == session_id


class TestWindowType:
    """Tests for fixed rate-limit windows."""

    def test_durations(self):
        """Each window has its fixed length."""
        assert WindowType.MINUTE.duration == timedelta(minutes=1)
        assert WindowType.HOUR.duration == timedelta(hours=1)
        assert WindowType.DAY.duration == timedelta(days=1)

    def test_minute_window_end(self):
        """12:30:15 falls in the window ending 12:31:00."""
        assert WindowType.MINUTE.window_end(FIXED_NOW) == datetime(2026, 3, 14, 12, 31, tzinfo=UTC)

    def test_hour_window_end(self):
        """12:30:15 falls in the window ending 13:00:00."""
        assert WindowType.HOUR.window_end(FIXED_NOW) == datetime(2026, 3, 14, 13, 0, tzinfo=UTC)

    def test_day_window_end(self):
        """Day windows end at UTC midnight."""
        assert WindowType.DAY.window_end(FIXED_NOW) == datetime(2026, 3, 15, tzinfo=UTC)

    def test_window_end_on_boundary(self):
        """An instant exactly on a boundary opens the next window."""
        boundary = datetime(2026, 3, 14, 13, 0, tzinfo=UTC)
        assert WindowType.HOUR.window_end(boundary) == datetime(2026, 3, 14, 14, 0, tzinfo=UTC)


class TestQuoteJobData:
    """Tests for the quote job state machine."""

    def _job(self, max_attempts: int = 3) -> QuoteJobData:
        return new_quote_job(uuid4(), FIXED_NOW, max_attempts=max_attempts)

    def test_new_job_is_pending_and_ready(self):
        """New jobs are eligible immediately."""
        job = self._job()
        assert job.status == QuoteJobStatus.PENDING
        assert job.attempts == 0
        assert job.is_ready(FIXED_NOW)
        assert not job.is_terminal()

    def test_max_attempts_must_be_positive(self):
        """Zero attempts allowed is rejected."""
        with pytest.raises(ValueError, match="max_attempts"):
            new_quote_job(uuid4(), FIXED_NOW, max_attempts=0)

    def test_mark_processing_counts_attempt(self):
        """Starting a job counts one attempt."""
        job = self._job().mark_processing(FIXED_NOW)
        assert job.status == QuoteJobStatus.PROCESSING
        assert job.attempts == 1
        assert job.started_at == FIXED_NOW

    def test_mark_completed(self):
        """processing -> completed is terminal."""
        job = self._job().mark_processing(FIXED_NOW).mark_completed(FIXED_NOW)
        assert job.status == QuoteJobStatus.COMPLETED
        assert job.completed_at == FIXED_NOW
        assert job.is_terminal()
        assert not job.can_retry()

    def test_pending_cannot_complete(self):
        """Skipping processing is forbidden."""
        with pytest.raises(InvalidJobTransitionError):
            self._job().mark_completed(FIXED_NOW)

    def test_completed_cannot_restart(self):
        """Terminal jobs stay terminal."""
        job = self._job().mark_processing(FIXED_NOW).mark_completed(FIXED_NOW)
        with pytest.raises(InvalidJobTransitionError):
            job.mark_processing(FIXED_NOW)

    def test_pending_cannot_fail(self):
        """Only a running job can record a failure."""
        with pytest.raises(InvalidJobTransitionError):
            self._job().mark_failed("boom", FIXED_NOW)

    def test_retry_backoff_schedule(self):
        """Failures back off 5s then 15s before failing permanently."""
        job = self._job()

        job = job.mark_processing(FIXED_NOW).mark_failed("first", FIXED_NOW)
        assert job.status == QuoteJobStatus.PENDING
        assert job.scheduled_at == FIXED_NOW + timedelta(seconds=5)
        assert job.next_retry_at() == FIXED_NOW + timedelta(seconds=5)
        assert not job.is_ready(FIXED_NOW)

        job = job.mark_processing(FIXED_NOW).mark_failed("second", FIXED_NOW)
        assert job.status == QuoteJobStatus.PENDING
        assert job.scheduled_at == FIXED_NOW + timedelta(seconds=15)

        job = job.mark_processing(FIXED_NOW).mark_failed("third", FIXED_NOW)
        assert job.status == QuoteJobStatus.FAILED
        assert job.completed_at == FIXED_NOW
        assert job.last_error == "third"
        assert job.error_count == 3
        assert job.attempts == 3

    def test_single_attempt_job_fails_immediately(self):
        """With one attempt allowed the first failure is final."""
        job = self._job(max_attempts=1).mark_processing(FIXED_NOW)
        failed = job.mark_failed("boom", FIXED_NOW)
        assert failed.status == QuoteJobStatus.FAILED

    def test_long_backoff_after_many_attempts(self):
        """Later attempts wait a full minute."""
        job = self._job(max_attempts=5)
        for _ in range(3):
            job = job.mark_processing(FIXED_NOW).mark_failed("again", FIXED_NOW)
        assert job.scheduled_at == FIXED_NOW + timedelta(seconds=60)

    def test_metadata_is_copied(self):
        """Metadata passed in is not shared with the caller."""
        metadata = {"source": "inbound"}
        job = new_quote_job(uuid4(), FIXED_NOW, metadata=metadata)
        metadata["source"] = "changed"
        assert job.metadata == {"source": "inbound"}
