"""
Hypothesis Property-Based Tests for Domain Models.

Uses Hypothesis to generate random inputs and verify:
- Rate-limit window alignment
- Session token grace-window behavior
- Quote job state machine invariants
- Idempotency key stability
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

from hypothesis import given, settings
from hypothesis import strategies as st

from app.models.domain import (
    QuoteJobStatus,
    WindowType,
    new_quote_job,
    new_session,
)
from app.services.idempotency import generate_idempotency_key

GRACE = timedelta(seconds=30)

# ============================================================================
# Hypothesis Strategies - Reusable data generators
# ============================================================================

instants = st.datetimes(
    min_value=datetime(2000, 1, 1),
    max_value=datetime(2100, 1, 1),
    timezones=st.just(UTC),
).map(lambda dt: dt.replace(microsecond=0))

window_types = st.sampled_from(list(WindowType))

tokens = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789-_", min_size=8, max_size=43)

# Outcome of one processing attempt: True completes, False fails
attempt_outcomes = st.lists(st.booleans(), min_size=1, max_size=10)

payloads = st.dictionaries(
    keys=st.text(min_size=1, max_size=10),
    values=st.one_of(st.integers(), st.text(max_size=20), st.booleans()),
    max_size=6,
)


# ============================================================================
# Rate-limit windows
# ============================================================================


class TestWindowProperties:
    """Window boundaries for arbitrary instants."""

    @given(now=instants, window=window_types)
    def test_window_end_is_after_now(self, now, window):
        """now lies inside (window_end - duration, window_end]."""
        end = window.window_end(now)
        assert now < end
        assert end - window.duration <= now

    @given(now=instants, window=window_types)
    def test_window_end_is_aligned(self, now, window):
        """Window ends fall on whole multiples of the duration since the epoch."""
        end = window.window_end(now)
        assert int(end.timestamp()) % int(window.duration.total_seconds()) == 0

    @given(now=instants, window=window_types)
    def test_instants_in_same_window_share_end(self, now, window):
        """Every instant up to the boundary maps to the same window."""
        end = window.window_end(now)
        last_second = end - timedelta(seconds=1)
        assert window.window_end(last_second) == end


# ============================================================================
# Sessions
# ============================================================================


class TestSessionProperties:
    """Token acceptance around rotation."""

    @given(
        old=tokens,
        new=tokens,
        elapsed=st.integers(min_value=0, max_value=120),
    )
    def test_previous_token_accepted_only_inside_grace(self, old, new, elapsed):
        """Old token works for under 30 seconds after rotation."""
        if old == new:
            return
        now = datetime(2026, 1, 1, tzinfo=UTC)
        session = new_session(uuid4(), old, timedelta(hours=24), now)
        rotated = session.rotate_token(new, now)

        later = now + timedelta(seconds=elapsed)
        assert rotated.matches_token(new, later, GRACE)
        assert rotated.matches_token(old, later, GRACE) == (elapsed < 30)


# ============================================================================
# Quote jobs
# ============================================================================


class TestQuoteJobProperties:
    """State machine invariants under arbitrary attempt outcomes."""

    @settings(max_examples=200)
    @given(
        max_attempts=st.integers(min_value=1, max_value=6),
        outcomes=attempt_outcomes,
    )
    def test_attempts_never_exceed_max(self, max_attempts, outcomes):
        """Running a job until terminal never over-counts attempts."""
        now = datetime(2026, 1, 1, tzinfo=UTC)
        job = new_quote_job(uuid4(), now, max_attempts=max_attempts)

        for succeeded in outcomes:
            if job.is_terminal():
                break
            job = job.mark_processing(now)
            job = job.mark_completed(now) if succeeded else job.mark_failed("boom", now)

            assert 0 <= job.attempts <= job.max_attempts
            assert job.status in (
                QuoteJobStatus.PENDING,
                QuoteJobStatus.COMPLETED,
                QuoteJobStatus.FAILED,
            )
            if job.status == QuoteJobStatus.FAILED:
                assert job.attempts == job.max_attempts
            if job.status == QuoteJobStatus.PENDING:
                assert job.scheduled_at > now

    @given(max_attempts=st.integers(min_value=1, max_value=6))
    def test_always_failing_job_ends_failed(self, max_attempts):
        """A job that never succeeds fails after exactly max_attempts tries."""
        now = datetime(2026, 1, 1, tzinfo=UTC)
        job = new_quote_job(uuid4(), now, max_attempts=max_attempts)

        tries = 0
        while not job.is_terminal():
            job = job.mark_processing(now).mark_failed("boom", now)
            tries += 1

        assert tries == max_attempts
        assert job.status == QuoteJobStatus.FAILED
        assert job.error_count == max_attempts


# ============================================================================
# Idempotency keys
# ============================================================================


class TestIdempotencyKeyProperties:
    """Key generation is deterministic and order-insensitive."""

    @given(payload=payloads)
    def test_key_ignores_dict_order(self, payload):
        """Reversed insertion order yields the same key."""
        reversed_payload = dict(reversed(list(payload.items())))
        assert generate_idempotency_key("place_call", "user-1", payload) == (
            generate_idempotency_key("place_call", "user-1", reversed_payload)
        )

    @given(payload=payloads)
    def test_key_format(self, payload):
        """operation:scope:16-hex-digest."""
        key = generate_idempotency_key("place_call", "user-1", payload)
        operation, scope, digest = key.split(":")
        assert operation == "place_call"
        assert scope == "user-1"
        assert len(digest) == 16
        assert all(c in "0123456789abcdef" for c in digest)
