"""
Tests for input guards.
"""

from datetime import timedelta
from unittest.mock import patch
from uuid import UUID, uuid4

import pytest

from app.exceptions import ValidationFailedError
from app.services.guards import NIL_UUID, Guard
from tests.conftest import FIXED_NOW


class TestIdentifierGuards:
    """UUID and string checks."""

    def test_require_uuid_accepts_uuid(self, guard):
        """A real UUID passes."""
        guard.require_uuid(uuid4(), "user_id")

    @pytest.mark.parametrize("value", [None, NIL_UUID, UUID(int=0)])
    def test_require_uuid_rejects_nil(self, guard, value):
        """None and the nil UUID are rejected."""
        with pytest.raises(ValidationFailedError) as exc_info:
            guard.require_uuid(value, "user_id")
        assert exc_info.value.field == "user_id"

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_require_string_rejects_blank(self, guard, value):
        """Empty or whitespace strings are rejected."""
        with pytest.raises(ValidationFailedError):
            guard.require_string(value, "token")

    def test_require_bytes_allows_empty(self, guard):
        """Empty bytes are a valid response body."""
        guard.require_bytes(b"", "response")

    def test_require_bytes_rejects_none(self, guard):
        """None is not a response."""
        with pytest.raises(ValidationFailedError):
            guard.require_bytes(None, "response")

    def test_require_max_length(self, guard):
        """Over-long strings are rejected."""
        guard.require_max_length("a" * 10, 10, "key")
        with pytest.raises(ValidationFailedError, match="must not exceed 10"):
            guard.require_max_length("a" * 11, 10, "key")


class TestNumericGuards:
    """Integer and range checks."""

    def test_require_positive(self, guard):
        """Zero is not positive."""
        guard.require_positive(1, "limit")
        with pytest.raises(ValidationFailedError):
            guard.require_positive(0, "limit")

    def test_require_non_negative(self, guard):
        """Zero is allowed, negatives are not."""
        guard.require_non_negative(0, "attempts")
        with pytest.raises(ValidationFailedError):
            guard.require_non_negative(-1, "attempts")

    def test_require_in_range_bounds_inclusive(self, guard):
        """Both bounds are inclusive."""
        guard.require_in_range(1, 1, 1000, "limit")
        guard.require_in_range(1000, 1, 1000, "limit")
        with pytest.raises(ValidationFailedError, match="between 1 and 1000"):
            guard.require_in_range(1001, 1, 1000, "limit")

    def test_require_one_of(self, guard):
        """Value must be in the allowed set."""
        guard.require_one_of("hour", ["minute", "hour", "day"], "window_type")
        with pytest.raises(ValidationFailedError, match="minute, hour, day"):
            guard.require_one_of("week", ["minute", "hour", "day"], "window_type")


class TestTimeGuards:
    """Timestamp and duration checks."""

    def test_require_not_in_past_allows_future(self, guard):
        """Future timestamps pass."""
        with patch("app.services.guards._utc_now", return_value=FIXED_NOW):
            guard.require_not_in_past(FIXED_NOW + timedelta(hours=1), "expires_at")

    def test_require_not_in_past_tolerates_clock_skew(self, guard):
        """Timestamps within the skew allowance pass."""
        with patch("app.services.guards._utc_now", return_value=FIXED_NOW):
            guard.require_not_in_past(FIXED_NOW - timedelta(seconds=30), "expires_at")

    def test_require_not_in_past_rejects_old(self, guard):
        """Timestamps beyond the skew allowance fail."""
        with patch("app.services.guards._utc_now", return_value=FIXED_NOW):
            with pytest.raises(ValidationFailedError, match="must not be in the past"):
                guard.require_not_in_past(FIXED_NOW - timedelta(minutes=2), "expires_at")

    def test_custom_clock_skew(self):
        """A zero skew rejects anything before now."""
        strict = Guard(clock_skew=timedelta(0))
        with patch("app.services.guards._utc_now", return_value=FIXED_NOW):
            with pytest.raises(ValidationFailedError):
                strict.require_not_in_past(FIXED_NOW - timedelta(seconds=1), "expires_at")

    def test_require_positive_duration(self, guard):
        """Zero and negative durations are rejected."""
        guard.require_positive_duration(timedelta(seconds=1), "older_than")
        with pytest.raises(ValidationFailedError):
            guard.require_positive_duration(timedelta(0), "older_than")
        with pytest.raises(ValidationFailedError):
            guard.require_positive_duration(timedelta(seconds=-5), "older_than")
