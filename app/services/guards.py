"""
Input Guards - validate store inputs before any database access.

Each store receives its Guard explicitly; there is no process-wide
validator. Every check raises ValidationFailedError naming the field.
"""

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from uuid import UUID

from app.exceptions import ValidationFailedError

NIL_UUID = UUID(int=0)


def _utc_now() -> datetime:
    """Get current UTC time (patchable in tests)."""
    return datetime.now(UTC)


class Guard:
    """Fail-fast validation for store arguments."""

    def __init__(self, clock_skew: timedelta = timedelta(minutes=1)) -> None:
        self.clock_skew = clock_skew

    def require_uuid(self, value: UUID | None, field: str) -> None:
        if value is None or value == NIL_UUID:
            raise ValidationFailedError(field, "is required")

    def require_string(self, value: str | None, field: str) -> None:
        if value is None or not value.strip():
            raise ValidationFailedError(field, "is required")

    def require_bytes(self, value: bytes | None, field: str) -> None:
        if value is None:
            raise ValidationFailedError(field, "is required")

    def require_positive(self, value: int, field: str) -> None:
        if value <= 0:
            raise ValidationFailedError(field, "must be positive")

    def require_non_negative(self, value: int, field: str) -> None:
        if value < 0:
            raise ValidationFailedError(field, "must not be negative")

    def require_in_range(self, value: int, minimum: int, maximum: int, field: str) -> None:
        if value < minimum or value > maximum:
            raise ValidationFailedError(field, f"must be between {minimum} and {maximum}")

    def require_max_length(self, value: str, max_length: int, field: str) -> None:
        if len(value) > max_length:
            raise ValidationFailedError(field, f"must not exceed {max_length} characters")

    def require_not_in_past(self, value: datetime, field: str) -> None:
        """Reject timestamps already in the past, allowing for clock skew."""
        if value < _utc_now() - self.clock_skew:
            raise ValidationFailedError(field, "must not be in the past")

    def require_positive_duration(self, value: timedelta, field: str) -> None:
        if value <= timedelta(0):
            raise ValidationFailedError(field, "must be positive")

    def require_one_of(self, value: str, allowed: Iterable[str], field: str) -> None:
        options = list(allowed)
        if value not in options:
            raise ValidationFailedError(field, f"must be one of: {', '.join(options)}")
