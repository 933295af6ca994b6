"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Every store operation re-raises infrastructure failures as one of these,
tagged with the operation name. Retry policy belongs to the caller.
"""

from uuid import UUID


class QuoteCoreError(Exception):
    """Base exception for all coordination-layer errors."""

    retriable: bool = False


class NotFoundError(QuoteCoreError):
    """Raised when a row is absent (or expired, or no longer valid)."""

    def __init__(self, resource: str, operation: str | None = None) -> None:
        self.resource = resource
        self.operation = operation
        if operation:
            super().__init__(f"{operation}: {resource} not found")
        else:
            super().__init__(f"{resource} not found")


class ValidationFailedError(QuoteCoreError):
    """Raised when a guard check fails before any store access."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"Validation failed for {field}: {message}")


class InvalidJobTransitionError(ValidationFailedError):
    """Raised when a quote job is moved along an edge the state machine forbids."""

    def __init__(self, job_id: UUID, current: str, target: str) -> None:
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__("status", f"job {job_id} cannot move from {current} to {target}")


class DatabaseError(QuoteCoreError):
    """Raised when a store operation fails for infrastructure reasons."""

    retriable = True

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"Database error in {operation}: {message}")


class ConflictError(QuoteCoreError):
    """Raised on uniqueness races and lost compare-and-swap updates."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"Conflict in {operation}: {message}")


class RateLimitExceededError(QuoteCoreError):
    """Raised when a user has used up a rate-limit window."""

    def __init__(self, user_id: UUID, window: str, count: int, limit: int) -> None:
        self.user_id = user_id
        self.window = window
        self.count = count
        self.limit = limit
        super().__init__(
            f"Rate limit exceeded for user {user_id}: {count}/{limit} per {window}"
        )
