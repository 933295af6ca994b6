"""
Rate Limiter - per-user fixed-window request counters.

One counter row per (user_id, window_type). Windows are aligned to UTC
(minute, hour, day). The increment is a single conditional upsert: an
elapsed window resets to 1, a live window increments, so concurrent
requests from every process see a consistent count.

Fixed windows admit up to twice the limit for a burst straddling a
boundary. That trade-off is accepted for a one-statement counter.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import case, delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.budgets import QueryBudget, store_operation
from app.db.models import UserRateLimit
from app.exceptions import DatabaseError, RateLimitExceededError
from app.models.domain import WindowType
from app.observability.metrics import metrics
from app.services.guards import Guard

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class RateLimiter:
    """
    Distributed per-user rate limiter.

    Usage:
        limiter = RateLimiter(session, guard)
        await limiter.allow(user_id)  # raises RateLimitExceededError
    """

    def __init__(
        self,
        session: AsyncSession,
        guard: Guard,
        limits: dict[WindowType, int] | None = None,
        fail_open: bool | None = None,
    ) -> None:
        """Initialize limiter; limits and fail-open default to settings."""
        self.session = session
        self.guard = guard
        self.limits = limits or {
            WindowType.MINUTE: settings.rate_limit_per_minute,
            WindowType.HOUR: settings.rate_limit_per_hour,
            WindowType.DAY: settings.rate_limit_per_day,
        }
        self.fail_open = settings.rate_limit_fail_open if fail_open is None else fail_open

    def _window(self, window_type: WindowType | str) -> WindowType:
        value = window_type.value if isinstance(window_type, WindowType) else window_type
        self.guard.require_one_of(value, [w.value for w in WindowType], "window_type")
        return WindowType(value)

    async def increment_request_count(
        self,
        user_id: UUID,
        window_type: WindowType | str,
        timeout: float | None = None,
    ) -> int:
        """
        Count one request against a window and return the new count.

        The first request after window_end starts a fresh window at 1.
        """
        self.guard.require_uuid(user_id, "user_id")
        window = self._window(window_type)
        now = _utc_now()
        window_end = window.window_end(now)

        elapsed = UserRateLimit.window_end <= now
        stmt = (
            pg_insert(UserRateLimit)
            .values(
                id=uuid4(),
                user_id=user_id,
                window_type=window.value,
                request_count=1,
                window_end=window_end,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_update(
                index_elements=[UserRateLimit.user_id, UserRateLimit.window_type],
                set_={
                    "request_count": case(
                        (elapsed, 1), else_=UserRateLimit.request_count + 1
                    ),
                    "window_end": case((elapsed, window_end), else_=UserRateLimit.window_end),
                    "updated_at": now,
                },
            )
            .returning(UserRateLimit.request_count)
        )
        async with store_operation(
            self.session, "RateLimiter.increment_request_count", QueryBudget.WRITE, timeout
        ):
            result = await self.session.execute(stmt)
            count: int = result.scalar_one()
            await self.session.commit()

        return count

    async def get_request_count(
        self,
        user_id: UUID,
        window_type: WindowType | str,
        timeout: float | None = None,
    ) -> int:
        """Current count in the live window; absent or elapsed windows read as 0."""
        self.guard.require_uuid(user_id, "user_id")
        window = self._window(window_type)
        now = _utc_now()

        stmt = select(UserRateLimit.request_count).where(
            UserRateLimit.user_id == user_id,
            UserRateLimit.window_type == window.value,
            UserRateLimit.window_end > now,
        )
        async with store_operation(
            self.session, "RateLimiter.get_request_count", QueryBudget.POINT_READ, timeout
        ):
            result = await self.session.execute(stmt)
            count: int | None = result.scalar_one_or_none()

        return count or 0

    async def reset_expired_windows(self, timeout: float | None = None) -> int:
        """Delete counters whose window has elapsed."""
        now = _utc_now()

        stmt = delete(UserRateLimit).where(UserRateLimit.window_end <= now)
        async with store_operation(
            self.session, "RateLimiter.reset_expired_windows", QueryBudget.WRITE, timeout
        ):
            result = await self.session.execute(stmt)
            await self.session.commit()

        deleted = result.rowcount or 0  # type: ignore[attr-defined]
        if deleted > 0:
            logger.debug("rate_limit_windows_cleanup", deleted=deleted)
        return deleted

    async def allow(self, user_id: UUID) -> None:
        """
        Admit one request or raise RateLimitExceededError.

        Checks minute, then hour, then day; the first window over its limit
        rejects. Later windows are not counted for a rejected request.
        When the store is unavailable and fail_open is set, the request is
        admitted and the failure logged.
        """
        for window in (WindowType.MINUTE, WindowType.HOUR, WindowType.DAY):
            limit = self.limits[window]
            try:
                count = await self.increment_request_count(user_id, window)
            except DatabaseError as e:
                if not self.fail_open:
                    raise
                logger.error(
                    "rate_limit_check_failed_open",
                    user_id=str(user_id),
                    window=window.value,
                    error=str(e),
                )
                return

            if count > limit:
                metrics.record_rate_limit(window.value, allowed=False)
                logger.warning(
                    "rate_limit_exceeded",
                    user_id=str(user_id),
                    window=window.value,
                    count=count,
                    limit=limit,
                )
                raise RateLimitExceededError(user_id, window.value, count, limit)

            metrics.record_rate_limit(window.value, allowed=True)
