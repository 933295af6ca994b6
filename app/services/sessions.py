"""
Session Rotator - bearer-token sessions with rotation and a grace window.

NO DICTIONARIES - all session data flows as SessionData.

After rotation the superseded token stays valid for a short grace window
(30s by default) so in-flight requests carrying it still succeed. A
session holds at most one previous token. Once cleared, a previous token
never validates again.
"""

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.budgets import QueryBudget, store_operation
from app.db.models import CSRFToken, UserSession
from app.db.transaction import transactional
from app.exceptions import ConflictError, NotFoundError, ValidationFailedError
from app.models.domain import SessionData
from app.observability.logging import token_fingerprint
from app.observability.metrics import metrics
from app.services.guards import Guard

logger = get_logger(__name__)

MAX_TOKEN_LENGTH = 255


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _session_to_domain(row: UserSession) -> SessionData:
    """Convert ORM session to domain model."""
    return SessionData(
        session_id=row.id,
        user_id=row.user_id,
        token=row.token,
        expires_at=row.expires_at,
        created_at=row.created_at,
        last_active_at=row.last_active_at,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        previous_token=row.previous_token,
        rotated_at=row.rotated_at,
    )


class SessionRotator:
    """
    Session persistence with safe token rotation.

    Usage:
        rotator = SessionRotator(session, guard)
        current = await rotator.get_by_token(bearer)
        if current.should_rotate(now, rotator.rotation_interval):
            current = await rotator.rotate(current.session_id, bearer, generate_session_token())
    """

    def __init__(
        self,
        session: AsyncSession,
        guard: Guard,
        grace: timedelta | None = None,
        rotation_interval: timedelta | None = None,
    ) -> None:
        """Initialize rotator; grace window and rotation interval default to settings."""
        self.session = session
        self.guard = guard
        if grace is None:
            grace = timedelta(seconds=settings.session_token_grace_seconds)
        if rotation_interval is None:
            rotation_interval = timedelta(seconds=settings.session_rotation_interval_seconds)
        self.grace = grace
        self.rotation_interval = rotation_interval

    def _check_token(self, token: str, field: str = "token") -> None:
        self.guard.require_string(token, field)
        self.guard.require_max_length(token, MAX_TOKEN_LENGTH, field)

    async def create(self, data: SessionData, timeout: float | None = None) -> SessionData:
        """Insert a new session. A duplicate token raises ConflictError."""
        self.guard.require_uuid(data.session_id, "session_id")
        self.guard.require_uuid(data.user_id, "user_id")
        self._check_token(data.token)

        row = UserSession(
            id=data.session_id,
            user_id=data.user_id,
            token=data.token,
            expires_at=data.expires_at,
            created_at=data.created_at,
            last_active_at=data.last_active_at,
            ip_address=data.ip_address,
            user_agent=data.user_agent,
            previous_token=data.previous_token,
            rotated_at=data.rotated_at,
        )
        async with store_operation(
            self.session, "SessionRotator.create", QueryBudget.WRITE, timeout
        ):
            self.session.add(row)
            await self.session.commit()

        logger.info(
            "session_created",
            session_id=str(data.session_id),
            user_id=str(data.user_id),
            expires_at=data.expires_at.isoformat(),
        )
        return data

    async def get_by_token(self, token: str, timeout: float | None = None) -> SessionData:
        """
        Find the live session for a bearer token.

        Matches the current token, or the previous token while
        now - rotated_at < grace. Expired sessions never match.
        """
        self._check_token(token)
        now = _utc_now()

        stmt = select(UserSession).where(
            UserSession.expires_at > now,
            or_(
                UserSession.token == token,
                and_(
                    UserSession.previous_token == token,
                    UserSession.rotated_at > now - self.grace,
                ),
            ),
        ).execution_options(populate_existing=True)
        async with store_operation(
            self.session, "SessionRotator.get_by_token", QueryBudget.POINT_READ, timeout
        ):
            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()

            if row is None:
                metrics.record_session_event("get_by_token", "miss")
                raise NotFoundError("Session", "SessionRotator.get_by_token")

        matched = "current" if row.token == token else "previous"
        metrics.record_session_event("get_by_token", matched)
        if matched == "previous":
            logger.debug(
                "session_matched_previous_token",
                session_id=str(row.id),
                token_hash=token_fingerprint(token),
            )
        return _session_to_domain(row)

    async def update(
        self,
        data: SessionData,
        expected_token: str | None = None,
        timeout: float | None = None,
    ) -> SessionData:
        """
        Persist a session snapshot with compare-and-swap on the stored token.

        The write applies only while the row still holds expected_token
        (defaults to data.token). When data.token differs, the snapshot is a
        rotation: token, previous_token and rotated_at are written with the
        activity fields. Otherwise previous_token is only ever cleared, never
        restored, so a stale snapshot cannot revive a cleared token.

        Raises NotFoundError when the session no longer exists and
        ConflictError when its token changed since the snapshot was read.
        """
        self.guard.require_uuid(data.session_id, "session_id")
        self._check_token(data.token)
        expected = expected_token if expected_token is not None else data.token
        self._check_token(expected, "expected_token")

        values: dict[str, Any] = {
            "expires_at": data.expires_at,
            "last_active_at": data.last_active_at,
            "ip_address": data.ip_address,
            "user_agent": data.user_agent,
        }
        if data.token != expected:
            if data.previous_token != expected or data.rotated_at is None:
                raise ValidationFailedError(
                    "previous_token", "rotation must keep the replaced token as previous_token"
                )
            values.update(
                token=data.token,
                previous_token=data.previous_token,
                rotated_at=data.rotated_at,
            )
        elif data.previous_token is None:
            values.update(previous_token=None, rotated_at=None)

        stmt = (
            update(UserSession)
            .where(UserSession.id == data.session_id, UserSession.token == expected)
            .values(**values)
        )
        async with store_operation(
            self.session, "SessionRotator.update", QueryBudget.WRITE, timeout
        ):
            result = await self.session.execute(stmt)
            await self.session.commit()

            if not result.rowcount:  # type: ignore[attr-defined]
                exists = await self.session.execute(
                    select(UserSession.id).where(UserSession.id == data.session_id)
                )
                if exists.scalar_one_or_none() is None:
                    raise NotFoundError("Session", "SessionRotator.update")
                metrics.record_session_event("update", "conflict")
                raise ConflictError("SessionRotator.update", "session token changed since read")

        return data

    async def rotate(
        self,
        session_id: UUID,
        current_token: str,
        new_token: str,
        timeout: float | None = None,
    ) -> SessionData:
        """
        Rotate a session token with compare-and-swap.

        Succeeds only if current_token is still the session's current token,
        so of several concurrent rotators exactly one wins. Losers get
        ConflictError and can keep using current_token during the grace
        window.
        """
        self.guard.require_uuid(session_id, "session_id")
        self._check_token(current_token, "current_token")
        self._check_token(new_token, "new_token")
        now = _utc_now()

        stmt = (
            update(UserSession)
            .where(
                UserSession.id == session_id,
                UserSession.token == current_token,
                UserSession.expires_at > now,
            )
            .values(
                previous_token=UserSession.token,
                token=new_token,
                rotated_at=now,
                last_active_at=now,
            )
            .returning(UserSession)
        )
        async with store_operation(
            self.session, "SessionRotator.rotate", QueryBudget.WRITE, timeout
        ):
            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()
            rotated = _session_to_domain(row) if row is not None else None
            await self.session.commit()

            if rotated is None:
                exists = await self.session.execute(
                    select(UserSession.id).where(
                        UserSession.id == session_id, UserSession.expires_at > now
                    )
                )
                if exists.scalar_one_or_none() is None:
                    raise NotFoundError("Session", "SessionRotator.rotate")
                metrics.record_session_event("rotate", "conflict")
                raise ConflictError("SessionRotator.rotate", "session token already rotated")

        metrics.record_session_event("rotate", "rotated")
        logger.info(
            "session_rotated",
            session_id=str(session_id),
            previous_token_hash=token_fingerprint(current_token),
        )
        return rotated

    async def invalidate_previous_token(
        self, session_id: UUID, timeout: float | None = None
    ) -> None:
        """Clear the previous token now, ending its grace window early."""
        self.guard.require_uuid(session_id, "session_id")

        stmt = (
            update(UserSession)
            .where(UserSession.id == session_id)
            .values(previous_token=None, rotated_at=None)
        )
        async with store_operation(
            self.session, "SessionRotator.invalidate_previous_token", QueryBudget.WRITE, timeout
        ):
            await self.session.execute(stmt)
            await self.session.commit()

        logger.info("session_previous_token_invalidated", session_id=str(session_id))

    async def clear_expired_previous_tokens(self, timeout: float | None = None) -> int:
        """Null out previous tokens whose grace window has elapsed."""
        now = _utc_now()

        stmt = (
            update(UserSession)
            .where(
                UserSession.previous_token.isnot(None),
                UserSession.rotated_at <= now - self.grace,
            )
            .values(previous_token=None, rotated_at=None)
        )
        async with store_operation(
            self.session, "SessionRotator.clear_expired_previous_tokens", QueryBudget.WRITE, timeout
        ):
            result = await self.session.execute(stmt)
            await self.session.commit()

        cleared = result.rowcount or 0  # type: ignore[attr-defined]
        if cleared > 0:
            logger.debug("session_previous_tokens_cleared", cleared=cleared)
        return cleared

    async def delete(self, token: str, timeout: float | None = None) -> None:
        """Delete the session holding this current token."""
        self._check_token(token)

        stmt = delete(UserSession).where(UserSession.token == token)
        async with store_operation(
            self.session, "SessionRotator.delete", QueryBudget.WRITE, timeout
        ):
            await self.session.execute(stmt)
            await self.session.commit()

        logger.info("session_deleted", token_hash=token_fingerprint(token))

    async def delete_expired(self, timeout: float | None = None) -> int:
        """Delete sessions past expires_at."""
        now = _utc_now()

        stmt = delete(UserSession).where(UserSession.expires_at <= now)
        async with store_operation(
            self.session, "SessionRotator.delete_expired", QueryBudget.WRITE, timeout
        ):
            result = await self.session.execute(stmt)
            await self.session.commit()

        deleted = result.rowcount or 0  # type: ignore[attr-defined]
        if deleted > 0:
            logger.info("sessions_expired_cleanup", deleted=deleted)
        return deleted

    async def delete_by_user_id(self, user_id: UUID, timeout: float | None = None) -> int:
        """Delete every session of a user (sign out everywhere)."""
        self.guard.require_uuid(user_id, "user_id")

        stmt = delete(UserSession).where(UserSession.user_id == user_id)
        async with store_operation(
            self.session, "SessionRotator.delete_by_user_id", QueryBudget.WRITE, timeout
        ):
            result = await self.session.execute(stmt)
            await self.session.commit()

        deleted = result.rowcount or 0  # type: ignore[attr-defined]
        logger.info("user_sessions_deleted", user_id=str(user_id), deleted=deleted)
        return deleted

    async def end_session(self, session_id: UUID, timeout: float | None = None) -> None:
        """
        Log out: drop the session's CSRF tokens and the session together.

        Raises NotFoundError if the session is already gone.
        """
        self.guard.require_uuid(session_id, "session_id")

        async with transactional(self.session, "SessionRotator.end_session", timeout):
            await self.session.execute(delete(CSRFToken).where(CSRFToken.session_id == session_id))
            result = await self.session.execute(
                delete(UserSession).where(UserSession.id == session_id)
            )
            if not result.rowcount:  # type: ignore[attr-defined]
                raise NotFoundError("Session", "SessionRotator.end_session")

        logger.info("session_ended", session_id=str(session_id))
