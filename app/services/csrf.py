"""
CSRF Token Store - one-time anti-forgery tokens.

NO DICTIONARIES - all token data flows as CSRFTokenData.

A used or expired token never validates again. Each session has at most
one unused token (uq_csrf_tokens_live_session), so get_or_create is a
single upsert on that index instead of a read followed by an insert.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import case, delete, insert, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.budgets import QueryBudget, store_operation
from app.db.models import CSRFToken
from app.exceptions import NotFoundError
from app.models.domain import CSRFTokenData
from app.observability.logging import token_fingerprint
from app.observability.metrics import metrics
from app.services.guards import Guard

logger = get_logger(__name__)

MAX_TOKEN_LENGTH = 128


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _token_to_domain(row: CSRFToken) -> CSRFTokenData:
    """Convert ORM CSRF token to domain model."""
    return CSRFTokenData(
        token_id=row.id,
        token=row.token,
        session_id=row.session_id,
        expires_at=row.expires_at,
        created_at=row.created_at,
        used=row.used,
    )


class CSRFTokenStore:
    """
    Persistence for one-time CSRF tokens.

    Usage:
        store = CSRFTokenStore(session, guard)
        issued = await store.get_or_create(session_id, generate_csrf_token())
        ...
        await store.consume(submitted_token)  # NotFoundError if replayed
    """

    def __init__(self, session: AsyncSession, guard: Guard) -> None:
        """Initialize store with database session and input guard."""
        self.session = session
        self.guard = guard

    def _check_token(self, token: str) -> None:
        self.guard.require_string(token, "token")
        self.guard.require_max_length(token, MAX_TOKEN_LENGTH, "token")

    async def create(self, data: CSRFTokenData, timeout: float | None = None) -> CSRFTokenData:
        """
        Insert a token as given.

        A duplicate token raises ConflictError. A session holds at most one
        unused token (uq_csrf_tokens_live_session), so inserting for a
        session that still has an unused token raises ConflictError even if
        that token has expired. Use get_or_create to issue per-session tokens.
        """
        self.guard.require_uuid(data.token_id, "token_id")
        self._check_token(data.token)

        stmt = insert(CSRFToken).values(
            id=data.token_id,
            token=data.token,
            session_id=data.session_id,
            expires_at=data.expires_at,
            created_at=data.created_at,
            used=data.used,
        )
        async with store_operation(
            self.session, "CSRFTokenStore.create", QueryBudget.WRITE, timeout
        ):
            await self.session.execute(stmt)
            await self.session.commit()

        metrics.record_csrf_event("create", "issued")
        return data

    async def get_by_token(self, token: str, timeout: float | None = None) -> CSRFTokenData:
        """Return the token if unused and unexpired, else NotFoundError."""
        self._check_token(token)
        now = _utc_now()

        stmt = select(CSRFToken).where(
            CSRFToken.token == token,
            CSRFToken.used.is_(False),
            CSRFToken.expires_at > now,
        ).execution_options(populate_existing=True)
        async with store_operation(
            self.session, "CSRFTokenStore.get_by_token", QueryBudget.POINT_READ, timeout
        ):
            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()

            if row is None:
                metrics.record_csrf_event("get_by_token", "invalid")
                raise NotFoundError("CSRF token", "CSRFTokenStore.get_by_token")

        metrics.record_csrf_event("get_by_token", "valid")
        return _token_to_domain(row)

    async def get_or_create(
        self,
        session_id: UUID | None,
        token: str,
        expiry: timedelta | None = None,
        timeout: float | None = None,
    ) -> CSRFTokenData:
        """
        Return the session's live token, or issue token in its place.

        One upsert on the live-token index: a live row comes back unchanged,
        an expired one is replaced by the new token, and a missing one is
        inserted. Without a session a fresh token is always inserted.
        """
        self._check_token(token)
        if expiry is None:
            expiry = timedelta(seconds=settings.csrf_token_expiry_seconds)
        self.guard.require_positive_duration(expiry, "expiry")
        now = _utc_now()

        if session_id is None:
            stmt = (
                pg_insert(CSRFToken)
                .values(
                    id=uuid4(),
                    token=token,
                    session_id=None,
                    expires_at=now + expiry,
                    created_at=now,
                    used=False,
                )
                .returning(CSRFToken)
            )
        else:
            stmt = pg_insert(CSRFToken).values(
                id=uuid4(),
                token=token,
                session_id=session_id,
                expires_at=now + expiry,
                created_at=now,
                used=False,
            )
            live = CSRFToken.expires_at > now
            stmt = stmt.on_conflict_do_update(
                index_elements=[CSRFToken.session_id],
                index_where=text("NOT used"),
                set_={
                    "token": case((live, CSRFToken.token), else_=stmt.excluded.token),
                    "expires_at": case(
                        (live, CSRFToken.expires_at), else_=stmt.excluded.expires_at
                    ),
                    "created_at": case(
                        (live, CSRFToken.created_at), else_=stmt.excluded.created_at
                    ),
                },
            ).returning(CSRFToken)

        stmt = stmt.execution_options(populate_existing=True)
        async with store_operation(
            self.session, "CSRFTokenStore.get_or_create", QueryBudget.WRITE, timeout
        ):
            result = await self.session.execute(stmt)
            data = _token_to_domain(result.scalar_one())
            await self.session.commit()

        reused = data.token != token
        metrics.record_csrf_event("get_or_create", "reused" if reused else "issued")
        logger.debug(
            "csrf_token_reused" if reused else "csrf_token_issued",
            session_id=str(session_id) if session_id else None,
            token_hash=token_fingerprint(data.token),
        )
        return data

    async def mark_used(self, token: str, timeout: float | None = None) -> None:
        """Flag a token as used. NotFoundError if it does not exist."""
        self._check_token(token)

        stmt = update(CSRFToken).where(CSRFToken.token == token).values(used=True)
        async with store_operation(
            self.session, "CSRFTokenStore.mark_used", QueryBudget.WRITE, timeout
        ):
            result = await self.session.execute(stmt)
            await self.session.commit()

            if not result.rowcount:  # type: ignore[attr-defined]
                raise NotFoundError("CSRF token", "CSRFTokenStore.mark_used")

        metrics.record_csrf_event("mark_used", "used")

    async def consume(self, token: str, timeout: float | None = None) -> CSRFTokenData:
        """
        Validate and invalidate a token in one statement.

        Of two concurrent consumers of the same token exactly one succeeds;
        the other, like any replay, gets NotFoundError.
        """
        self._check_token(token)
        now = _utc_now()

        stmt = (
            update(CSRFToken)
            .where(
                CSRFToken.token == token,
                CSRFToken.used.is_(False),
                CSRFToken.expires_at > now,
            )
            .values(used=True)
            .returning(CSRFToken)
            .execution_options(populate_existing=True)
        )
        async with store_operation(
            self.session, "CSRFTokenStore.consume", QueryBudget.WRITE, timeout
        ):
            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()
            data = _token_to_domain(row) if row is not None else None
            await self.session.commit()

            if data is None:
                metrics.record_csrf_event("consume", "rejected")
                logger.warning("csrf_token_rejected", token_hash=token_fingerprint(token))
                raise NotFoundError("CSRF token", "CSRFTokenStore.consume")

        metrics.record_csrf_event("consume", "consumed")
        return data

    async def delete(self, token: str, timeout: float | None = None) -> None:
        """Delete a token."""
        self._check_token(token)

        stmt = delete(CSRFToken).where(CSRFToken.token == token)
        async with store_operation(
            self.session, "CSRFTokenStore.delete", QueryBudget.WRITE, timeout
        ):
            await self.session.execute(stmt)
            await self.session.commit()

    async def delete_by_session_id(self, session_id: UUID, timeout: float | None = None) -> int:
        """Delete every token bound to a session."""
        self.guard.require_uuid(session_id, "session_id")

        stmt = delete(CSRFToken).where(CSRFToken.session_id == session_id)
        async with store_operation(
            self.session, "CSRFTokenStore.delete_by_session_id", QueryBudget.WRITE, timeout
        ):
            result = await self.session.execute(stmt)
            await self.session.commit()

        return result.rowcount or 0  # type: ignore[attr-defined]

    async def delete_expired(self, timeout: float | None = None) -> int:
        """Delete tokens past expires_at."""
        now = _utc_now()

        stmt = delete(CSRFToken).where(CSRFToken.expires_at <= now)
        async with store_operation(
            self.session, "CSRFTokenStore.delete_expired", QueryBudget.WRITE, timeout
        ):
            result = await self.session.execute(stmt)
            await self.session.commit()

        deleted = result.rowcount or 0  # type: ignore[attr-defined]
        if deleted > 0:
            logger.info("csrf_tokens_expired_cleanup", deleted=deleted)
        return deleted
