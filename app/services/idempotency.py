"""
Idempotency Store - cached responses for side-effecting operations.

NO DICTIONARIES - responses are opaque bytes keyed by a string.

A key holds at most one live (unexpired) record. save() is a single
atomic upsert: concurrent saves race and the last commit wins, so save()
alone gives no single-flight guarantee. Callers that must run a side
effect at most once use claim() first.
"""

import hashlib
import json
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.budgets import QueryBudget, store_operation
from app.db.models import IdempotencyKey
from app.observability.metrics import metrics
from app.services.guards import Guard

logger = get_logger(__name__)

MAX_KEY_LENGTH = 255


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def generate_idempotency_key(operation: str, scope: str, payload: Any) -> str:
    """
    Generate a stable idempotency key for an operation.

    Format: {operation}:{scope}:{content_hash[:16]}

    The payload is hashed from its canonical JSON form, so dict key order
    does not matter.
    """
    payload_json = json.dumps(payload, sort_keys=True, default=str)
    content_hash = hashlib.sha256(payload_json.encode()).hexdigest()
    return f"{operation}:{scope}:{content_hash[:16]}"


class IdempotencyStore:
    """
    Response cache for outbound side effects.

    Usage:
        store = IdempotencyStore(session, guard)

        if not await store.claim(key, expires_at):
            cached = await store.get(key)  # None while the owner is still working
            ...
        try:
            response = await place_call(...)
        except ProviderError:
            await store.release(key)
            raise
        await store.save(key, response, expires_at)
    """

    def __init__(self, session: AsyncSession, guard: Guard, ttl: timedelta | None = None) -> None:
        """Initialize store; records live for ttl (settings default) unless told otherwise."""
        self.session = session
        self.guard = guard
        self.ttl = ttl if ttl is not None else timedelta(seconds=settings.idempotency_ttl_seconds)

    def _check_key(self, key: str) -> None:
        self.guard.require_string(key, "key")
        self.guard.require_max_length(key, MAX_KEY_LENGTH, "key")

    async def get(self, key: str, timeout: float | None = None) -> bytes | None:
        """
        Return the cached response, or None.

        Absent keys, expired records and unfinished claims all read as None.
        """
        self._check_key(key)
        now = _utc_now()

        stmt = select(IdempotencyKey.response).where(
            IdempotencyKey.key == key,
            IdempotencyKey.expires_at > now,
            IdempotencyKey.response.isnot(None),
        )
        async with store_operation(
            self.session, "IdempotencyStore.get", QueryBudget.POINT_READ, timeout
        ):
            result = await self.session.execute(stmt)
            response: bytes | None = result.scalar_one_or_none()

        metrics.record_idempotency("hit" if response is not None else "miss")
        return response

    async def save(
        self,
        key: str,
        response: bytes,
        expires_at: datetime | None = None,
        timeout: float | None = None,
    ) -> None:
        """Store a response, atomically replacing any existing record.

        expires_at defaults to now + ttl.
        """
        self._check_key(key)
        self.guard.require_bytes(response, "response")
        now = _utc_now()
        if expires_at is None:
            expires_at = now + self.ttl
        self.guard.require_not_in_past(expires_at, "expires_at")

        stmt = pg_insert(IdempotencyKey).values(
            key=key,
            response=response,
            created_at=now,
            expires_at=expires_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[IdempotencyKey.key],
            set_={
                "response": stmt.excluded.response,
                "expires_at": stmt.excluded.expires_at,
                "created_at": stmt.excluded.created_at,
            },
        )
        async with store_operation(
            self.session, "IdempotencyStore.save", QueryBudget.WRITE, timeout
        ):
            await self.session.execute(stmt)
            await self.session.commit()

        logger.debug("idempotency_response_saved", key=key, expires_at=expires_at.isoformat())

    async def claim(
        self,
        key: str,
        expires_at: datetime | None = None,
        timeout: float | None = None,
    ) -> bool:
        """
        Claim a key for single-flight execution.

        One statement inserts a placeholder row (no response yet) or takes
        over an expired row. Returns True only for the caller that now owns
        the key; everyone else sees False and must treat the operation as
        already in flight or done.
        """
        self._check_key(key)
        now = _utc_now()
        if expires_at is None:
            expires_at = now + self.ttl
        self.guard.require_not_in_past(expires_at, "expires_at")

        stmt = (
            pg_insert(IdempotencyKey)
            .values(key=key, response=None, created_at=now, expires_at=expires_at)
            .on_conflict_do_update(
                index_elements=[IdempotencyKey.key],
                set_={"response": None, "created_at": now, "expires_at": expires_at},
                where=IdempotencyKey.expires_at <= now,
            )
            .returning(IdempotencyKey.key)
        )
        async with store_operation(
            self.session, "IdempotencyStore.claim", QueryBudget.WRITE, timeout
        ):
            result = await self.session.execute(stmt)
            claimed = result.scalar_one_or_none() is not None
            await self.session.commit()

        metrics.record_idempotency("claimed" if claimed else "in_flight")
        logger.info("idempotency_key_claimed" if claimed else "idempotency_key_in_flight", key=key)
        return claimed

    async def release(self, key: str, timeout: float | None = None) -> bool:
        """
        Drop an unfinished claim so the operation can be retried.

        Completed records are left alone. Returns True if a claim was removed.
        """
        self._check_key(key)

        stmt = delete(IdempotencyKey).where(
            IdempotencyKey.key == key,
            IdempotencyKey.response.is_(None),
        )
        async with store_operation(
            self.session, "IdempotencyStore.release", QueryBudget.WRITE, timeout
        ):
            result = await self.session.execute(stmt)
            await self.session.commit()

        released = bool(result.rowcount)  # type: ignore[attr-defined]
        if released:
            logger.info("idempotency_claim_released", key=key)
        return released

    async def cleanup_expired(self, timeout: float | None = None) -> int:
        """Delete expired records. Safe to run from any process at any time."""
        now = _utc_now()

        stmt = delete(IdempotencyKey).where(IdempotencyKey.expires_at <= now)
        async with store_operation(
            self.session, "IdempotencyStore.cleanup_expired", QueryBudget.WRITE, timeout
        ):
            result = await self.session.execute(stmt)
            await self.session.commit()

        deleted = result.rowcount or 0  # type: ignore[attr-defined]
        if deleted > 0:
            logger.info("idempotency_keys_cleanup", deleted=deleted)
        return deleted
