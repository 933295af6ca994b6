"""
Transaction Helper - short explicit transactions for multi-statement invariants.

Single-row guarantees never need this: they are one atomic statement.
Use it only when two or more statements must commit together, and keep
the block free of unrelated awaits.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.budgets import QueryBudget, rollback_quietly, store_operation

logger = get_logger(__name__)


@asynccontextmanager
async def transactional(
    session: AsyncSession,
    operation: str,
    timeout: float | None = None,
) -> AsyncIterator[AsyncSession]:
    """
    Commit on normal exit, roll back on every other exit path.

    Errors, cancellation and budget expiry all roll back. The transaction
    budget applies to the whole block including the commit.

    Usage:
        async with transactional(session, "SessionRotator.end_session"):
            await session.execute(delete_tokens)
            await session.execute(delete_session)
    """
    committed = False
    try:
        async with store_operation(session, operation, QueryBudget.TRANSACTION, timeout):
            yield session
            await session.commit()
            committed = True
    finally:
        if not committed:
            await rollback_quietly(session, operation)
            logger.debug("transaction_rolled_back", operation=operation)
