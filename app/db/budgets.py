"""
Store Operation Budgets - deadlines and error translation for store calls.

Every store operation falls into one of four budget classes, each with its
own default deadline. A tighter deadline from the caller always wins: an
enclosing asyncio.timeout() keeps firing on its own schedule, and an
explicit timeout= argument is used as-is when it is below the default.
A looser request never extends the default.
"""

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.exceptions import ConflictError, DatabaseError, QuoteCoreError
from app.observability.metrics import metrics

logger = get_logger(__name__)


class QueryBudget(str, Enum):
    """Budget classes for store operations."""

    POINT_READ = "point_read"
    LIST_READ = "list_read"
    WRITE = "write"
    TRANSACTION = "transaction"


def default_timeout(budget: QueryBudget) -> float:
    """Default deadline in seconds for a budget class."""
    if budget == QueryBudget.POINT_READ:
        return settings.point_read_timeout_seconds
    if budget == QueryBudget.LIST_READ:
        return settings.list_read_timeout_seconds
    if budget == QueryBudget.WRITE:
        return settings.write_timeout_seconds
    return settings.transaction_timeout_seconds


def effective_timeout(budget: QueryBudget, requested: float | None = None) -> float:
    """
    Resolve the deadline for one operation.

    Returns the caller's value when it is tighter than the default,
    otherwise the default.
    """
    default = default_timeout(budget)
    if requested is not None and requested < default:
        return requested
    return default


async def rollback_quietly(session: AsyncSession, operation: str) -> None:
    """Roll back after a failure, logging (not raising) a failed rollback."""
    try:
        await session.rollback()
    except SQLAlchemyError as e:
        # The original failure is what the caller needs to see
        logger.error("rollback_failed", operation=operation, error=str(e))


@asynccontextmanager
async def store_operation(
    session: AsyncSession,
    operation: str,
    budget: QueryBudget,
    timeout: float | None = None,
) -> AsyncIterator[None]:
    """
    Run a block of store calls under a budget, translating failures.

    - IntegrityError -> ConflictError
    - other SQLAlchemyError, or the budget expiring -> DatabaseError
    - QuoteCoreError raised inside the block passes through unchanged

    Infrastructure failures roll the session back so it stays usable.

    Usage:
        async with store_operation(session, "IdempotencyStore.get", QueryBudget.POINT_READ):
            result = await session.execute(stmt)
    """
    start = time.perf_counter()
    success = False
    try:
        async with asyncio.timeout(effective_timeout(budget, timeout)):
            yield
        success = True
    except QuoteCoreError as e:
        metrics.record_error(type(e).__name__, operation)
        raise
    except TimeoutError as e:
        metrics.record_error("TimeoutError", operation)
        logger.error("store_operation_timeout", operation=operation, budget=budget.value)
        await rollback_quietly(session, operation)
        raise DatabaseError(operation, f"{budget.value} budget exceeded") from e
    except IntegrityError as e:
        metrics.record_error("IntegrityError", operation)
        logger.warning("store_operation_conflict", operation=operation, error=str(e.orig or e))
        await rollback_quietly(session, operation)
        raise ConflictError(operation, str(e.orig or e)) from e
    except SQLAlchemyError as e:
        metrics.record_error(type(e).__name__, operation)
        logger.error("store_operation_failed", operation=operation, error=str(e))
        await rollback_quietly(session, operation)
        raise DatabaseError(operation, str(e)) from e
    finally:
        metrics.record_store_operation(operation, success, time.perf_counter() - start)
