"""
Live PostgreSQL fixtures.

Every test gets its own throwaway schema on the DATABASE_URL server, with the
tables created from the ORM metadata (partial unique indexes included). The
whole suite is skipped when the server cannot be reached.

Run with: pytest tests/integration -v
"""

from contextlib import ExitStack
from datetime import datetime, timedelta
from typing import AsyncIterator, Awaitable, Callable
from unittest.mock import patch
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from app.config import settings
from app.db.models import Base, Call, User
from app.services.guards import Guard
from tests.conftest import FIXED_NOW

pytestmark = pytest.mark.integration

# Modules whose _utc_now drives store predicates and guard checks
CLOCKED_MODULES = (
    "app.services.csrf",
    "app.services.guards",
    "app.services.idempotency",
    "app.services.quote_jobs",
    "app.services.rate_limiter",
    "app.services.sessions",
)


class Clock:
    """Mutable application clock shared by every store."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Pin every store clock to a shared, advanceable instant."""
    clock = Clock(FIXED_NOW)
    with ExitStack() as stack:
        for module in CLOCKED_MODULES:
            stack.enter_context(patch(f"{module}._utc_now", side_effect=lambda: clock.now))
        yield clock


@pytest_asyncio.fixture
async def engine() -> AsyncIterator[AsyncEngine]:
    """Engine bound to a fresh schema; skips when PostgreSQL is unreachable."""
    schema = f"it_{uuid4().hex[:12]}"
    admin = create_async_engine(
        settings.database_url, poolclass=NullPool, connect_args={"timeout": 5}
    )
    try:
        async with admin.begin() as conn:
            await conn.execute(text(f"CREATE SCHEMA {schema}"))
    except (OSError, TimeoutError, SQLAlchemyError) as e:
        await admin.dispose()
        pytest.skip(f"PostgreSQL not reachable at DATABASE_URL: {e}")

    engine = create_async_engine(
        settings.database_url,
        poolclass=NullPool,
        connect_args={"timeout": 5, "server_settings": {"search_path": schema}},
    )
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        yield engine
    finally:
        await engine.dispose()
        async with admin.begin() as conn:
            await conn.execute(text(f"DROP SCHEMA {schema} CASCADE"))
        await admin.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncIterator[AsyncSession]:
    """One live session for sequential store calls."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def guard() -> Guard:
    return Guard()


@pytest_asyncio.fixture
async def user_id(session_factory) -> UUID:
    """A users row for sessions and rate limits to reference."""
    user = User(id=uuid4(), email=f"{uuid4().hex[:8]}@example.com", password_hash="x")
    async with session_factory() as session:
        session.add(user)
        await session.commit()
    return user.id


@pytest.fixture
def make_call(session_factory) -> Callable[[], Awaitable[UUID]]:
    """Factory inserting calls rows for quote jobs to reference."""

    async def make() -> UUID:
        call = Call(
            id=uuid4(), provider_call_id=f"call-{uuid4().hex}", phone_number="+4930123456"
        )
        async with session_factory() as session:
            session.add(call)
            await session.commit()
        return call.id

    return make


@pytest_asyncio.fixture
async def call_id(make_call) -> UUID:
    return await make_call()
