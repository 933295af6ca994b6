"""
Maintenance Runner - periodic sweeps over the coordination tables.

Recovers stuck quote jobs, closes elapsed session grace windows and reaps
expired sessions, CSRF tokens, idempotency records and rate-limit windows.
Every sweep is a set-based statement, so any number of runners can work
side by side. Each sweep gets its own database session; one failing sweep
is logged and does not block the rest.

Run with:
    quickquote-maintenance
"""

import asyncio
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.db.migration_runner import run_migrations
from app.db.session import close_engines, get_session_factory
from app.exceptions import QuoteCoreError
from app.observability import get_logger, metrics, setup_logging, setup_tracing
from app.observability.logging import log_context
from app.observability.metrics import start_metrics_server
from app.observability.tracing import trace_operation
from app.services.csrf import CSRFTokenStore
from app.services.guards import Guard
from app.services.idempotency import IdempotencyStore
from app.services.quote_jobs import QuoteJobQueue
from app.services.rate_limiter import RateLimiter
from app.services.sessions import SessionRotator

logger = get_logger(__name__)

Sweep = Callable[[AsyncSession, Guard], Awaitable[int]]


async def _recover_stuck_jobs(session: AsyncSession, guard: Guard) -> int:
    return len(await QuoteJobQueue(session, guard).recover_stuck_jobs())


async def _clear_previous_tokens(session: AsyncSession, guard: Guard) -> int:
    return await SessionRotator(session, guard).clear_expired_previous_tokens()


async def _delete_expired_sessions(session: AsyncSession, guard: Guard) -> int:
    return await SessionRotator(session, guard).delete_expired()


async def _delete_expired_csrf_tokens(session: AsyncSession, guard: Guard) -> int:
    return await CSRFTokenStore(session, guard).delete_expired()


async def _cleanup_idempotency_keys(session: AsyncSession, guard: Guard) -> int:
    return await IdempotencyStore(session, guard).cleanup_expired()


async def _reset_rate_limit_windows(session: AsyncSession, guard: Guard) -> int:
    return await RateLimiter(session, guard).reset_expired_windows()


# Stuck jobs first: recovery should not wait behind the reapers
SWEEPS: tuple[tuple[str, Sweep], ...] = (
    ("quote_jobs_recovered", _recover_stuck_jobs),
    ("session_previous_tokens_cleared", _clear_previous_tokens),
    ("sessions_expired", _delete_expired_sessions),
    ("csrf_tokens_expired", _delete_expired_csrf_tokens),
    ("idempotency_keys_expired", _cleanup_idempotency_keys),
    ("rate_limit_windows_expired", _reset_rate_limit_windows),
)


@dataclass(frozen=True)
class MaintenanceReport:
    """Rows affected per sweep, and the sweeps that failed."""

    rows: dict[str, int] = field(default_factory=dict)
    failed: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        """True when every sweep completed."""
        return not self.failed


class MaintenanceRunner:
    """
    Runs every sweep once per interval.

    Usage:
        runner = MaintenanceRunner()
        report = await runner.run_once()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        guard: Guard | None = None,
        interval: float | None = None,
        sweeps: tuple[tuple[str, Sweep], ...] = SWEEPS,
    ) -> None:
        self.session_factory = session_factory or get_session_factory()
        self.guard = guard or Guard()
        self.interval = interval if interval is not None else settings.maintenance_interval_seconds
        self.sweeps = sweeps

    async def _run_sweep(self, name: str, sweep: Sweep) -> int:
        with log_context(sweep=name), trace_operation("maintenance_sweep", sweep=name) as span:
            async with self.session_factory() as session:
                rows = await sweep(session, self.guard)
            span.set_attribute("rows", rows)
            metrics.record_maintenance(name, rows)
            return rows

    async def run_once(self) -> MaintenanceReport:
        """Run each sweep in its own session and report the outcome."""
        rows: dict[str, int] = {}
        failed: list[str] = []

        for name, sweep in self.sweeps:
            try:
                rows[name] = await self._run_sweep(name, sweep)
            except QuoteCoreError as e:
                failed.append(name)
                logger.error("maintenance_sweep_failed", sweep=name, error=str(e))

        report = MaintenanceReport(rows=rows, failed=tuple(failed))
        logger.info("maintenance_run_completed", **rows, failed=list(report.failed))
        return report

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        """Repeat run_once every interval until stop is set."""
        stop = stop or asyncio.Event()
        logger.info("maintenance_runner_started", interval_seconds=self.interval)

        while not stop.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except TimeoutError:
                continue

        logger.info("maintenance_runner_stopped")


async def _serve() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await MaintenanceRunner().run_forever(stop)
    finally:
        await close_engines()
        logger.info("database_engines_closed")


def main() -> None:
    """Entry point: migrate, expose metrics, then sweep until signalled."""
    setup_logging()
    setup_tracing()

    logger.info(
        "maintenance_starting",
        service=settings.service_name,
        version=settings.service_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.run_migrations_on_startup:
        run_migrations()

    start_metrics_server()
    asyncio.run(_serve())


if __name__ == "__main__":
    main()
