"""
Quote Job Queue - retryable asynchronous quote generation jobs.

NO DICTIONARIES - jobs flow as QuoteJobData (metadata is the one opaque bag).

State machine (enforced by QuoteJobData):
    pending -> processing -> completed
    processing -> pending      retry, backoff 5s, 15s, then 60s
    processing -> failed       attempts exhausted

A call has at most one pending/processing job (uq_quote_jobs_active_call).
Workers take jobs with claim_pending_jobs(), which hands each job to
exactly one worker. Rows are never deleted.
"""

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import func, insert, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.budgets import QueryBudget, store_operation
from app.db.models import ACTIVE_JOB_STATUSES, QuoteJob
from app.exceptions import ConflictError, NotFoundError
from app.models.domain import QuoteJobData, QuoteJobStatus, new_quote_job
from app.observability.metrics import metrics
from app.services.guards import Guard

logger = get_logger(__name__)

STUCK_JOB_ERROR = "job interrupted - processing timed out"

MAX_BATCH_SIZE = 1000

# Must match the predicate of uq_quote_jobs_active_call for ON CONFLICT inference
_ACTIVE_PREDICATE = "status IN ('pending', 'processing')"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _job_to_domain(row: QuoteJob) -> QuoteJobData:
    """Convert ORM quote job to domain model."""
    return QuoteJobData(
        job_id=row.id,
        call_id=row.call_id,
        status=QuoteJobStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        created_at=row.created_at,
        updated_at=row.updated_at,
        scheduled_at=row.scheduled_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        last_error=row.last_error,
        error_count=row.error_count,
        metadata=dict(row.job_metadata or {}),
    )


def _job_values(job: QuoteJobData) -> dict[Any, Any]:
    """Column values for inserting a job.

    Metadata is keyed by the mapped attribute; its column is named "metadata".
    """
    return {
        "id": job.job_id,
        "call_id": job.call_id,
        "status": job.status.value,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
        "scheduled_at": job.scheduled_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "last_error": job.last_error,
        "error_count": job.error_count,
        QuoteJob.job_metadata: job.metadata,
    }


def _prior_state(job: QuoteJobData) -> tuple[QuoteJobStatus, list[Any]]:
    """
    The stored state a transition to job.status must start from.

    processing -> completed/failed/pending(retry): same run (attempts, started_at)
    pending -> processing: pending with one attempt fewer
    pending, never started: unchanged pending row
    """
    if job.status == QuoteJobStatus.PROCESSING:
        return QuoteJobStatus.PENDING, [
            QuoteJob.status == QuoteJobStatus.PENDING.value,
            QuoteJob.attempts == job.attempts - 1,
        ]
    if job.status == QuoteJobStatus.PENDING and job.started_at is None:
        return QuoteJobStatus.PENDING, [
            QuoteJob.status == QuoteJobStatus.PENDING.value,
            QuoteJob.attempts == job.attempts,
            QuoteJob.started_at.is_(None),
        ]
    return QuoteJobStatus.PROCESSING, [
        QuoteJob.status == QuoteJobStatus.PROCESSING.value,
        QuoteJob.attempts == job.attempts,
        QuoteJob.started_at == job.started_at,
    ]


class QuoteJobQueue:
    """
    Durable job queue for quote generation.

    Usage:
        queue = QuoteJobQueue(session, guard)
        await queue.enqueue(call_id)

        for job in await queue.claim_pending_jobs(limit=10):
            try:
                await generate_quote(job.call_id)
                await queue.update(job.mark_completed(now))
            except QuoteGenerationError as e:
                await queue.update(job.mark_failed(str(e), now))
    """

    def __init__(self, session: AsyncSession, guard: Guard) -> None:
        """Initialize queue with database session and input guard."""
        self.session = session
        self.guard = guard

    async def create(self, job: QuoteJobData, timeout: float | None = None) -> QuoteJobData:
        """
        Insert a job as given.

        Raises ConflictError if the call already has an active job.
        """
        self.guard.require_uuid(job.job_id, "job_id")
        self.guard.require_uuid(job.call_id, "call_id")
        self.guard.require_positive(job.max_attempts, "max_attempts")

        stmt = insert(QuoteJob).values(_job_values(job))
        async with store_operation(
            self.session, "QuoteJobQueue.create", QueryBudget.WRITE, timeout
        ):
            await self.session.execute(stmt)
            await self.session.commit()

        logger.info("quote_job_created", job_id=str(job.job_id), call_id=str(job.call_id))
        return job

    async def enqueue(
        self,
        call_id: UUID,
        max_attempts: int | None = None,
        metadata: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> QuoteJobData:
        """
        Create a pending job for a call, or return its active job.

        One INSERT ... ON CONFLICT DO NOTHING on the active-job index, so
        duplicate enqueues from concurrent processes converge on one job.
        """
        self.guard.require_uuid(call_id, "call_id")
        if max_attempts is None:
            max_attempts = settings.quote_job_max_attempts
        self.guard.require_positive(max_attempts, "max_attempts")
        now = _utc_now()

        job = new_quote_job(call_id, now, max_attempts, metadata)
        insert_stmt = (
            pg_insert(QuoteJob)
            .values(_job_values(job))
            .on_conflict_do_nothing(
                index_elements=[QuoteJob.call_id],
                index_where=text(_ACTIVE_PREDICATE),
            )
            .returning(QuoteJob.id)
        )
        existing_stmt = (
            select(QuoteJob)
            .where(
                QuoteJob.call_id == call_id,
                QuoteJob.status.in_(ACTIVE_JOB_STATUSES),
            )
            .execution_options(populate_existing=True)
        )
        async with store_operation(
            self.session, "QuoteJobQueue.enqueue", QueryBudget.WRITE, timeout
        ):
            # The active job can finish between the conflict and the read; one
            # more insert then succeeds.
            for _ in range(2):
                result = await self.session.execute(insert_stmt)
                inserted = result.scalar_one_or_none()
                await self.session.commit()
                if inserted is not None:
                    logger.info("quote_job_enqueued", job_id=str(job.job_id), call_id=str(call_id))
                    return job

                result = await self.session.execute(existing_stmt)
                row = result.scalar_one_or_none()
                if row is not None:
                    existing = _job_to_domain(row)
                    logger.info(
                        "quote_job_already_active",
                        job_id=str(existing.job_id),
                        call_id=str(call_id),
                        status=existing.status.value,
                    )
                    return existing

            raise ConflictError(
                "QuoteJobQueue.enqueue", f"active job for call {call_id} kept changing"
            )

    async def get_by_id(self, job_id: UUID, timeout: float | None = None) -> QuoteJobData:
        """Fetch a job by id."""
        self.guard.require_uuid(job_id, "job_id")

        stmt = (
            select(QuoteJob)
            .where(QuoteJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        async with store_operation(
            self.session, "QuoteJobQueue.get_by_id", QueryBudget.POINT_READ, timeout
        ):
            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()
            if row is None:
                raise NotFoundError("Quote job", "QuoteJobQueue.get_by_id")

        return _job_to_domain(row)

    async def get_by_call_id(self, call_id: UUID, timeout: float | None = None) -> QuoteJobData:
        """Fetch the most recent job for a call."""
        self.guard.require_uuid(call_id, "call_id")

        stmt = (
            select(QuoteJob)
            .where(QuoteJob.call_id == call_id)
            .order_by(QuoteJob.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        async with store_operation(
            self.session, "QuoteJobQueue.get_by_call_id", QueryBudget.POINT_READ, timeout
        ):
            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()
            if row is None:
                raise NotFoundError("Quote job", "QuoteJobQueue.get_by_call_id")

        return _job_to_domain(row)

    async def update(self, job: QuoteJobData, timeout: float | None = None) -> QuoteJobData:
        """
        Persist a job's state after a transition, with compare-and-swap.

        The write only applies if the row is still in the state the
        transition started from (see _prior_state), so a worker holding a
        stale snapshot cannot overwrite a job that was recovered, re-claimed
        or finished meanwhile.

        Raises NotFoundError if the row no longer exists and ConflictError
        if it moved on since the snapshot was taken.
        """
        self.guard.require_uuid(job.job_id, "job_id")
        self.guard.require_non_negative(job.attempts, "attempts")
        from_status, prior = _prior_state(job)

        stmt = (
            update(QuoteJob)
            .where(QuoteJob.id == job.job_id, *prior)
            .values(
                status=job.status.value,
                attempts=job.attempts,
                updated_at=job.updated_at,
                scheduled_at=job.scheduled_at,
                started_at=job.started_at,
                completed_at=job.completed_at,
                last_error=job.last_error,
                error_count=job.error_count,
            )
            .values({QuoteJob.job_metadata: job.metadata})
        )
        async with store_operation(
            self.session, "QuoteJobQueue.update", QueryBudget.WRITE, timeout
        ):
            result = await self.session.execute(stmt)
            await self.session.commit()

            if not result.rowcount:  # type: ignore[attr-defined]
                exists = await self.session.execute(
                    select(QuoteJob.id).where(QuoteJob.id == job.job_id)
                )
                if exists.scalar_one_or_none() is None:
                    raise NotFoundError("Quote job", "QuoteJobQueue.update")
                logger.warning(
                    "quote_job_update_conflict",
                    job_id=str(job.job_id),
                    status=job.status.value,
                    attempts=job.attempts,
                )
                raise ConflictError(
                    "QuoteJobQueue.update", f"job {job.job_id} changed since it was read"
                )

        if from_status != job.status:
            metrics.record_job_transition(from_status.value, job.status.value)
        logger.info(
            "quote_job_updated",
            job_id=str(job.job_id),
            status=job.status.value,
            attempts=job.attempts,
            error_count=job.error_count,
        )
        return job

    async def get_pending_jobs(
        self, limit: int | None = None, timeout: float | None = None
    ) -> list[QuoteJobData]:
        """Eligible pending jobs (scheduled_at <= now), oldest schedule first."""
        if limit is None:
            limit = settings.quote_job_batch_size
        self.guard.require_in_range(limit, 1, MAX_BATCH_SIZE, "limit")
        now = _utc_now()

        stmt = (
            select(QuoteJob)
            .where(
                QuoteJob.status == QuoteJobStatus.PENDING.value,
                QuoteJob.scheduled_at <= now,
            )
            .order_by(QuoteJob.scheduled_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        async with store_operation(
            self.session, "QuoteJobQueue.get_pending_jobs", QueryBudget.LIST_READ, timeout
        ):
            result = await self.session.execute(stmt)
            rows = result.scalars().all()

        return [_job_to_domain(row) for row in rows]

    async def claim_pending_jobs(
        self, limit: int | None = None, timeout: float | None = None
    ) -> list[QuoteJobData]:
        """
        Atomically move eligible pending jobs to processing and return them.

        The eligible rows are locked with FOR UPDATE SKIP LOCKED, so
        concurrent workers never receive the same job.
        """
        if limit is None:
            limit = settings.quote_job_batch_size
        self.guard.require_in_range(limit, 1, MAX_BATCH_SIZE, "limit")
        now = _utc_now()

        eligible = (
            select(QuoteJob.id)
            .where(
                QuoteJob.status == QuoteJobStatus.PENDING.value,
                QuoteJob.scheduled_at <= now,
            )
            .order_by(QuoteJob.scheduled_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(QuoteJob)
            .where(
                QuoteJob.id.in_(eligible),
                QuoteJob.status == QuoteJobStatus.PENDING.value,
            )
            .values(
                status=QuoteJobStatus.PROCESSING.value,
                attempts=QuoteJob.attempts + 1,
                started_at=now,
                updated_at=now,
            )
            .returning(QuoteJob)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        async with store_operation(
            self.session, "QuoteJobQueue.claim_pending_jobs", QueryBudget.WRITE, timeout
        ):
            result = await self.session.execute(stmt)
            jobs = [_job_to_domain(row) for row in result.scalars().all()]
            await self.session.commit()

        # RETURNING order is unspecified
        jobs.sort(key=lambda j: j.scheduled_at)
        for job in jobs:
            metrics.record_job_transition(
                QuoteJobStatus.PENDING.value, QuoteJobStatus.PROCESSING.value
            )
            logger.info(
                "quote_job_claimed",
                job_id=str(job.job_id),
                call_id=str(job.call_id),
                attempts=job.attempts,
            )
        return jobs

    async def get_processing_jobs(
        self, older_than: timedelta, timeout: float | None = None
    ) -> list[QuoteJobData]:
        """Jobs processing since before now - older_than, oldest first."""
        self.guard.require_positive_duration(older_than, "older_than")
        cutoff = _utc_now() - older_than

        stmt = (
            select(QuoteJob)
            .where(
                QuoteJob.status == QuoteJobStatus.PROCESSING.value,
                QuoteJob.started_at < cutoff,
            )
            .order_by(QuoteJob.started_at.asc())
            .execution_options(populate_existing=True)
        )
        async with store_operation(
            self.session, "QuoteJobQueue.get_processing_jobs", QueryBudget.LIST_READ, timeout
        ):
            result = await self.session.execute(stmt)
            rows = result.scalars().all()

        return [_job_to_domain(row) for row in rows]

    async def recover_stuck_jobs(
        self, older_than: timedelta | None = None, timeout: float | None = None
    ) -> list[QuoteJobData]:
        """
        Fail over jobs stuck in processing (worker crashed or hung).

        Each stuck job goes through mark_failed, so it is re-scheduled with
        backoff while attempts remain and fails permanently otherwise. The
        write only applies if the job is still processing with the same
        started_at, leaving jobs that finished meanwhile untouched.
        """
        if older_than is None:
            older_than = timedelta(seconds=settings.quote_job_stuck_after_seconds)
        stuck = await self.get_processing_jobs(older_than, timeout)
        if not stuck:
            return []

        logger.info("quote_jobs_stuck_found", count=len(stuck))
        recovered: list[QuoteJobData] = []
        for job in stuck:
            now = _utc_now()
            failed = job.mark_failed(STUCK_JOB_ERROR, now)
            stmt = (
                update(QuoteJob)
                .where(
                    QuoteJob.id == job.job_id,
                    QuoteJob.status == QuoteJobStatus.PROCESSING.value,
                    QuoteJob.started_at == job.started_at,
                )
                .values(
                    status=failed.status.value,
                    scheduled_at=failed.scheduled_at,
                    completed_at=failed.completed_at,
                    last_error=failed.last_error,
                    error_count=failed.error_count,
                    updated_at=failed.updated_at,
                )
            )
            async with store_operation(
                self.session, "QuoteJobQueue.recover_stuck_jobs", QueryBudget.WRITE, timeout
            ):
                result = await self.session.execute(stmt)
                await self.session.commit()

            if not result.rowcount:  # type: ignore[attr-defined]
                logger.debug("quote_job_recovery_skipped", job_id=str(job.job_id))
                continue

            recovered.append(failed)
            metrics.quote_jobs_recovered_total.inc()
            metrics.record_job_transition(QuoteJobStatus.PROCESSING.value, failed.status.value)
            logger.warning(
                "quote_job_recovered",
                job_id=str(job.job_id),
                call_id=str(job.call_id),
                status=failed.status.value,
                attempts=failed.attempts,
            )
        return recovered

    async def count_by_status(self, timeout: float | None = None) -> dict[QuoteJobStatus, int]:
        """Job counts for every status (zero where none exist)."""
        stmt = select(QuoteJob.status, func.count()).group_by(QuoteJob.status)
        async with store_operation(
            self.session, "QuoteJobQueue.count_by_status", QueryBudget.LIST_READ, timeout
        ):
            result = await self.session.execute(stmt)
            rows = result.all()

        counts = {status: 0 for status in QuoteJobStatus}
        for status, count in rows:
            counts[QuoteJobStatus(status)] = count
        return counts
