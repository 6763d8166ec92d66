from __future__ import annotations
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
import structlog
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from chainproof.config import settings
from chainproof.errors import DuplicateJob, InvalidStateTransition, NotFound
from chainproof.models.job import Job, JobState, INFLIGHT_STATES
from chainproof.services.time_windows import as_utc, utcnow

log = structlog.get_logger()

PROOF_GENERATION = "generate_proof"
LEDGER_RECONCILIATION = "reconcile_ledger"

# sample size for the average processing time
_STATS_WINDOW = 500


@dataclass(frozen=True)
class JobContext:
    """What a handler gets to see about the job it is running."""

    id: uuid.UUID
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    attempt: int = 0  # failures recorded before this run
    max_attempts: int = 1

    @property
    def correlation_id(self) -> str | None:
        return self.payload.get("correlation_id")

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt + 1 >= self.max_attempts


def backoff_delay(attempts: int, base: float | None = None) -> timedelta:
    base = settings.queue_backoff_base if base is None else base
    return timedelta(seconds=base ** attempts)


async def enqueue(
    session: AsyncSession,
    job_type: str,
    payload: dict[str, Any] | None = None,
    *,
    singleton_key: str | None = None,
    max_attempts: int | None = None,
    run_after: datetime | None = None,
) -> uuid.UUID:
    """
    Add a job inside the caller's transaction. The caller commits.

    With a `singleton_key`, the job is rejected (DuplicateJob) while another
    job with that key is pending or processing. The partial unique index on
    jobs.singleton_key backs the pre-check under concurrency.
    """
    if singleton_key is not None:
        inflight = await session.scalar(
            select(Job.id).where(Job.singleton_key == singleton_key, Job.state.in_(INFLIGHT_STATES))
        )
        if inflight is not None:
            raise DuplicateJob(f"A {job_type} job is already in flight for this key", field="singletonKey")
    job = Job(
        id=uuid.uuid4(),
        type=job_type,
        payload=dict(payload or {}),
        state=JobState.PENDING,
        attempt_count=0,
        max_attempts=max_attempts or settings.queue_max_attempts,
        singleton_key=singleton_key,
        run_after=run_after or utcnow(),
    )
    try:
        async with session.begin_nested():
            session.add(job)
    except IntegrityError:
        raise DuplicateJob(f"A {job_type} job is already in flight for this key", field="singletonKey") from None
    log.info("job_enqueued", job_id=str(job.id), job_type=job_type, singleton_key=singleton_key)
    return job.id


async def claim_next(
    session: AsyncSession, *, job_types: list[str], worker_id: str, now: datetime | None = None
) -> Job | None:
    """Claim the oldest runnable job and commit the claim. Returns None when idle."""
    now = now or utcnow()
    stmt = (
        select(Job)
        .where(Job.state == JobState.PENDING, Job.run_after <= now, Job.type.in_(job_types))
        .order_by(Job.run_after, Job.created_at)
        .limit(1)
        .with_for_update(skip_locked=True)
    )
    job = await session.scalar(stmt)
    if job is None:
        await session.rollback()
        return None
    job.state = JobState.PROCESSING
    job.started_at = now
    job.locked_by = worker_id
    await session.commit()
    return job


async def mark_completed(session: AsyncSession, job_id: uuid.UUID, *, now: datetime | None = None) -> None:
    job = await session.get(Job, job_id, with_for_update=True)
    if job is None:
        return
    job.state = JobState.COMPLETED
    job.completed_at = now or utcnow()
    job.locked_by = None
    job.last_error = None
    await session.commit()


async def mark_failed(
    session: AsyncSession,
    job_id: uuid.UUID,
    error: BaseException | str,
    *,
    retryable: bool = True,
    now: datetime | None = None,
    backoff_base: float | None = None,
) -> JobState | None:
    """
    Record a failed run. Retryable failures go back to pending after
    base ** attempts seconds until max_attempts is reached; everything else
    is terminal.
    """
    now = now or utcnow()
    job = await session.get(Job, job_id, with_for_update=True)
    if job is None:
        return None
    job.attempt_count += 1
    job.last_error = str(error)[:2000] or type(error).__name__
    job.locked_by = None
    if not retryable or job.attempt_count >= job.max_attempts:
        job.state = JobState.FAILED
        job.failed_at = now
    else:
        job.state = JobState.PENDING
        job.run_after = now + backoff_delay(job.attempt_count, backoff_base)
    await session.commit()
    return job.state


async def recover_stale(
    session: AsyncSession, *, timeout_seconds: float | None = None, now: datetime | None = None
) -> list[Job]:
    """
    Requeue jobs whose worker vanished mid-run and return them with their new
    state. The lost run counts as an attempt, so a job that keeps killing its
    worker still ends up failed. The caller commits.
    """
    now = now or utcnow()
    timeout = settings.stale_job_timeout_seconds if timeout_seconds is None else timeout_seconds
    cutoff = now - timedelta(seconds=timeout)
    stale = (
        await session.execute(
            select(Job)
            .where(Job.state == JobState.PROCESSING, Job.started_at < cutoff)
            .with_for_update(skip_locked=True)
        )
    ).scalars().all()
    for job in stale:
        job.attempt_count += 1
        job.last_error = f"worker {job.locked_by or 'unknown'} lost the job after {int(timeout)}s"
        job.locked_by = None
        if job.attempt_count >= job.max_attempts:
            job.state = JobState.FAILED
            job.failed_at = now
        else:
            job.state = JobState.PENDING
            job.run_after = now
        log.warning("job_stale_recovered", job_id=str(job.id), job_type=job.type, state=job.state.value)
    return list(stale)


async def get_job(session: AsyncSession, job_id: uuid.UUID) -> Job:
    job = await session.get(Job, job_id)
    if job is None:
        raise NotFound("Job")
    return job


async def list_jobs(
    session: AsyncSession,
    *,
    state: JobState | None = None,
    job_type: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Job]:
    stmt = select(Job)
    if state is not None:
        stmt = stmt.where(Job.state == state)
    if job_type:
        stmt = stmt.where(Job.type == job_type)
    stmt = stmt.order_by(Job.created_at.desc()).limit(limit).offset(offset)
    return list((await session.execute(stmt)).scalars().all())


async def reset_failed_job(session: AsyncSession, job_id: uuid.UUID, *, now: datetime | None = None) -> Job:
    """Put a failed job back in line with its attempt count reset. The caller commits."""
    job = await session.get(Job, job_id, with_for_update=True)
    if job is None:
        raise NotFound("Job")
    if job.state != JobState.FAILED:
        raise InvalidStateTransition(f"Only failed jobs can be retried (state is '{job.state.value}')", field="state")
    if job.singleton_key is not None:
        inflight = await session.scalar(
            select(Job.id).where(
                Job.singleton_key == job.singleton_key, Job.state.in_(INFLIGHT_STATES), Job.id != job.id
            )
        )
        if inflight is not None:
            raise DuplicateJob("Another job with the same key is already in flight", field="singletonKey")
    job.state = JobState.PENDING
    job.attempt_count = 0
    job.run_after = now or utcnow()
    job.failed_at = None
    job.last_error = None
    return job


async def queue_stats(session: AsyncSession, *, job_type: str | None = None) -> dict[str, Any]:
    counts_stmt = select(Job.state, func.count()).group_by(Job.state)
    if job_type:
        counts_stmt = counts_stmt.where(Job.type == job_type)
    counts = {state.value: 0 for state in JobState}
    for state, count in (await session.execute(counts_stmt)).all():
        counts[JobState(state).value] = int(count)

    durations_stmt = (
        select(Job.started_at, Job.completed_at)
        .where(Job.state == JobState.COMPLETED, Job.started_at.is_not(None), Job.completed_at.is_not(None))
        .order_by(Job.completed_at.desc())
        .limit(_STATS_WINDOW)
    )
    if job_type:
        durations_stmt = durations_stmt.where(Job.type == job_type)
    durations = [
        (as_utc(completed) - as_utc(started)).total_seconds()
        for started, completed in (await session.execute(durations_stmt)).all()
    ]
    return {
        **counts,
        "total": sum(counts.values()),
        "avg_processing_seconds": (sum(durations) / len(durations)) if durations else None,
    }
