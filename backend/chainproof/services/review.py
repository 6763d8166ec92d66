from __future__ import annotations
import uuid
from datetime import datetime
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from chainproof.errors import NotFound, TransientError
from chainproof.models.job import Job, JobState
from chainproof.models.submission import Submission, SubmissionEvent, SubmissionStatus
from chainproof.services import queue
from chainproof.services.submissions import record_proof_failure

log = structlog.get_logger()

DEFAULT_REJECTION_REASON = "Image does not satisfy challenge criteria"


async def review_submission(
    session: AsyncSession,
    submission_id: uuid.UUID,
    *,
    verified: bool,
    reason: str | None = None,
    correlation_id: str | None = None,
) -> Submission:
    """
    Approve or reject a submission awaiting review.

    Approval is the only trigger for proof generation: the status change and
    the singleton-keyed job insert commit together, so a submission is never
    approved without its job or queued twice.
    """
    submission = await session.get(Submission, submission_id, with_for_update=True)
    if not submission:
        raise NotFound("Submission")

    if verified:
        submission.apply(SubmissionEvent.APPROVE)
        submission.challenge_verified = True
        submission.failure_reason = None
        job_id = await queue.enqueue(
            session,
            queue.PROOF_GENERATION,
            {
                "submission_id": str(submission.id),
                "sha256_hash": submission.sha256_hash,
                "correlation_id": correlation_id,
            },
            singleton_key=submission.sha256_hash,
        )
    else:
        submission.apply(SubmissionEvent.REJECT)
        submission.challenge_verified = False
        submission.failure_reason = (reason or "").strip() or DEFAULT_REJECTION_REASON
        job_id = None

    await session.commit()
    log.info(
        "submission_reviewed",
        submission_id=str(submission.id),
        verified=verified,
        status=submission.status.value,
        job_id=str(job_id) if job_id else None,
    )
    return submission


async def retry_failed_job(session: AsyncSession, job_id: uuid.UUID) -> Job:
    """
    Admin retry of a failed job. A failed proof job also moves its submission
    from `failed` back to `processing` so the handler picks it up again.
    """
    job = await queue.reset_failed_job(session, job_id)
    if job.type == queue.PROOF_GENERATION and job.singleton_key:
        submission = await session.scalar(
            select(Submission).where(Submission.sha256_hash == job.singleton_key).with_for_update()
        )
        if submission is not None and submission.status == SubmissionStatus.FAILED:
            submission.apply(SubmissionEvent.RETRY)
            submission.failure_reason = None
            submission.failed_at = None
    await session.commit()
    log.info("job_retried", job_id=str(job.id), job_type=job.type)
    return job


async def recover_stale_jobs(
    session: AsyncSession, *, timeout_seconds: float | None = None, now: datetime | None = None
) -> list[Job]:
    """
    Requeue or fail jobs whose worker vanished. A lost proof run is recorded
    on its submission like any other failed attempt, in the same transaction.
    """
    recovered = await queue.recover_stale(session, timeout_seconds=timeout_seconds, now=now)
    for job in recovered:
        sha256_hash = (job.payload or {}).get("sha256_hash")
        if job.type != queue.PROOF_GENERATION or not sha256_hash:
            continue
        await record_proof_failure(
            session,
            sha256_hash,
            TransientError(job.last_error or "worker lost the job", category="worker_lost"),
            terminal=job.state == JobState.FAILED,
        )
    await session.commit()
    return recovered
