from __future__ import annotations
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from chainproof.auth_deps import require_admin
from chainproof.db import get_session
from chainproof.models.job import Job, JobState
from chainproof.schemas.job import JobPublic, JobStatsResponse, QueueStats
from chainproof.services import queue
from chainproof.services.review import recover_stale_jobs, retry_failed_job
from chainproof.services.submissions import status_counts

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

def _to_job_public(job: Job) -> JobPublic:
    return JobPublic(
        id=job.id,
        type=job.type,
        state=JobState(job.state).value,
        payload=job.payload or {},
        attempt_count=job.attempt_count,
        max_attempts=job.max_attempts,
        singleton_key=job.singleton_key,
        run_after=job.run_after,
        started_at=job.started_at,
        completed_at=job.completed_at,
        failed_at=job.failed_at,
        last_error=job.last_error,
        created_at=job.created_at,
    )

@router.get("/jobs/stats", response_model=JobStatsResponse)
async def job_stats(
    job_type: str | None = Query(default=None, alias="type"),
    session: AsyncSession = Depends(get_session),
):
    stats = await queue.queue_stats(session, job_type=job_type)
    return JobStatsResponse(queue=QueueStats(**stats), submissions=await status_counts(session))

@router.get("/jobs", response_model=list[JobPublic])
async def list_jobs(
    state: JobState | None = Query(default=None),
    job_type: str | None = Query(default=None, alias="type"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_session),
):
    jobs = await queue.list_jobs(session, state=state, job_type=job_type, limit=limit, offset=offset)
    return [_to_job_public(j) for j in jobs]

@router.get("/jobs/failed", response_model=list[JobPublic])
async def list_failed_jobs(
    limit: int = Query(default=50, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
):
    return [_to_job_public(j) for j in await queue.list_jobs(session, state=JobState.FAILED, limit=limit)]

@router.post("/jobs/recover-stale")
async def recover_stale(session: AsyncSession = Depends(get_session)):
    return {"recovered": len(await recover_stale_jobs(session))}

@router.get("/jobs/{job_id}", response_model=JobPublic)
async def get_job(job_id: UUID, session: AsyncSession = Depends(get_session)):
    return _to_job_public(await queue.get_job(session, job_id))

@router.post("/jobs/{job_id}/retry", response_model=JobPublic)
async def retry_job(job_id: UUID, session: AsyncSession = Depends(get_session)):
    return _to_job_public(await retry_failed_job(session, job_id))
