from __future__ import annotations
from uuid import UUID
from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession
from chainproof.auth_deps import require_admin
from chainproof.db import get_session
from chainproof.deps import get_blob_store, get_correlation_id
from chainproof.models.submission import Submission, SubmissionStatus
from chainproof.schemas.submission import SubmissionPublic, SubmissionReview, SubmissionStatusPublic
from chainproof.services import submissions as submission_service
from chainproof.services.ports import BlobStore
from chainproof.services.review import review_submission

router = APIRouter(prefix="/submissions", tags=["submissions"])
status_router = APIRouter(prefix="/status", tags=["submissions"])


def _to_submission_public(s: Submission) -> SubmissionPublic:
    return SubmissionPublic(
        id=s.id,
        sha256_hash=s.sha256_hash,
        wallet_address=s.wallet_address,
        signature=s.signature,
        challenge_id=s.challenge_id,
        chain_id=s.chain_id,
        chain_position=s.chain_position,
        tagline=s.tagline,
        status=SubmissionStatus(s.status).value,
        challenge_verified=s.challenge_verified,
        failure_reason=s.failure_reason,
        retry_count=s.retry_count,
        transaction_id=s.transaction_id,
        transaction_submitted_block_height=s.transaction_submitted_block_height,
        mime_type=s.mime_type,
        image_url=f"/submissions/{s.id}/image",
        created_at=s.created_at,
        updated_at=s.updated_at,
    )


@router.post("", response_model=SubmissionPublic, status_code=201)
async def create_submission(
    image: UploadFile = File(...),
    chain_id: UUID = Form(..., alias="chainId"),
    wallet_address: str = Form(..., alias="walletAddress"),
    signature: str = Form(...),
    tagline: str | None = Form(default=None),
    session: AsyncSession = Depends(get_session),
    blob_store: BlobStore = Depends(get_blob_store),
):
    data = await image.read()
    submission = await submission_service.create_submission(
        session,
        blob_store,
        image=data,
        chain_id=chain_id,
        wallet_address=wallet_address,
        signature=signature,
        tagline=tagline,
    )
    return _to_submission_public(submission)


@router.get("", response_model=list[SubmissionPublic])
async def list_submissions(
    wallet_address: str | None = Query(default=None, alias="walletAddress"),
    chain_id: UUID | None = Query(default=None, alias="chainId"),
    challenge_id: UUID | None = Query(default=None, alias="challengeId"),
    sha256_hash: str | None = Query(default=None, alias="sha256Hash"),
    status: SubmissionStatus | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_session),
):
    rows = await submission_service.list_submissions(
        session,
        wallet_address=wallet_address,
        chain_id=chain_id,
        challenge_id=challenge_id,
        sha256_hash=sha256_hash,
        status=status,
        limit=limit,
        offset=offset,
    )
    return [_to_submission_public(s) for s in rows]


@router.get("/{submission_id}", response_model=SubmissionPublic)
async def get_submission(submission_id: UUID, session: AsyncSession = Depends(get_session)):
    return _to_submission_public(await submission_service.get_submission(session, submission_id))


@router.get("/{submission_id}/image")
async def get_submission_image(
    submission_id: UUID,
    session: AsyncSession = Depends(get_session),
    blob_store: BlobStore = Depends(get_blob_store),
):
    data, mime = await submission_service.get_submission_image(session, blob_store, submission_id)
    return Response(content=data, media_type=mime, headers={"Cache-Control": "private, max-age=300"})


@router.patch("/{submission_id}", response_model=SubmissionPublic)
async def review(
    submission_id: UUID,
    payload: SubmissionReview,
    session: AsyncSession = Depends(get_session),
    correlation_id: str | None = Depends(get_correlation_id),
    _admin: dict = Depends(require_admin),
):
    submission = await review_submission(
        session,
        submission_id,
        verified=payload.challenge_verified,
        reason=payload.failure_reason,
        correlation_id=correlation_id,
    )
    return _to_submission_public(submission)


@router.delete("/{submission_id}", status_code=204)
async def delete_submission(
    submission_id: UUID,
    session: AsyncSession = Depends(get_session),
    blob_store: BlobStore = Depends(get_blob_store),
    _admin: dict = Depends(require_admin),
):
    await submission_service.delete_submission(session, blob_store, submission_id)
    return Response(status_code=204)


@status_router.get("/{sha256_hash}", response_model=SubmissionStatusPublic)
async def get_status(sha256_hash: str, session: AsyncSession = Depends(get_session)):
    s = await submission_service.get_submission_by_hash(session, sha256_hash)
    return SubmissionStatusPublic(
        id=s.id,
        sha256_hash=s.sha256_hash,
        status=SubmissionStatus(s.status).value,
        challenge_verified=s.challenge_verified,
        retry_count=s.retry_count,
        failure_reason=s.failure_reason,
        transaction_id=s.transaction_id,
        updated_at=s.updated_at,
    )
