from __future__ import annotations
from uuid import UUID
from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession
from chainproof.db import get_session
from chainproof.models.like import Like
from chainproof.schemas.like import LikeCount, LikeCreate, LikePublic
from chainproof.services import likes as like_service

router = APIRouter(prefix="/submissions/{submission_id}/likes", tags=["likes"])


def _to_like_public(like: Like) -> LikePublic:
    return LikePublic(
        id=like.id,
        submission_id=like.submission_id,
        wallet_address=like.wallet_address,
        created_at=like.created_at,
    )


@router.post("", response_model=LikePublic, status_code=201)
async def create_like(submission_id: UUID, payload: LikeCreate, session: AsyncSession = Depends(get_session)):
    like = await like_service.create_like(session, submission_id, payload.wallet_address)
    return _to_like_public(like)


@router.get("", response_model=list[LikePublic])
async def list_likes(submission_id: UUID, session: AsyncSession = Depends(get_session)):
    return [_to_like_public(like) for like in await like_service.list_likes(session, submission_id)]


@router.get("/count", response_model=LikeCount)
async def count_likes(submission_id: UUID, session: AsyncSession = Depends(get_session)):
    return LikeCount(submission_id=submission_id, count=await like_service.count_likes(session, submission_id))


@router.delete("/{wallet_address}", status_code=204)
async def delete_like(submission_id: UUID, wallet_address: str, session: AsyncSession = Depends(get_session)):
    await like_service.delete_like(session, submission_id, wallet_address)
    return Response(status_code=204)
