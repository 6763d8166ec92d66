from __future__ import annotations
from uuid import UUID
from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession
from chainproof.auth_deps import require_admin
from chainproof.db import get_session
from chainproof.deps import get_blob_store
from chainproof.models.challenge import Challenge, Chain
from chainproof.schemas.challenge import ChainPublic, ChallengeCreate, ChallengePublic
from chainproof.services import challenges as challenge_service
from chainproof.services.ports import BlobStore
from chainproof.services.time_windows import runtime_state, utcnow

router = APIRouter(tags=["challenges"])


def to_public(ch: Challenge) -> ChallengePublic:
    return ChallengePublic(
        id=ch.id,
        title=ch.title,
        description=ch.description,
        start_time=ch.start_time,
        end_time=ch.end_time,
        participant_count=ch.participant_count,
        chain_count=ch.chain_count,
        ledger_address=ch.ledger_address,
        runtime_state=runtime_state(ch.start_time, ch.end_time, utcnow()),
        created_at=ch.created_at,
    )


def chain_to_public(chain: Chain) -> ChainPublic:
    return ChainPublic(
        id=chain.id,
        name=chain.name,
        challenge_id=chain.challenge_id,
        length=chain.length,
        last_activity_at=chain.last_activity_at,
        created_at=chain.created_at,
    )


@router.get("/challenges", response_model=list[ChallengePublic])
async def list_challenges(session: AsyncSession = Depends(get_session)):
    return [to_public(ch) for ch in await challenge_service.list_challenges(session)]


@router.get("/challenges/active", response_model=list[ChallengePublic])
async def list_active_challenges(session: AsyncSession = Depends(get_session)):
    return [to_public(ch) for ch in await challenge_service.list_challenges(session, active_only=True)]


@router.get("/challenges/{challenge_id}", response_model=ChallengePublic)
async def get_challenge(challenge_id: UUID, session: AsyncSession = Depends(get_session)):
    return to_public(await challenge_service.get_challenge(session, challenge_id))


@router.post("/challenges", response_model=ChallengePublic, status_code=201)
async def create_challenge(
    payload: ChallengeCreate,
    session: AsyncSession = Depends(get_session),
    _admin: dict = Depends(require_admin),
):
    challenge, _chain = await challenge_service.create_challenge(
        session,
        title=payload.title,
        description=payload.description,
        start_time=payload.start_time,
        end_time=payload.end_time,
        ledger_address=payload.ledger_address,
    )
    return to_public(challenge)


@router.delete("/challenges/{challenge_id}", status_code=204)
async def delete_challenge(
    challenge_id: UUID,
    session: AsyncSession = Depends(get_session),
    blob_store: BlobStore = Depends(get_blob_store),
    _admin: dict = Depends(require_admin),
):
    await challenge_service.delete_challenge(session, blob_store, challenge_id)
    return Response(status_code=204)


@router.get("/chains", response_model=list[ChainPublic])
async def list_chains(
    challenge_id: UUID | None = Query(default=None, alias="challengeId"),
    session: AsyncSession = Depends(get_session),
):
    return [chain_to_public(c) for c in await challenge_service.list_chains(session, challenge_id)]


@router.get("/chains/{chain_id}", response_model=ChainPublic)
async def get_chain(chain_id: UUID, session: AsyncSession = Depends(get_session)):
    return chain_to_public(await challenge_service.get_chain(session, chain_id))
