from __future__ import annotations
from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession
from chainproof.auth_deps import require_admin
from chainproof.db import get_session
from chainproof.deps import get_blob_store
from chainproof.errors import ValidationError
from chainproof.schemas.user import UserCreate, UserProfile
from chainproof.services import users as user_service
from chainproof.services.ports import BlobStore
from chainproof.services.verification import normalize_wallet_address

router = APIRouter(prefix="/users", tags=["users"])


def _wallet(address: str) -> str:
    try:
        return normalize_wallet_address(address)
    except ValueError as e:
        raise ValidationError(str(e), field="walletAddress") from e


async def _profile(session: AsyncSession, wallet_address: str) -> UserProfile:
    profile = await user_service.get_user_profile(session, wallet_address)
    return UserProfile(
        wallet_address=profile["user"].wallet_address,
        created_at=profile["user"].created_at,
        submission_count=profile["submission_count"],
        verified_submission_count=profile["verified_submission_count"],
        can_like=profile["can_like"],
    )


@router.post("", response_model=UserProfile, status_code=201)
async def create_user(payload: UserCreate, response: Response, session: AsyncSession = Depends(get_session)):
    wallet_address = _wallet(payload.wallet_address)
    _user, created = await user_service.create_user(session, wallet_address)
    if not created:
        response.status_code = 200
    return await _profile(session, wallet_address)


@router.get("/{wallet_address}", response_model=UserProfile)
async def get_user(wallet_address: str, session: AsyncSession = Depends(get_session)):
    return await _profile(session, _wallet(wallet_address))


@router.delete("/{wallet_address}", status_code=204)
async def delete_user(
    wallet_address: str,
    session: AsyncSession = Depends(get_session),
    blob_store: BlobStore = Depends(get_blob_store),
    _admin: dict = Depends(require_admin),
):
    await user_service.delete_user(session, blob_store, _wallet(wallet_address))
    return Response(status_code=204)
