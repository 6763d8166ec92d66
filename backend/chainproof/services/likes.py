from __future__ import annotations
import uuid
import structlog
from sqlalchemy import select, func, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from chainproof.errors import Conflict, Forbidden, NotFound, ValidationError
from chainproof.models.like import Like
from chainproof.models.submission import Submission
from chainproof.services.users import has_verified_submission, upsert_user
from chainproof.services.verification import normalize_wallet_address

log = structlog.get_logger()


def _wallet(address: str) -> str:
    try:
        return normalize_wallet_address(address)
    except ValueError as e:
        raise ValidationError(str(e), field="walletAddress") from e


async def _require_submission(session: AsyncSession, submission_id: uuid.UUID) -> None:
    found = await session.scalar(select(Submission.id).where(Submission.id == submission_id))
    if found is None:
        raise NotFound("Submission")


async def create_like(session: AsyncSession, submission_id: uuid.UUID, wallet_address: str) -> Like:
    """Only wallets with at least one verified submission (in any challenge) may like."""
    wallet_address = _wallet(wallet_address)
    await _require_submission(session, submission_id)
    await upsert_user(session, wallet_address)
    if not await has_verified_submission(session, wallet_address):
        raise Forbidden("Only users with a verified submission can like submissions", field="walletAddress")
    existing = await session.scalar(
        select(Like.id).where(Like.submission_id == submission_id, Like.wallet_address == wallet_address)
    )
    if existing is not None:
        raise Conflict("You have already liked this submission")

    like = Like(id=uuid.uuid4(), submission_id=submission_id, wallet_address=wallet_address)
    session.add(like)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise Conflict("You have already liked this submission") from None
    log.info("like_created", submission_id=str(submission_id), wallet_address=wallet_address)
    return like


async def delete_like(session: AsyncSession, submission_id: uuid.UUID, wallet_address: str) -> None:
    wallet_address = _wallet(wallet_address)
    await _require_submission(session, submission_id)
    result = await session.execute(
        delete(Like).where(Like.submission_id == submission_id, Like.wallet_address == wallet_address)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise NotFound("Like")
    await session.commit()


async def list_likes(session: AsyncSession, submission_id: uuid.UUID) -> list[Like]:
    await _require_submission(session, submission_id)
    stmt = select(Like).where(Like.submission_id == submission_id).order_by(Like.created_at.desc())
    return list((await session.execute(stmt)).scalars().all())


async def count_likes(session: AsyncSession, submission_id: uuid.UUID) -> int:
    await _require_submission(session, submission_id)
    count = await session.scalar(
        select(func.count()).select_from(Like).where(Like.submission_id == submission_id)
    )
    return int(count or 0)
