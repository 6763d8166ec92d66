from __future__ import annotations
from collections import Counter
import structlog
from sqlalchemy import select, func, update, delete, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from chainproof.errors import NotFound
from chainproof.models.challenge import Challenge, Chain
from chainproof.models.like import Like
from chainproof.models.user import User
from chainproof.models.submission import Submission
from chainproof.services.ports import BlobStore
from chainproof.services.storage import discard_blob
from chainproof.services.time_windows import utcnow

log = structlog.get_logger()


async def upsert_user(session: AsyncSession, wallet_address: str) -> bool:
    """Insert the user row if missing. Safe to call concurrently. Returns True when a row was added."""
    insert = sqlite_insert if session.bind.dialect.name == "sqlite" else pg_insert
    now = utcnow()
    stmt = (
        insert(User)
        .values(wallet_address=wallet_address, created_at=now, updated_at=now)
        .on_conflict_do_nothing(index_elements=["wallet_address"])
    )
    result = await session.execute(stmt)
    return result.rowcount > 0


async def has_verified_submission(session: AsyncSession, wallet_address: str) -> bool:
    count = await session.scalar(
        select(func.count())
        .select_from(Submission)
        .where(Submission.wallet_address == wallet_address, Submission.challenge_verified.is_(True))
    )
    return bool(count)


async def get_user_profile(session: AsyncSession, wallet_address: str) -> dict:
    user = await session.get(User, wallet_address)
    if not user:
        raise NotFound("User")
    total = await session.scalar(
        select(func.count()).select_from(Submission).where(Submission.wallet_address == wallet_address)
    )
    verified = await session.scalar(
        select(func.count())
        .select_from(Submission)
        .where(Submission.wallet_address == wallet_address, Submission.challenge_verified.is_(True))
    )
    return {
        "user": user,
        "submission_count": int(total or 0),
        "verified_submission_count": int(verified or 0),
        "can_like": bool(verified),
    }


async def create_user(session: AsyncSession, wallet_address: str) -> tuple[User, bool]:
    """Find or create the user. Returns the row and whether it was created."""
    created = await upsert_user(session, wallet_address)
    await session.commit()
    user = await session.get(User, wallet_address)
    if created:
        log.info("user_created", wallet_address=wallet_address)
    return user, created


async def delete_user(session: AsyncSession, blob_store: BlobStore, wallet_address: str) -> None:
    """
    Delete a user with their submissions and every like given or received.
    Chain lengths and participant counts drop by the submissions removed, in
    the same transaction; images are dropped after the commit.
    """
    user = await session.get(User, wallet_address, with_for_update=True)
    if not user:
        raise NotFound("User")
    rows = (
        await session.execute(
            select(Submission.id, Submission.chain_id, Submission.challenge_id, Submission.storage_key)
            .where(Submission.wallet_address == wallet_address)
        )
    ).all()
    per_chain = Counter(row.chain_id for row in rows)
    per_challenge = Counter(row.challenge_id for row in rows)
    for chain_id, n in per_chain.items():
        await session.execute(update(Chain).where(Chain.id == chain_id).values(length=Chain.length - n))
    for challenge_id, n in per_challenge.items():
        await session.execute(
            update(Challenge)
            .where(Challenge.id == challenge_id)
            .values(participant_count=Challenge.participant_count - n)
        )
    submission_ids = [row.id for row in rows]
    await session.execute(
        delete(Like).where(or_(Like.wallet_address == wallet_address, Like.submission_id.in_(submission_ids)))
    )
    await session.execute(delete(Submission).where(Submission.wallet_address == wallet_address))
    await session.delete(user)
    await session.commit()
    log.info("user_deleted", wallet_address=wallet_address, submissions=len(rows))
    for row in rows:
        await discard_blob(blob_store, row.storage_key)
