from __future__ import annotations
import uuid
from datetime import datetime
import structlog
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession
from chainproof.errors import NotFound, ValidationError
from chainproof.models.challenge import Challenge, Chain
from chainproof.models.like import Like
from chainproof.models.submission import Submission
from chainproof.services.ports import BlobStore
from chainproof.services.storage import discard_blob
from chainproof.services.time_windows import as_utc, utcnow

log = structlog.get_logger()


async def create_challenge(
    session: AsyncSession,
    *,
    title: str,
    start_time: datetime,
    end_time: datetime,
    description: str | None = None,
    ledger_address: str | None = None,
) -> tuple[Challenge, Chain]:
    """
    Create a challenge together with its chain.

    One chain per challenge is the current product rule; nothing below the
    service layer depends on it.
    """
    start, end = as_utc(start_time), as_utc(end_time)
    if end <= start:
        raise ValidationError("end_time must be after start_time", field="endTime")
    title = (title or "").strip()
    if not title:
        raise ValidationError("title is required", field="title")

    challenge = Challenge(
        id=uuid.uuid4(),
        title=title,
        description=description,
        start_time=start,
        end_time=end,
        participant_count=0,
        chain_count=1,
        ledger_address=ledger_address or None,
    )
    chain = Chain(id=uuid.uuid4(), name=title, challenge_id=challenge.id, length=0)
    session.add(challenge)
    await session.flush()
    session.add(chain)
    await session.commit()
    log.info("challenge_created", challenge_id=str(challenge.id), chain_id=str(chain.id))
    return challenge, chain


async def list_challenges(session: AsyncSession, *, active_only: bool = False, now: datetime | None = None) -> list[Challenge]:
    stmt = select(Challenge).order_by(Challenge.start_time.desc())
    if active_only:
        now = now or utcnow()
        stmt = stmt.where(Challenge.start_time <= now, Challenge.end_time > now)
    return list((await session.execute(stmt)).scalars().all())


async def get_challenge(session: AsyncSession, challenge_id: uuid.UUID) -> Challenge:
    challenge = await session.get(Challenge, challenge_id)
    if not challenge:
        raise NotFound("Challenge")
    return challenge


async def delete_challenge(session: AsyncSession, blob_store: BlobStore, challenge_id: uuid.UUID) -> None:
    """Delete a challenge with its chain, submissions and likes, then drop the images."""
    challenge = await get_challenge(session, challenge_id)
    storage_keys = list(
        (await session.execute(select(Submission.storage_key).where(Submission.challenge_id == challenge_id))).scalars()
    )
    await session.execute(delete(Like).where(Like.submission_id.in_(
        select(Submission.id).where(Submission.challenge_id == challenge_id)
    )))
    await session.execute(delete(Submission).where(Submission.challenge_id == challenge_id))
    await session.execute(delete(Chain).where(Chain.challenge_id == challenge_id))
    await session.delete(challenge)
    await session.commit()
    log.info("challenge_deleted", challenge_id=str(challenge_id), submissions=len(storage_keys))
    for key in storage_keys:
        await discard_blob(blob_store, key)


async def list_chains(session: AsyncSession, challenge_id: uuid.UUID | None = None) -> list[Chain]:
    stmt = select(Chain).order_by(Chain.created_at)
    if challenge_id is not None:
        stmt = stmt.where(Chain.challenge_id == challenge_id)
    return list((await session.execute(stmt)).scalars().all())


async def get_chain(session: AsyncSession, chain_id: uuid.UUID) -> Chain:
    chain = await session.get(Chain, chain_id)
    if not chain:
        raise NotFound("Chain")
    return chain
