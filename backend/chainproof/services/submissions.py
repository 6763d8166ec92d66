from __future__ import annotations
import uuid
from datetime import datetime
import structlog
from sqlalchemy import select, func, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from chainproof.config import settings
from chainproof.errors import (
    ChallengeNotActive, DuplicateImage, NotFound, SignatureInvalid, ValidationError, error_category,
)
from chainproof.models.challenge import Challenge, Chain
from chainproof.models.like import Like
from chainproof.models.submission import Submission, SubmissionEvent, SubmissionStatus, can_transition
from chainproof.services.media import ext_for_mime, validate_image
from chainproof.services.ports import BlobStore
from chainproof.services.storage import discard_blob, image_key
from chainproof.services.time_windows import utcnow, window_contains
from chainproof.services.users import upsert_user
from chainproof.services.verification import (
    hash_image, normalize_sha256_hash, normalize_signature, normalize_wallet_address, verify_signature,
)

log = structlog.get_logger()

TAGLINE_MAX = 280


async def _reserve_chain_position(session: AsyncSession, chain_id: uuid.UUID, now: datetime) -> int:
    # Updating the chain row first takes its write lock, so the max() read
    # below is serialized per chain until this transaction ends.
    result = await session.execute(
        update(Chain)
        .where(Chain.id == chain_id)
        .values(length=Chain.length + 1, last_activity_at=now)
    )
    if result.rowcount == 0:
        raise NotFound("Chain", field="chainId")
    current = await session.scalar(
        select(func.max(Submission.chain_position)).where(Submission.chain_id == chain_id)
    )
    return int(current or 0) + 1


async def create_submission(
    session: AsyncSession,
    blob_store: BlobStore,
    *,
    image: bytes,
    chain_id: uuid.UUID,
    wallet_address: str,
    signature: str,
    tagline: str | None = None,
    now: datetime | None = None,
) -> Submission:
    """
    Validate and persist a new submission in `awaiting_review`.

    The image is written to the blob store before the database transaction
    commits. This is not a two-phase commit: if the transaction fails the
    upload is deleted again as a compensating step, and a crash between the
    two leaves an orphaned object behind, never a row without its image.
    """
    try:
        wallet_address = normalize_wallet_address(wallet_address)
    except ValueError as e:
        raise ValidationError(str(e), field="walletAddress") from e
    try:
        signature = normalize_signature(signature)
    except ValueError as e:
        raise ValidationError(str(e), field="signature") from e
    if tagline is not None:
        tagline = tagline.strip() or None
        if tagline and len(tagline) > TAGLINE_MAX:
            raise ValidationError(f"Tagline must be at most {TAGLINE_MAX} characters", field="tagline")
    if not image:
        raise ValidationError("Image is empty", field="image")
    if len(image) > settings.upload_max_bytes:
        raise ValidationError("Image exceeds the upload size limit", field="image")
    try:
        mime = validate_image(image)
    except ValueError as e:
        raise ValidationError(str(e), field="image") from e

    sha256_hash = hash_image(image)
    # cheap check before anything is stored or proven
    if not verify_signature(sha256_hash, signature, wallet_address):
        raise SignatureInvalid()

    chain = await session.get(Chain, chain_id)
    if not chain:
        raise NotFound("Chain", field="chainId")
    challenge = await session.get(Challenge, chain.challenge_id)
    if not challenge:
        raise NotFound("Challenge", field="chainId")
    now = now or utcnow()
    if not window_contains(challenge.start_time, challenge.end_time, now):
        raise ChallengeNotActive()
    challenge_id = challenge.id

    if await _hash_exists(session, sha256_hash):
        raise DuplicateImage()

    storage_key = await blob_store.put(image_key(sha256_hash, uuid.uuid4().hex, ext_for_mime(mime)), image, mime)
    try:
        await upsert_user(session, wallet_address)
        position = await _reserve_chain_position(session, chain_id, now)
        submission = Submission(
            id=uuid.uuid4(),
            sha256_hash=sha256_hash,
            wallet_address=wallet_address,
            signature=signature,
            challenge_id=challenge_id,
            chain_id=chain_id,
            chain_position=position,
            storage_key=storage_key,
            mime_type=mime,
            tagline=tagline,
            status=SubmissionStatus.AWAITING_REVIEW,
            challenge_verified=False,
            retry_count=0,
        )
        session.add(submission)
        await session.execute(
            update(Challenge)
            .where(Challenge.id == challenge_id)
            .values(participant_count=Challenge.participant_count + 1)
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        await discard_blob(blob_store, storage_key)
        if await _hash_exists(session, sha256_hash):
            raise DuplicateImage() from None
        if await session.get(Chain, chain_id) is None:
            raise NotFound("Chain", field="chainId") from None
        raise
    except Exception:
        await session.rollback()
        await discard_blob(blob_store, storage_key)
        raise

    await session.refresh(submission)
    log.info(
        "submission_created",
        submission_id=str(submission.id),
        sha256_hash=sha256_hash,
        chain_id=str(chain_id),
        chain_position=position,
        wallet_address=wallet_address,
    )
    return submission


async def _hash_exists(session: AsyncSession, sha256_hash: str) -> bool:
    found = await session.scalar(select(Submission.id).where(Submission.sha256_hash == sha256_hash))
    return found is not None


async def get_submission(session: AsyncSession, submission_id: uuid.UUID) -> Submission:
    submission = await session.get(Submission, submission_id)
    if not submission:
        raise NotFound("Submission")
    return submission


async def get_submission_by_hash(session: AsyncSession, sha256_hash: str) -> Submission:
    try:
        sha256_hash = normalize_sha256_hash(sha256_hash)
    except ValueError as e:
        raise ValidationError(str(e), field="sha256Hash") from e
    submission = await session.scalar(select(Submission).where(Submission.sha256_hash == sha256_hash))
    if not submission:
        raise NotFound("Submission")
    return submission


async def list_submissions(
    session: AsyncSession,
    *,
    wallet_address: str | None = None,
    chain_id: uuid.UUID | None = None,
    challenge_id: uuid.UUID | None = None,
    sha256_hash: str | None = None,
    status: SubmissionStatus | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Submission]:
    stmt = select(Submission)
    if wallet_address:
        try:
            wallet_address = normalize_wallet_address(wallet_address)
        except ValueError as e:
            raise ValidationError(str(e), field="walletAddress") from e
        stmt = stmt.where(Submission.wallet_address == wallet_address)
    if chain_id is not None:
        stmt = stmt.where(Submission.chain_id == chain_id)
    if challenge_id is not None:
        stmt = stmt.where(Submission.challenge_id == challenge_id)
    if status is not None:
        stmt = stmt.where(Submission.status == status)
    if sha256_hash:
        try:
            sha256_hash = normalize_sha256_hash(sha256_hash)
        except ValueError as e:
            raise ValidationError(str(e), field="sha256Hash") from e
        stmt = stmt.where(Submission.sha256_hash == sha256_hash)
    if chain_id is not None:
        stmt = stmt.order_by(Submission.chain_position.asc())
    else:
        stmt = stmt.order_by(Submission.created_at.desc())
    stmt = stmt.limit(limit).offset(offset)
    return list((await session.execute(stmt)).scalars().all())


async def get_submission_image(
    session: AsyncSession, blob_store: BlobStore, submission_id: uuid.UUID
) -> tuple[bytes, str]:
    submission = await get_submission(session, submission_id)
    try:
        data = await blob_store.get(submission.storage_key)
    except FileNotFoundError:
        raise NotFound("Image") from None
    return data, submission.mime_type


async def delete_submission(session: AsyncSession, blob_store: BlobStore, submission_id: uuid.UUID) -> None:
    """Delete a submission with its likes and keep the chain/challenge counters in step."""
    submission = await session.get(Submission, submission_id, with_for_update=True)
    if not submission:
        raise NotFound("Submission")
    storage_key = submission.storage_key
    await session.execute(
        update(Chain)
        .where(Chain.id == submission.chain_id)
        .values(length=Chain.length - 1)
    )
    await session.execute(
        update(Challenge)
        .where(Challenge.id == submission.challenge_id)
        .values(participant_count=Challenge.participant_count - 1)
    )
    await session.execute(delete(Like).where(Like.submission_id == submission.id))
    await session.delete(submission)
    await session.commit()
    log.info("submission_deleted", submission_id=str(submission_id))
    await discard_blob(blob_store, storage_key)


async def status_counts(session: AsyncSession) -> dict[str, int]:
    rows = (
        await session.execute(select(Submission.status, func.count()).group_by(Submission.status))
    ).all()
    counts = {status.value: 0 for status in SubmissionStatus}
    for status, count in rows:
        counts[SubmissionStatus(status).value] = int(count)
    return counts


async def record_proof_failure(
    session: AsyncSession, sha256_hash: str, exc: BaseException, *, terminal: bool
) -> Submission | None:
    """
    Record one failed proof attempt on its submission. A terminal failure also
    moves the submission to `failed`. The caller commits.
    """
    submission = await session.scalar(
        select(Submission).where(Submission.sha256_hash == sha256_hash).with_for_update()
    )
    if submission is None:
        return None
    submission.retry_count += 1
    submission.failure_reason = f"[{error_category(exc)}] {str(exc) or type(exc).__name__}"[:2000]
    if terminal and can_transition(submission.status, SubmissionEvent.FAIL):
        submission.apply(SubmissionEvent.FAIL)
        submission.failed_at = utcnow()
    return submission
