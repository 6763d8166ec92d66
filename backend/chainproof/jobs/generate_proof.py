from __future__ import annotations
import asyncio
import os
import tempfile
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from chainproof.config import settings
from chainproof.errors import PermanentError, TransientError, classify, error_category
from chainproof.models.challenge import Challenge
from chainproof.models.submission import Submission, SubmissionEvent, SubmissionStatus
from chainproof.services.media import ext_for_mime
from chainproof.services.ports import BlobStore, Ledger, Prover, PublishResult
from chainproof.services.queue import JobContext
from chainproof.services.submissions import record_proof_failure
from chainproof.services.time_windows import utcnow
from chainproof.services.verification import hash_image, verify_signature

log = structlog.get_logger()

T = TypeVar("T")

# Statuses this handler still has work to do for.
_RUNNABLE = (SubmissionStatus.PROCESSING, SubmissionStatus.VERIFIED)


def _is_hash(value: Any) -> bool:
    return isinstance(value, str) and len(value) == 64


def _payload_hash(ctx: JobContext) -> str:
    sha256_hash = ctx.payload.get("sha256_hash")
    if not _is_hash(sha256_hash):
        raise PermanentError("Job payload has no valid sha256_hash", category="malformed_input")
    return sha256_hash


@dataclass(frozen=True)
class _Snapshot:
    submission_id: str
    storage_key: str
    mime_type: str
    signature: str
    wallet_address: str
    contract_address: str | None
    proof: dict[str, Any] | None
    transaction_id: str | None


class ProofOrchestrator:
    """
    Handler for `generate_proof` jobs.

    Every step is keyed by the content hash and checks what the row already
    holds, so a retried job resumes where the last run stopped: a stored
    artifact is never proven again and a stored transaction id is never
    published again.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        blob_store: BlobStore,
        prover: Prover,
        ledger: Ledger,
        *,
        call_timeout: float | None = None,
        default_contract_address: str | None = None,
    ):
        self.session_factory = session_factory
        self.blob_store = blob_store
        self.prover = prover
        self.ledger = ledger
        self.call_timeout = settings.external_call_timeout_seconds if call_timeout is None else call_timeout
        self.default_contract_address = (
            settings.ledger_contract_address if default_contract_address is None else default_contract_address
        )

    async def __call__(self, ctx: JobContext) -> None:
        await self._run(_payload_hash(ctx))

    async def on_failure(self, ctx: JobContext, exc: BaseException, *, terminal: bool) -> None:
        """
        Called by the worker after every failed run, including runs it cut
        short on timeout, once the job row holds the outcome.
        """
        sha256_hash = ctx.payload.get("sha256_hash")
        if not _is_hash(sha256_hash):
            return
        async with self.session_factory() as session:
            await record_proof_failure(session, sha256_hash, exc, terminal=terminal)
            await session.commit()
        log.warning(
            "proof_attempt_failed",
            sha256_hash=sha256_hash,
            category=error_category(exc),
            kind=classify(exc).value,
            terminal=terminal,
            error=str(exc),
        )

    async def _run(self, sha256_hash: str) -> None:
        snapshot = await self._load(sha256_hash)
        if snapshot is None:
            return

        image = await self._download(snapshot.storage_key)
        if hash_image(image) != sha256_hash:
            raise PermanentError("Stored image does not match its content hash", category="hash_mismatch")
        if not verify_signature(sha256_hash, snapshot.signature, snapshot.wallet_address):
            raise PermanentError("Signature does not verify against the image hash", category="invalid_signature")

        proof = snapshot.proof
        if proof is None:
            proof = await self._prove(sha256_hash, snapshot, image)
            if not await self._store_proof(sha256_hash, proof):
                return
        else:
            log.info("proof_reused", sha256_hash=sha256_hash)

        if snapshot.transaction_id is None:
            if snapshot.contract_address:
                deployed = await self._call("ledger", lambda: self.ledger.is_deployed(snapshot.contract_address))
                if not deployed:
                    raise PermanentError(
                        f"Ledger contract {snapshot.contract_address} is not deployed", category="not_deployed"
                    )
            result = await self._call("ledger", lambda: self.ledger.publish(proof, snapshot.wallet_address))
            if not await self._store_transaction(sha256_hash, result):
                return
        else:
            log.info("publish_skipped", sha256_hash=sha256_hash, transaction_id=snapshot.transaction_id)

        await self._complete(sha256_hash)

    async def _load(self, sha256_hash: str) -> _Snapshot | None:
        async with self.session_factory() as session:
            submission = await self._get(session, sha256_hash)
            if submission is None:
                log.warning("proof_submission_missing", sha256_hash=sha256_hash)
                return None
            if submission.status == SubmissionStatus.COMPLETE:
                log.info("proof_already_complete", sha256_hash=sha256_hash)
                return None
            if submission.status not in _RUNNABLE:
                log.warning("proof_not_runnable", sha256_hash=sha256_hash, status=submission.status.value)
                return None
            challenge = await session.get(Challenge, submission.challenge_id)
            contract = (challenge.ledger_address if challenge else None) or self.default_contract_address or None
            if submission.processing_started_at is None:
                submission.processing_started_at = utcnow()
            snapshot = _Snapshot(
                submission_id=str(submission.id),
                storage_key=submission.storage_key,
                mime_type=submission.mime_type,
                signature=submission.signature,
                wallet_address=submission.wallet_address,
                contract_address=contract,
                proof=submission.proof_json,
                transaction_id=submission.transaction_id,
            )
            await session.commit()
        log.info("proof_started", sha256_hash=sha256_hash, submission_id=snapshot.submission_id)
        return snapshot

    async def _download(self, storage_key: str) -> bytes:
        try:
            return await self._call("blob_store", lambda: self.blob_store.get(storage_key))
        except FileNotFoundError as e:
            raise PermanentError(f"Image {storage_key} is missing from the blob store", category="malformed_input") from e

    async def _prove(self, sha256_hash: str, snapshot: _Snapshot, image: bytes) -> dict[str, Any]:
        # The prover reads the image from disk; the directory goes away on every exit path.
        with tempfile.TemporaryDirectory(prefix="proof-") as workdir:
            image_path = os.path.join(workdir, f"{sha256_hash}.{ext_for_mime(snapshot.mime_type)}")
            with open(image_path, "wb") as fh:
                fh.write(image)
            aux = {"image_path": image_path, "submission_id": snapshot.submission_id}
            proof = await self._call(
                "prover",
                lambda: self.prover.generate_proof(sha256_hash, snapshot.signature, snapshot.wallet_address, aux),
            )
        if not isinstance(proof, dict) or not proof:
            raise PermanentError("Prover returned an empty artifact", category="invalid_proof")
        log.info("proof_generated", sha256_hash=sha256_hash)
        return proof

    async def _call(self, service: str, make_call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(make_call(), timeout=self.call_timeout)
        except asyncio.TimeoutError:
            raise TransientError(f"{service} call timed out after {self.call_timeout}s", category="timeout") from None

    async def _get(self, session: AsyncSession, sha256_hash: str, *, lock: bool = False) -> Submission | None:
        stmt = select(Submission).where(Submission.sha256_hash == sha256_hash)
        if lock:
            stmt = stmt.with_for_update()
        return await session.scalar(stmt)

    async def _store_proof(self, sha256_hash: str, proof: dict[str, Any]) -> bool:
        async with self.session_factory() as session:
            submission = await self._get(session, sha256_hash, lock=True)
            if submission is None:
                log.warning("proof_submission_missing", sha256_hash=sha256_hash, step="store_proof")
                return False
            submission.proof_json = proof
            if submission.status == SubmissionStatus.PROCESSING:
                submission.apply(SubmissionEvent.PROOF_GENERATED)
                submission.verified_at = utcnow()
            await session.commit()
        return True

    async def _store_transaction(self, sha256_hash: str, result: PublishResult) -> bool:
        # Persisted right away; confirmation is the monitor's concern.
        async with self.session_factory() as session:
            submission = await self._get(session, sha256_hash, lock=True)
            if submission is None:
                log.error(
                    "published_submission_missing",
                    sha256_hash=sha256_hash,
                    transaction_id=result.transaction_id,
                )
                return False
            submission.transaction_id = result.transaction_id
            submission.transaction_submitted_block_height = result.submitted_height
            await session.commit()
        log.info(
            "proof_published",
            sha256_hash=sha256_hash,
            transaction_id=result.transaction_id,
            submitted_height=result.submitted_height,
        )
        return True

    async def _complete(self, sha256_hash: str) -> None:
        async with self.session_factory() as session:
            submission = await self._get(session, sha256_hash, lock=True)
            if submission is None:
                return
            if submission.status == SubmissionStatus.PROCESSING:
                submission.apply(SubmissionEvent.PROOF_GENERATED)
                submission.verified_at = submission.verified_at or utcnow()
            submission.apply(SubmissionEvent.PUBLISHED)
            submission.completed_at = utcnow()
            submission.failure_reason = None
            await session.commit()
        log.info("proof_complete", sha256_hash=sha256_hash)

