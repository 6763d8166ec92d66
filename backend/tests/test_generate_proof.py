import os
from datetime import datetime, timedelta, timezone
import pytest
from sqlalchemy import select
from chainproof.errors import PermanentError, TransientError
from chainproof.jobs.generate_proof import ProofOrchestrator
from chainproof.models.job import Job, JobState
from chainproof.models.submission import Submission, SubmissionStatus
from chainproof.services import queue
from chainproof.services.review import recover_stale_jobs, retry_failed_job, review_submission
from chainproof.services.submissions import create_submission
from chainproof.worker import Worker
from conftest import FakeLedger, FakeProver, Wallet, make_png, transient


def _now():
    return datetime.now(timezone.utc)


async def _approved(session_factory, blob_store, chain):
    wallet = Wallet()
    image = make_png()
    async with session_factory() as session:
        submission = await create_submission(
            session, blob_store, image=image, chain_id=chain.id,
            wallet_address=wallet.address, signature=wallet.sign(image),
        )
    async with session_factory() as session:
        await review_submission(session, submission.id, verified=True, correlation_id="corr-1")
    return submission


async def _reload(session_factory, submission_id) -> Submission:
    async with session_factory() as session:
        return await session.get(Submission, submission_id)


async def _proof_job(session_factory) -> Job:
    async with session_factory() as session:
        return await session.scalar(select(Job).where(Job.type == queue.PROOF_GENERATION))


def _worker(session_factory, blob_store, prover, ledger, **kw):
    orchestrator = ProofOrchestrator(
        session_factory, blob_store, prover, ledger,
        call_timeout=kw.pop("call_timeout", 5), default_contract_address=kw.pop("contract", ""),
    )
    return Worker(session_factory, {queue.PROOF_GENERATION: orchestrator}, job_timeout=kw.pop("job_timeout", 10), **kw)


async def _drain(worker, start=None, step=timedelta(hours=1), rounds=6):
    now = start or _now()
    for _ in range(rounds):
        await worker.run_once(now=now)
        now += step


@pytest.mark.asyncio
async def test_approved_submission_is_proven_and_published(session_factory, blob_store, chain):
    submission = await _approved(session_factory, blob_store, chain)
    prover, ledger = FakeProver(), FakeLedger(height=4242)

    assert await _worker(session_factory, blob_store, prover, ledger).run_once()

    done = await _reload(session_factory, submission.id)
    assert done.status == SubmissionStatus.COMPLETE
    assert done.proof_json["publicInputs"] == [submission.sha256_hash]
    assert done.transaction_id == "tx0001abcdef"
    assert done.transaction_submitted_block_height == 4242
    assert done.retry_count == 0
    assert done.failure_reason is None
    assert done.processing_started_at is not None
    assert done.verified_at is not None
    assert done.completed_at is not None

    assert len(prover.calls) == 1
    assert prover.calls[0]["public_key"] == submission.wallet_address
    assert prover.calls[0]["image_present"] is True
    # the scratch copy handed to the prover is gone afterwards
    assert not os.path.exists(prover.calls[0]["image_path"])
    assert ledger.published[0][1] == submission.wallet_address

    assert (await _proof_job(session_factory)).state == JobState.COMPLETED


@pytest.mark.asyncio
async def test_transient_failures_retry_until_success(session_factory, blob_store, chain):
    submission = await _approved(session_factory, blob_store, chain)
    prover = FakeProver(failures=[transient(), transient()])
    worker = _worker(session_factory, blob_store, prover, FakeLedger())

    t0 = _now()
    await worker.run_once(now=t0)
    mid = await _reload(session_factory, submission.id)
    assert mid.status == SubmissionStatus.PROCESSING
    assert mid.retry_count == 1
    assert mid.failure_reason.startswith("[prover_unavailable]")

    await _drain(worker, start=t0 + timedelta(seconds=1000))
    done = await _reload(session_factory, submission.id)
    assert done.status == SubmissionStatus.COMPLETE
    assert done.retry_count == 2
    assert done.failure_reason is None
    assert len(prover.calls) == 3

    job = await _proof_job(session_factory)
    assert job.state == JobState.COMPLETED
    assert job.attempt_count == 2


@pytest.mark.asyncio
async def test_exhausted_retries_fail_submission(session_factory, blob_store, chain):
    submission = await _approved(session_factory, blob_store, chain)
    prover = FakeProver(failures=[transient()] * 5)
    worker = _worker(session_factory, blob_store, prover, FakeLedger())

    await _drain(worker)
    failed = await _reload(session_factory, submission.id)
    assert failed.status == SubmissionStatus.FAILED
    assert failed.retry_count == 3
    assert failed.failed_at is not None
    assert "prover busy" in failed.failure_reason
    assert len(prover.calls) == 3
    assert (await _proof_job(session_factory)).state == JobState.FAILED


@pytest.mark.asyncio
async def test_tampered_blob_fails_without_retry(session_factory, blob_store, chain):
    submission = await _approved(session_factory, blob_store, chain)
    blob_store.objects[submission.storage_key] = make_png()
    prover = FakeProver()

    await _drain(_worker(session_factory, blob_store, prover, FakeLedger()))
    failed = await _reload(session_factory, submission.id)
    assert failed.status == SubmissionStatus.FAILED
    assert failed.retry_count == 1
    assert failed.failure_reason.startswith("[hash_mismatch]")
    assert prover.calls == []


@pytest.mark.asyncio
async def test_missing_blob_fails_without_retry(session_factory, blob_store, chain):
    submission = await _approved(session_factory, blob_store, chain)
    blob_store.objects.clear()

    await _drain(_worker(session_factory, blob_store, FakeProver(), FakeLedger()))
    failed = await _reload(session_factory, submission.id)
    assert failed.status == SubmissionStatus.FAILED
    assert failed.failure_reason.startswith("[malformed_input]")


@pytest.mark.asyncio
async def test_undeployed_contract_is_terminal_after_proof(session_factory, blob_store, chain):
    submission = await _approved(session_factory, blob_store, chain)
    ledger = FakeLedger(deployed=False)

    await _drain(_worker(session_factory, blob_store, FakeProver(), ledger, contract="B62contract"))
    failed = await _reload(session_factory, submission.id)
    assert failed.status == SubmissionStatus.FAILED
    assert failed.retry_count == 1
    assert failed.failure_reason.startswith("[not_deployed]")
    # the proof survives for a later retry
    assert failed.proof_json is not None
    assert ledger.published == []


@pytest.mark.asyncio
async def test_terminal_category_wins_over_transient_tag(session_factory, blob_store, chain):
    submission = await _approved(session_factory, blob_store, chain)
    prover = FakeProver(failures=[TransientError("zkapp not initialized", category="not_initialized")])

    await _drain(_worker(session_factory, blob_store, prover, FakeLedger()))
    failed = await _reload(session_factory, submission.id)
    assert failed.status == SubmissionStatus.FAILED
    assert failed.retry_count == 1
    assert len(prover.calls) == 1


@pytest.mark.asyncio
async def test_publish_retry_reuses_stored_proof(session_factory, blob_store, chain):
    submission = await _approved(session_factory, blob_store, chain)
    prover = FakeProver()
    ledger = FakeLedger(publish_failures=[TransientError("node unreachable", category="network")])
    worker = _worker(session_factory, blob_store, prover, ledger)

    t0 = _now()
    await worker.run_once(now=t0)
    mid = await _reload(session_factory, submission.id)
    assert mid.status == SubmissionStatus.VERIFIED
    assert mid.proof_json is not None
    assert mid.transaction_id is None

    await worker.run_once(now=t0 + timedelta(seconds=1000))
    done = await _reload(session_factory, submission.id)
    assert done.status == SubmissionStatus.COMPLETE
    assert len(prover.calls) == 1
    assert len(ledger.published) == 1


@pytest.mark.asyncio
async def test_stored_transaction_is_never_republished(session_factory, blob_store, chain):
    submission = await _approved(session_factory, blob_store, chain)
    async with session_factory() as session:
        row = await session.get(Submission, submission.id)
        row.transaction_id = "txalreadythere"
        row.proof_json = {"proof": "cached"}
        await session.commit()
    prover, ledger = FakeProver(), FakeLedger()

    await _worker(session_factory, blob_store, prover, ledger).run_once()
    done = await _reload(session_factory, submission.id)
    assert done.status == SubmissionStatus.COMPLETE
    assert done.transaction_id == "txalreadythere"
    assert prover.calls == []
    assert ledger.published == []


@pytest.mark.asyncio
async def test_slow_prover_times_out_as_transient(session_factory, blob_store, chain):
    submission = await _approved(session_factory, blob_store, chain)
    prover = FakeProver(delay=1.0)
    worker = _worker(session_factory, blob_store, prover, FakeLedger(), call_timeout=0.05)

    await worker.run_once()
    mid = await _reload(session_factory, submission.id)
    assert mid.status == SubmissionStatus.PROCESSING
    assert mid.failure_reason.startswith("[timeout]")
    job = await _proof_job(session_factory)
    assert job.state == JobState.PENDING
    assert not os.path.exists(prover.calls[0]["image_path"])


@pytest.mark.asyncio
async def test_job_for_missing_or_finished_submission_is_a_noop(session_factory, blob_store, chain):
    orchestrator = ProofOrchestrator(session_factory, blob_store, FakeProver(), FakeLedger(), call_timeout=5)
    ctx = queue.JobContext(id=None, type=queue.PROOF_GENERATION, payload={"sha256_hash": "ab" * 32}, max_attempts=3)
    await orchestrator(ctx)

    with pytest.raises(PermanentError):
        await orchestrator(queue.JobContext(id=None, type=queue.PROOF_GENERATION, payload={}, max_attempts=3))


@pytest.mark.asyncio
async def test_admin_retry_revives_failed_submission(session_factory, blob_store, chain):
    submission = await _approved(session_factory, blob_store, chain)
    ledger = FakeLedger(deployed=False)
    prover = FakeProver()
    worker = _worker(session_factory, blob_store, prover, ledger, contract="B62contract")
    await worker.run_once()
    assert (await _reload(session_factory, submission.id)).status == SubmissionStatus.FAILED

    job = await _proof_job(session_factory)
    async with session_factory() as session:
        await retry_failed_job(session, job.id)
    revived = await _reload(session_factory, submission.id)
    assert revived.status == SubmissionStatus.PROCESSING
    assert revived.failure_reason is None

    ledger.deployed = True
    await worker.run_once()
    done = await _reload(session_factory, submission.id)
    assert done.status == SubmissionStatus.COMPLETE
    # proven once, published once
    assert len(prover.calls) == 1
    assert len(ledger.published) == 1


@pytest.mark.asyncio
async def test_job_timeout_is_recorded_on_submission(session_factory, blob_store, chain):
    submission = await _approved(session_factory, blob_store, chain)
    prover = FakeProver(delay=5.0)
    worker = _worker(session_factory, blob_store, prover, FakeLedger(), call_timeout=60, job_timeout=0.05)

    t0 = _now()
    await worker.run_once(now=t0)
    mid = await _reload(session_factory, submission.id)
    assert mid.status == SubmissionStatus.PROCESSING
    assert mid.retry_count == 1
    assert mid.failure_reason.startswith("[timeout]")

    await _drain(worker, start=t0 + timedelta(hours=1), rounds=3)
    failed = await _reload(session_factory, submission.id)
    assert (await _proof_job(session_factory)).state == JobState.FAILED
    assert failed.status == SubmissionStatus.FAILED
    assert failed.retry_count == 3
    assert failed.failed_at is not None
    assert "timeout" in failed.failure_reason
    assert len(prover.calls) == 3


@pytest.mark.asyncio
async def test_lost_runs_are_recorded_on_submission(session_factory, blob_store, chain):
    submission = await _approved(session_factory, blob_store, chain)
    t0 = _now()

    for cycle in range(1, 4):
        started = t0 + timedelta(hours=cycle)
        async with session_factory() as session:
            claimed = await queue.claim_next(session, job_types=[queue.PROOF_GENERATION], worker_id="gone", now=started)
        assert claimed is not None
        async with session_factory() as session:
            recovered = await recover_stale_jobs(session, timeout_seconds=60, now=started + timedelta(minutes=5))
        assert len(recovered) == 1

        row = await _reload(session_factory, submission.id)
        assert row.retry_count == cycle
        assert row.failure_reason.startswith("[worker_lost]")
        if cycle < 3:
            assert row.status == SubmissionStatus.PROCESSING

    assert row.status == SubmissionStatus.FAILED
    assert row.failed_at is not None
    assert (await _proof_job(session_factory)).state == JobState.FAILED


@pytest.mark.asyncio
async def test_worker_sweep_records_lost_run(session_factory, blob_store, chain):
    submission = await _approved(session_factory, blob_store, chain)
    long_ago = _now() - timedelta(days=1)
    async with session_factory() as session:
        job = await session.scalar(select(Job).where(Job.type == queue.PROOF_GENERATION))
        job.run_after = long_ago
        await session.commit()
    async with session_factory() as session:
        await queue.claim_next(session, job_types=[queue.PROOF_GENERATION], worker_id="gone", now=long_ago)

    worker = _worker(session_factory, blob_store, FakeProver(), FakeLedger())
    assert await worker.sweep_stale() == 1
    row = await _reload(session_factory, submission.id)
    assert row.retry_count == 1
    assert "gone" in row.failure_reason

    # the requeued job then completes normally
    assert await worker.run_once()
    assert (await _reload(session_factory, submission.id)).status == SubmissionStatus.COMPLETE
