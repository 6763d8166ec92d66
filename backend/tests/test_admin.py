import uuid
from datetime import timedelta
import pytest
from chainproof.config import settings
from chainproof.jobs.generate_proof import ProofOrchestrator
from chainproof.models.job import Job, JobState
from chainproof.models.submission import SubmissionStatus
from chainproof.services import queue
from chainproof.services.time_windows import utcnow
from chainproof.worker import Worker
from conftest import FakeLedger, FakeProver, Wallet, post_submission


async def _approve(client, chain, admin_headers):
    sub = (await post_submission(client, chain.id, Wallet())).json()
    r = await client.patch(f"/submissions/{sub['id']}", json={"challengeVerified": True}, headers=admin_headers)
    assert r.status_code == 200
    return sub


@pytest.mark.asyncio
async def test_token_requires_the_admin_password(client, admin_password):
    r = await client.post("/auth/admin/token", json={"password": "wrong"})
    assert r.status_code == 401

    r = await client.post("/auth/admin/token", json={"password": admin_password})
    assert r.status_code == 200
    body = r.json()
    assert body["tokenType"] == "bearer"
    assert body["expiresIn"] == settings.admin_token_ttl_min * 60


@pytest.mark.asyncio
async def test_login_disabled_without_configured_password(client, monkeypatch):
    monkeypatch.setattr(settings, "admin_password", "")
    r = await client.post("/auth/admin/token", json={"password": ""})
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_job_endpoints_require_admin(client):
    assert (await client.get("/admin/jobs/stats")).status_code == 401
    assert (await client.get("/admin/jobs", headers={"Authorization": "Bearer junk"})).status_code == 401


@pytest.mark.asyncio
async def test_stats_and_listing(client, chain, admin_headers):
    await _approve(client, chain, admin_headers)
    await post_submission(client, chain.id, Wallet())

    r = await client.get("/admin/jobs/stats", headers=admin_headers)
    assert r.status_code == 200
    body = r.json()
    assert body["queue"]["pending"] == 1
    assert body["queue"]["total"] == 1
    assert body["queue"]["avgProcessingSeconds"] is None
    assert body["submissions"]["processing"] == 1
    assert body["submissions"]["awaiting_review"] == 1

    jobs = (await client.get("/admin/jobs", params={"state": "pending"}, headers=admin_headers)).json()
    assert len(jobs) == 1
    assert jobs[0]["type"] == "generate_proof"
    assert jobs[0]["attemptCount"] == 0

    one = await client.get(f"/admin/jobs/{jobs[0]['id']}", headers=admin_headers)
    assert one.status_code == 200
    assert (await client.get(f"/admin/jobs/{uuid.uuid4()}", headers=admin_headers)).status_code == 404


@pytest.mark.asyncio
async def test_retry_failed_proof_job(client, chain, admin_headers, session_factory, blob_store):
    sub = await _approve(client, chain, admin_headers)
    orchestrator = ProofOrchestrator(
        session_factory, blob_store, FakeProver(), FakeLedger(deployed=False),
        call_timeout=5, default_contract_address="B62contract",
    )
    await Worker(session_factory, {queue.PROOF_GENERATION: orchestrator}, job_timeout=5).run_once()

    failed = (await client.get("/admin/jobs/failed", headers=admin_headers)).json()
    assert len(failed) == 1
    assert "not deployed" in failed[0]["lastError"]
    assert (await client.get(f"/submissions/{sub['id']}")).json()["status"] == SubmissionStatus.FAILED.value

    r = await client.post(f"/admin/jobs/{failed[0]['id']}/retry", headers=admin_headers)
    assert r.status_code == 200, r.text
    assert r.json()["state"] == "pending"
    assert r.json()["attemptCount"] == 0
    assert (await client.get(f"/submissions/{sub['id']}")).json()["status"] == SubmissionStatus.PROCESSING.value

    # only failed jobs can be retried
    again = await client.post(f"/admin/jobs/{failed[0]['id']}/retry", headers=admin_headers)
    assert again.status_code == 400


@pytest.mark.asyncio
async def test_recover_stale_endpoint(client, admin_headers, session_factory):
    long_ago = utcnow() - timedelta(seconds=settings.stale_job_timeout_seconds + 60)
    async with session_factory() as session:
        job_id = await queue.enqueue(session, "noop", {}, run_after=long_ago)
        await session.commit()
    async with session_factory() as session:
        await queue.claim_next(session, job_types=["noop"], worker_id="gone", now=long_ago)

    r = await client.post("/admin/jobs/recover-stale", headers=admin_headers)
    assert r.status_code == 200
    assert r.json() == {"recovered": 1}
    async with session_factory() as session:
        assert (await session.get(Job, job_id)).state == JobState.PENDING
