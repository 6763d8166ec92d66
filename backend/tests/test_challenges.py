import uuid
import pytest
from datetime import datetime, timedelta, timezone
from fastapi import status
from sqlalchemy import func, select
from chainproof.models.like import Like
from chainproof.models.submission import Submission
from conftest import Wallet, make_chain, post_submission


def _now():
    return datetime.now(timezone.utc)


def _payload(**overrides):
    payload = {
        "title": "Sunrise every day",
        "description": "One photo of the sunrise",
        "startTime": (_now() - timedelta(hours=1)).isoformat(),
        "endTime": (_now() + timedelta(days=7)).isoformat(),
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_create_and_fetch_challenge(client, admin_headers):
    r = await client.post("/challenges", headers=admin_headers, json=_payload(ledgerAddress="B62qexample"))
    assert r.status_code == status.HTTP_201_CREATED, r.text
    ch = r.json()
    assert ch["runtimeState"] == "active"
    assert ch["participantCount"] == 0
    assert ch["chainCount"] == 1
    assert ch["ledgerAddress"] == "B62qexample"

    r2 = await client.get(f"/challenges/{ch['id']}")
    assert r2.status_code == 200
    assert r2.json()["title"] == "Sunrise every day"

    chains = (await client.get("/chains", params={"challengeId": ch["id"]})).json()
    assert len(chains) == 1
    assert chains[0]["length"] == 0
    assert chains[0]["name"] == "Sunrise every day"


@pytest.mark.asyncio
async def test_create_requires_admin(client):
    r = await client.post("/challenges", json=_payload())
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_create_rejects_inverted_window(client, admin_headers):
    start = _now() + timedelta(days=2)
    r = await client.post(
        "/challenges",
        headers=admin_headers,
        json=_payload(startTime=start.isoformat(), endTime=(start - timedelta(days=1)).isoformat()),
    )
    assert r.status_code == 400
    assert r.json()["field"] == "endTime"

    r2 = await client.post("/challenges", headers=admin_headers, json=_payload(title="   "))
    assert r2.status_code == 400


@pytest.mark.asyncio
async def test_active_listing_uses_half_open_window(client, session_factory):
    active = await make_chain(session_factory, title="Now")
    await make_chain(session_factory, start=_now() - timedelta(days=3), end=_now() - timedelta(seconds=1), title="Over")
    await make_chain(session_factory, start=_now() + timedelta(days=1), end=_now() + timedelta(days=2), title="Soon")

    everything = (await client.get("/challenges")).json()
    assert {c["runtimeState"] for c in everything} == {"active", "ended", "upcoming"}

    current = (await client.get("/challenges/active")).json()
    assert [c["id"] for c in current] == [str(active.challenge_id)]


@pytest.mark.asyncio
async def test_unknown_challenge_and_chain(client):
    missing = "00000000-0000-0000-0000-000000000000"
    r = await client.get(f"/challenges/{missing}")
    assert r.status_code == 404
    assert r.json()["detail"] == "Challenge not found"
    assert (await client.get(f"/chains/{missing}")).status_code == 404


@pytest.mark.asyncio
async def test_delete_challenge_removes_everything_beneath_it(client, chain, admin_headers, session_factory, blob_store):
    author, fan = Wallet(), Wallet()
    sub = (await post_submission(client, chain.id, author)).json()
    await post_submission(client, chain.id, fan)
    async with session_factory() as session:
        row = await session.get(Submission, uuid.UUID(sub["id"]))
        row.challenge_verified = True
        await session.commit()
    assert (await client.post(f"/submissions/{sub['id']}/likes", json={"walletAddress": author.address})).status_code == 201

    r = await client.delete(f"/challenges/{chain.challenge_id}", headers=admin_headers)
    assert r.status_code == 204
    assert (await client.get(f"/challenges/{chain.challenge_id}")).status_code == 404
    assert (await client.get(f"/chains/{chain.id}")).status_code == 404
    assert (await client.get(f"/submissions/{sub['id']}")).status_code == 404
    assert blob_store.objects == {}

    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(Like)) == 0
