from __future__ import annotations
import asyncio
import io
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from PIL import Image
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from chainproof.config import settings
from chainproof.db import Base, get_session
from chainproof.errors import TransientError
from chainproof.main import app
from chainproof.services.challenges import create_challenge
from chainproof.services.ports import PublishResult, TransactionLookup
from chainproof.services.verification import hash_image
import chainproof.models.user  # noqa: F401  register tables
import chainproof.models.challenge  # noqa: F401
import chainproof.models.submission  # noqa: F401
import chainproof.models.like  # noqa: F401
import chainproof.models.job  # noqa: F401


def _now():
    return datetime.now(timezone.utc)


# ---- crypto / image helpers ------------------------------------------------

@dataclass
class Wallet:
    key: Ed25519PrivateKey = field(default_factory=Ed25519PrivateKey.generate)

    @property
    def address(self) -> str:
        raw = self.key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw
        )
        return raw.hex()

    def sign(self, data: bytes) -> str:
        return self.key.sign(bytes.fromhex(hash_image(data))).hex()


def make_png() -> bytes:
    """Random 4x4 PNG; every call yields different bytes."""
    img = Image.frombytes("RGB", (4, 4), os.urandom(48))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


# ---- port doubles -------------------------------------------------------------

class InMemoryBlobStore:
    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        self.objects[key] = data
        return key

    async def get(self, key: str) -> bytes:
        try:
            return self.objects[key]
        except KeyError:
            raise FileNotFoundError(key) from None

    async def delete(self, key: str) -> None:
        self.deleted.append(key)
        self.objects.pop(key, None)


class FakeProver:
    """Raises the queued failures in order, then succeeds."""

    def __init__(self, failures: list[BaseException] | None = None, delay: float = 0.0):
        self.failures = list(failures or [])
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def generate_proof(self, sha256_hash, signature, public_key, aux):
        self.calls.append({
            "sha256_hash": sha256_hash,
            "public_key": public_key,
            "image_path": aux.get("image_path"),
            "image_present": os.path.exists(aux.get("image_path", "")),
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        return {"proof": f"proof-{sha256_hash[:16]}", "publicInputs": [sha256_hash]}


class FakeLedger:
    def __init__(self, height: int = 1000, deployed: bool = True, publish_failures: list[BaseException] | None = None):
        self.height = height
        self.deployed = deployed
        self.publish_failures = list(publish_failures or [])
        self.published: list[tuple[dict, str]] = []
        self.transactions: dict[str, int | None] = {}

    async def publish(self, artifact, recipient):
        if self.publish_failures:
            raise self.publish_failures.pop(0)
        self.published.append((artifact, recipient))
        tx_id = f"tx{len(self.published):04d}abcdef"
        self.transactions[tx_id] = None
        return PublishResult(transaction_id=tx_id, submitted_height=self.height)

    async def current_height(self) -> int:
        return self.height

    async def find_transaction(self, transaction_id: str) -> TransactionLookup:
        height = self.transactions.get(transaction_id)
        if height is None:
            return TransactionLookup(included=False)
        return TransactionLookup(included=True, height=height)

    async def is_deployed(self, address: str) -> bool:
        return self.deployed


def transient(message: str = "prover busy") -> TransientError:
    return TransientError(message, category="prover_unavailable")


# ---- database / app fixtures -------------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'chainproof.db'}", connect_args={"timeout": 30}
    )

    @event.listens_for(eng.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record):
        # take over BEGIN so every transaction grabs the write lock up front
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(eng.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest_asyncio.fixture
async def client(session_factory, blob_store):
    async def _session_override():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _session_override
    app.state.blob_store = blob_store
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    app.state.blob_store = None


@pytest.fixture
def admin_password(monkeypatch):
    monkeypatch.setattr(settings, "admin_password", "letmein")
    return "letmein"


@pytest_asyncio.fixture
async def admin_headers(client, admin_password):
    r = await client.post("/auth/admin/token", json={"password": admin_password})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['accessToken']}"}


@pytest_asyncio.fixture
async def chain(session_factory):
    """An active challenge and its chain; returns the chain."""
    async with session_factory() as session:
        _challenge, ch = await create_challenge(
            session, title="Touch grass", start_time=_now() - timedelta(days=1), end_time=_now() + timedelta(days=1)
        )
    return ch


async def make_chain(session_factory, *, start=None, end=None, title="Another challenge"):
    async with session_factory() as session:
        _challenge, ch = await create_challenge(
            session,
            title=title,
            start_time=start or _now() - timedelta(days=1),
            end_time=end or _now() + timedelta(days=1),
        )
    return ch


async def post_submission(client, chain_id, wallet: Wallet, image: bytes | None = None, **extra):
    image = image or make_png()
    data = {"chainId": str(chain_id), "walletAddress": wallet.address, "signature": wallet.sign(image)}
    data.update(extra)
    return await client.post("/submissions", data=data, files={"image": ("photo.png", image, "image/png")})
