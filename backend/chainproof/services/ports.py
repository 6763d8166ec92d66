from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Protocol


class BlobStore(Protocol):
    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str: ...

    async def get(self, key: str) -> bytes:
        """Raises FileNotFoundError when the key is unknown."""
        ...

    async def delete(self, key: str) -> None: ...


class Prover(Protocol):
    async def generate_proof(
        self, sha256_hash: str, signature: str, public_key: str, aux: dict[str, Any]
    ) -> dict[str, Any]:
        """Return an opaque proof artifact or raise TransientError / PermanentError."""
        ...


@dataclass(frozen=True)
class PublishResult:
    transaction_id: str
    submitted_height: int


@dataclass(frozen=True)
class TransactionLookup:
    included: bool
    height: int | None = None


class Ledger(Protocol):
    async def publish(self, artifact: dict[str, Any], recipient: str) -> PublishResult: ...

    async def current_height(self) -> int: ...

    async def find_transaction(self, transaction_id: str) -> TransactionLookup: ...

    async def is_deployed(self, address: str) -> bool: ...
