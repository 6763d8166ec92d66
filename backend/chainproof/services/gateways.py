from __future__ import annotations
import os
from typing import Any
import httpx
from chainproof.config import settings
from chainproof.errors import PermanentError, TransientError
from chainproof.services.ports import PublishResult, TransactionLookup


def _error_category(response: httpx.Response, default: str) -> str:
    # Gateways report a machine-readable category; message text is never inspected.
    try:
        body = response.json()
    except ValueError:
        return default
    if isinstance(body, dict) and isinstance(body.get("category"), str):
        return body["category"]
    return default


def _raise_for_status(response: httpx.Response, service: str) -> None:
    if response.is_success:
        return
    status = response.status_code
    message = f"{service} responded {status}"
    if status == 429 or status >= 500:
        raise TransientError(message, category=_error_category(response, f"http_{status}"))
    raise PermanentError(message, category=_error_category(response, "rejected"))


async def _request(client: httpx.AsyncClient, service: str, method: str, url: str, **kwargs) -> httpx.Response:
    try:
        return await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise TransientError(f"{service} request timed out", category="timeout") from e
    except httpx.TransportError as e:
        raise TransientError(f"{service} unreachable: {e}", category="network") from e


class HttpProver:
    """Prover port talking to an external proving service over HTTP."""

    def __init__(self, base_url: str | None = None, *, timeout: float | None = None, client: httpx.AsyncClient | None = None):
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.prover_url,
            timeout=timeout or settings.external_call_timeout_seconds,
        )

    async def generate_proof(
        self, sha256_hash: str, signature: str, public_key: str, aux: dict[str, Any]
    ) -> dict[str, Any]:
        data = {"sha256Hash": sha256_hash, "signature": signature, "publicKey": public_key}
        image_path = aux.get("image_path")
        if image_path:
            with open(image_path, "rb") as fh:
                files = {"image": (os.path.basename(image_path), fh.read(), "application/octet-stream")}
            response = await _request(self._client, "prover", "POST", "/proofs", data=data, files=files)
        else:
            response = await _request(self._client, "prover", "POST", "/proofs", json=data)
        _raise_for_status(response, "prover")
        artifact = response.json()
        if not isinstance(artifact, dict):
            raise PermanentError("prover returned a malformed artifact", category="invalid_proof")
        return artifact

    async def aclose(self) -> None:
        await self._client.aclose()


class HttpLedger:
    """Ledger port backed by a ledger gateway exposing a small REST surface."""

    def __init__(self, base_url: str | None = None, *, timeout: float | None = None, client: httpx.AsyncClient | None = None):
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.ledger_url,
            timeout=timeout or settings.external_call_timeout_seconds,
        )

    async def publish(self, artifact: dict[str, Any], recipient: str) -> PublishResult:
        response = await _request(
            self._client, "ledger", "POST", "/transactions", json={"artifact": artifact, "recipient": recipient}
        )
        _raise_for_status(response, "ledger")
        body = response.json()
        try:
            return PublishResult(transaction_id=str(body["transactionId"]), submitted_height=int(body["submittedHeight"]))
        except (KeyError, TypeError, ValueError) as e:
            # the transaction may have been broadcast; retrying could double-publish
            raise PermanentError("ledger returned a malformed publish receipt", category="malformed_response") from e

    async def current_height(self) -> int:
        response = await _request(self._client, "ledger", "GET", "/height")
        _raise_for_status(response, "ledger")
        return int(response.json()["height"])

    async def find_transaction(self, transaction_id: str) -> TransactionLookup:
        response = await _request(self._client, "ledger", "GET", f"/transactions/{transaction_id}")
        if response.status_code == 404:
            return TransactionLookup(included=False)
        _raise_for_status(response, "ledger")
        body = response.json()
        height = body.get("height")
        return TransactionLookup(included=bool(body.get("included")), height=int(height) if height is not None else None)

    async def is_deployed(self, address: str) -> bool:
        response = await _request(self._client, "ledger", "GET", f"/contracts/{address}")
        if response.status_code == 404:
            return False
        _raise_for_status(response, "ledger")
        return bool(response.json().get("deployed"))

    async def aclose(self) -> None:
        await self._client.aclose()
