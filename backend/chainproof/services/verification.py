from __future__ import annotations
import hashlib
import re
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

# Wallet addresses are raw Ed25519 public keys, signatures are raw Ed25519
# signatures over the 32-byte SHA-256 digest of the image. Both travel as hex.
PUBLIC_KEY_BYTES = 32
SIGNATURE_BYTES = 64

_HEX = re.compile(r"^[0-9a-f]+$")


def hash_image(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _normalize_hex(value: str) -> str:
    value = (value or "").strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    return value


def normalize_wallet_address(address: str) -> str:
    """Return the canonical form of a wallet address or raise ValueError."""
    value = _normalize_hex(address)
    if len(value) != PUBLIC_KEY_BYTES * 2 or not _HEX.match(value):
        raise ValueError("Wallet address must be a 32-byte hex-encoded public key")
    return value


def normalize_sha256_hash(value: str) -> str:
    digest = _normalize_hex(value)
    if len(digest) != 64 or not _HEX.match(digest):
        raise ValueError("sha256Hash must be a 32-byte hex digest")
    return digest


def normalize_signature(signature: str) -> str:
    value = _normalize_hex(signature)
    if len(value) != SIGNATURE_BYTES * 2 or not _HEX.match(value):
        raise ValueError("Signature must be a 64-byte hex-encoded signature")
    return value


def public_key_for(address: str) -> Ed25519PublicKey:
    return Ed25519PublicKey.from_public_bytes(bytes.fromhex(normalize_wallet_address(address)))


def verify_signature(sha256_hash: str, signature: str, wallet_address: str) -> bool:
    try:
        key = public_key_for(wallet_address)
        key.verify(bytes.fromhex(normalize_signature(signature)), bytes.fromhex(sha256_hash))
    except (ValueError, InvalidSignature):
        return False
    return True
