from __future__ import annotations
from uuid import UUID
from datetime import datetime
from chainproof.schemas.common import CamelModel


class SubmissionPublic(CamelModel):
    id: UUID
    sha256_hash: str
    wallet_address: str
    signature: str
    challenge_id: UUID
    chain_id: UUID
    chain_position: int
    tagline: str | None = None
    status: str
    challenge_verified: bool
    failure_reason: str | None = None
    retry_count: int = 0
    transaction_id: str | None = None
    transaction_submitted_block_height: int | None = None
    mime_type: str | None = None
    # do not expose storage keys
    image_url: str
    created_at: datetime
    updated_at: datetime


class SubmissionReview(CamelModel):
    challenge_verified: bool
    failure_reason: str | None = None


class SubmissionStatusPublic(CamelModel):
    id: UUID
    sha256_hash: str
    status: str
    challenge_verified: bool
    retry_count: int = 0
    failure_reason: str | None = None
    transaction_id: str | None = None
    updated_at: datetime
