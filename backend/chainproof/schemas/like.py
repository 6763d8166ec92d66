from __future__ import annotations
from uuid import UUID
from datetime import datetime
from chainproof.schemas.common import CamelModel


class LikeCreate(CamelModel):
    wallet_address: str


class LikePublic(CamelModel):
    id: UUID
    submission_id: UUID
    wallet_address: str
    created_at: datetime


class LikeCount(CamelModel):
    submission_id: UUID
    count: int
