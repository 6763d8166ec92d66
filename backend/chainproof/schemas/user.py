from __future__ import annotations
from datetime import datetime
from chainproof.schemas.common import CamelModel


class UserProfile(CamelModel):
    wallet_address: str
    created_at: datetime
    submission_count: int
    verified_submission_count: int
    can_like: bool


class UserCreate(CamelModel):
    wallet_address: str
