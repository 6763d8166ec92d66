from __future__ import annotations
from uuid import UUID
from datetime import datetime
from pydantic import Field
from chainproof.schemas.common import CamelModel


class ChallengeCreate(CamelModel):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    start_time: datetime
    end_time: datetime
    ledger_address: str | None = Field(default=None, max_length=128)


class ChallengePublic(CamelModel):
    id: UUID
    title: str
    description: str | None = None
    start_time: datetime
    end_time: datetime
    participant_count: int
    chain_count: int
    ledger_address: str | None = None
    runtime_state: str
    created_at: datetime


class ChainPublic(CamelModel):
    id: UUID
    name: str
    challenge_id: UUID
    length: int
    last_activity_at: datetime
    created_at: datetime
