from __future__ import annotations
from uuid import UUID
from datetime import datetime
from typing import Any
from chainproof.schemas.common import CamelModel


class JobPublic(CamelModel):
    id: UUID
    type: str
    state: str
    payload: dict[str, Any]
    attempt_count: int
    max_attempts: int
    singleton_key: str | None = None
    run_after: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime


class QueueStats(CamelModel):
    pending: int
    processing: int
    completed: int
    failed: int
    total: int
    avg_processing_seconds: float | None = None


class JobStatsResponse(CamelModel):
    queue: QueueStats
    submissions: dict[str, int]
