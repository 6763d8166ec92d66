from __future__ import annotations
import enum
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import (
    String, Text, Integer, Boolean, DateTime, Enum, ForeignKey, UniqueConstraint, Uuid, func,
)
from chainproof.db import Base, JSONType
from chainproof.errors import InvalidStateTransition
from chainproof.services.time_windows import utcnow


class SubmissionStatus(str, enum.Enum):
    AWAITING_REVIEW = "awaiting_review"
    PROCESSING = "processing"
    REJECTED = "rejected"
    VERIFIED = "verified"
    COMPLETE = "complete"
    FAILED = "failed"


class SubmissionEvent(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
    PROOF_GENERATED = "proof_generated"
    PUBLISHED = "published"
    FAIL = "fail"
    RETRY = "retry"


S, E = SubmissionStatus, SubmissionEvent

# (source, event) -> target; anything missing here is not a legal move
TRANSITIONS: dict[tuple[SubmissionStatus, SubmissionEvent], SubmissionStatus] = {
    (S.AWAITING_REVIEW, E.APPROVE): S.PROCESSING,
    (S.AWAITING_REVIEW, E.REJECT): S.REJECTED,
    (S.PROCESSING, E.PROOF_GENERATED): S.VERIFIED,
    (S.VERIFIED, E.PUBLISHED): S.COMPLETE,
    (S.PROCESSING, E.FAIL): S.FAILED,
    (S.VERIFIED, E.FAIL): S.FAILED,
    (S.FAILED, E.RETRY): S.PROCESSING,
}

del S, E


def can_transition(status: SubmissionStatus, event: SubmissionEvent) -> bool:
    return (SubmissionStatus(status), event) in TRANSITIONS


def next_status(status: SubmissionStatus, event: SubmissionEvent) -> SubmissionStatus:
    status = SubmissionStatus(status)
    try:
        return TRANSITIONS[(status, event)]
    except KeyError:
        raise InvalidStateTransition(
            f"Cannot {event.value} a submission in status '{status.value}'", field="status"
        ) from None


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Submission(Base):
    __tablename__ = "submissions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    sha256_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    wallet_address: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.wallet_address", ondelete="CASCADE"), index=True, nullable=False
    )
    signature: Mapped[str] = mapped_column(String(128), nullable=False)

    challenge_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("challenges.id", ondelete="CASCADE"), index=True, nullable=False
    )
    chain_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("chains.id", ondelete="CASCADE"), index=True, nullable=False
    )
    chain_position: Mapped[int] = mapped_column(Integer, nullable=False)

    storage_key: Mapped[str] = mapped_column(Text(), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(64), nullable=False)
    tagline: Mapped[str | None] = mapped_column(String(280), nullable=True)

    status: Mapped[SubmissionStatus] = mapped_column(
        Enum(SubmissionStatus, name="submission_status", native_enum=False, length=24, values_callable=_enum_values),
        index=True, nullable=False, default=SubmissionStatus.AWAITING_REVIEW,
    )
    challenge_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failure_reason: Mapped[str | None] = mapped_column(Text(), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    proof_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(128), index=True, nullable=True)
    transaction_submitted_block_height: Mapped[int | None] = mapped_column(Integer, nullable=True)

    processing_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("chain_id", "chain_position", name="uq_submission_chain_position"),
    )

    def apply(self, event: SubmissionEvent) -> SubmissionStatus:
        self.status = next_status(self.status, event)
        return self.status
