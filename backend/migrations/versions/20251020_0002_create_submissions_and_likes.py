from __future__ import annotations
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "20251020_0002"
down_revision = "20251020_0001"
branch_labels = None
depends_on = None

SUBMISSION_STATUSES = ("awaiting_review", "processing", "rejected", "verified", "complete", "failed")

def upgrade() -> None:
    op.create_table(
        "submissions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("sha256_hash", sa.String(length=64), nullable=False),
        sa.Column("wallet_address", sa.String(length=64), sa.ForeignKey("users.wallet_address", ondelete="CASCADE"), nullable=False),
        sa.Column("signature", sa.String(length=128), nullable=False),
        sa.Column("challenge_id", sa.Uuid(), sa.ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False),
        sa.Column("chain_id", sa.Uuid(), sa.ForeignKey("chains.id", ondelete="CASCADE"), nullable=False),
        sa.Column("chain_position", sa.Integer(), nullable=False),
        sa.Column("storage_key", sa.Text(), nullable=False),
        sa.Column("mime_type", sa.String(length=64), nullable=False),
        sa.Column("tagline", sa.String(length=280), nullable=True),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="awaiting_review"),
        sa.Column("challenge_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("proof_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("transaction_id", sa.String(length=128), nullable=True),
        sa.Column("transaction_submitted_block_height", sa.Integer(), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("chain_id", "chain_position", name="uq_submission_chain_position"),
        sa.CheckConstraint(
            "status IN (%s)" % ", ".join(f"'{s}'" for s in SUBMISSION_STATUSES), name="ck_submission_status"
        ),
    )
    op.create_index("ix_submissions_sha256_hash", "submissions", ["sha256_hash"], unique=True)
    op.create_index("ix_submissions_wallet_address", "submissions", ["wallet_address"])
    op.create_index("ix_submissions_challenge_id", "submissions", ["challenge_id"])
    op.create_index("ix_submissions_chain_id", "submissions", ["chain_id"])
    op.create_index("ix_submissions_status", "submissions", ["status"])
    op.create_index("ix_submissions_transaction_id", "submissions", ["transaction_id"])
    op.create_index("ix_submissions_created_at", "submissions", ["created_at"])

    op.create_table(
        "likes",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("submission_id", sa.Uuid(), sa.ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("wallet_address", sa.String(length=64), sa.ForeignKey("users.wallet_address", ondelete="CASCADE"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("submission_id", "wallet_address", name="uq_like_submission_wallet"),
    )
    op.create_index("ix_likes_submission_id", "likes", ["submission_id"])
    op.create_index("ix_likes_wallet_address", "likes", ["wallet_address"])

def downgrade() -> None:
    op.drop_index("ix_likes_wallet_address", table_name="likes")
    op.drop_index("ix_likes_submission_id", table_name="likes")
    op.drop_table("likes")
    for name in ("created_at", "transaction_id", "status", "chain_id", "challenge_id", "wallet_address", "sha256_hash"):
        op.drop_index(f"ix_submissions_{name}", table_name="submissions")
    op.drop_table("submissions")
