from __future__ import annotations
import asyncio
import enum
from dataclasses import dataclass, field
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from chainproof.config import settings
from chainproof.errors import TransientError
from chainproof.models.submission import Submission
from chainproof.services.ports import Ledger, TransactionLookup
from chainproof.services.queue import JobContext

log = structlog.get_logger()

# how many tx hashes per bucket make it into the report log line
SAMPLE_SIZE = 3


class TxStatus(str, enum.Enum):
    PENDING = "pending"
    INCLUDED = "included"
    FINAL = "final"
    ABANDONED = "abandoned"


def classify_transaction(
    lookup: TransactionLookup,
    *,
    submitted_height: int,
    current_height: int,
    finality_threshold: int,
    abandon_threshold: int,
) -> TxStatus:
    if not lookup.included or lookup.height is None:
        if current_height - submitted_height >= abandon_threshold:
            return TxStatus.ABANDONED
        return TxStatus.PENDING
    confirmations = max(current_height - lookup.height, 0)
    if confirmations >= finality_threshold:
        return TxStatus.FINAL
    return TxStatus.INCLUDED


@dataclass
class ReconciliationReport:
    current_height: int
    lookback_from: int
    buckets: dict[TxStatus, list[str]] = field(default_factory=lambda: {s: [] for s in TxStatus})

    def add(self, status: TxStatus, transaction_id: str) -> None:
        self.buckets[status].append(transaction_id)

    @property
    def counts(self) -> dict[str, int]:
        return {status.value: len(ids) for status, ids in self.buckets.items()}

    @property
    def total(self) -> int:
        return sum(len(ids) for ids in self.buckets.values())

    def samples(self) -> dict[str, list[str]]:
        return {status.value: [tx[:8] for tx in ids[:SAMPLE_SIZE]] for status, ids in self.buckets.items() if ids}


class ReconciliationMonitor:
    """
    Handler for `reconcile_ledger` jobs: re-derives confirmation depth for
    recently published transactions. Reads submissions, never writes them;
    abandoned transactions are reported for a human to act on.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: Ledger,
        *,
        lookback_blocks: int | None = None,
        finality_threshold: int | None = None,
        abandon_threshold: int | None = None,
        pending_warn_threshold: int | None = None,
        call_timeout: float | None = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.lookback_blocks = settings.monitor_lookback_blocks if lookback_blocks is None else lookback_blocks
        self.finality_threshold = settings.finality_threshold if finality_threshold is None else finality_threshold
        self.abandon_threshold = settings.abandon_threshold if abandon_threshold is None else abandon_threshold
        self.pending_warn_threshold = (
            settings.pending_warn_threshold if pending_warn_threshold is None else pending_warn_threshold
        )
        self.call_timeout = settings.external_call_timeout_seconds if call_timeout is None else call_timeout

    async def __call__(self, ctx: JobContext) -> None:
        await self.reconcile()

    async def _ledger(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.call_timeout)
        except asyncio.TimeoutError:
            raise TransientError(f"ledger call timed out after {self.call_timeout}s", category="timeout") from None

    async def reconcile(self) -> ReconciliationReport:
        current_height = await self._ledger(self.ledger.current_height())
        lookback_from = max(current_height - self.lookback_blocks, 0)
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(Submission.transaction_id, Submission.transaction_submitted_block_height)
                    .where(
                        Submission.transaction_id.is_not(None),
                        Submission.transaction_submitted_block_height.is_not(None),
                        Submission.transaction_submitted_block_height >= lookback_from,
                    )
                    .order_by(Submission.transaction_submitted_block_height.desc())
                )
            ).all()

        report = ReconciliationReport(current_height=current_height, lookback_from=lookback_from)
        for transaction_id, submitted_height in rows:
            lookup = await self._ledger(self.ledger.find_transaction(transaction_id))
            status = classify_transaction(
                lookup,
                submitted_height=submitted_height,
                current_height=current_height,
                finality_threshold=self.finality_threshold,
                abandon_threshold=self.abandon_threshold,
            )
            report.add(status, transaction_id)

        log.info(
            "reconciliation_report",
            current_height=current_height,
            lookback_from=lookback_from,
            total=report.total,
            samples=report.samples(),
            **report.counts,
        )
        abandoned = report.buckets[TxStatus.ABANDONED]
        if abandoned:
            log.warning("transactions_abandoned", count=len(abandoned), transaction_ids=abandoned)
        pending = len(report.buckets[TxStatus.PENDING])
        if pending > self.pending_warn_threshold:
            log.warning("transactions_pending_high", count=pending, threshold=self.pending_warn_threshold)
        return report
