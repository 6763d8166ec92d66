from __future__ import annotations
import asyncio
import signal
import socket
import time
import uuid
from datetime import datetime
from typing import Awaitable, Callable
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from chainproof.config import settings
from chainproof.errors import DuplicateJob, ErrorKind, TransientError, classify, error_category
from chainproof.models.job import JobState
from chainproof.services import queue
from chainproof.services.ports import BlobStore, Ledger, Prover
from chainproof.services.queue import JobContext
from chainproof.services.review import recover_stale_jobs

log = structlog.get_logger()

Handler = Callable[[JobContext], Awaitable[None]]


def build_handlers(
    session_factory: async_sessionmaker[AsyncSession],
    blob_store: BlobStore,
    prover: Prover,
    ledger: Ledger,
) -> dict[str, Handler]:
    from chainproof.jobs.generate_proof import ProofOrchestrator
    from chainproof.jobs.reconcile_ledger import ReconciliationMonitor

    return {
        queue.PROOF_GENERATION: ProofOrchestrator(session_factory, blob_store, prover, ledger),
        queue.LEDGER_RECONCILIATION: ReconciliationMonitor(session_factory, ledger),
    }


class Worker:
    """Pool of consumer loops over the jobs table, one job at a time per loop."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        handlers: dict[str, Handler],
        *,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        job_timeout: float | None = None,
        worker_id: str | None = None,
    ):
        self.session_factory = session_factory
        self.handlers = handlers
        self.concurrency = concurrency or settings.worker_concurrency
        self.poll_interval = settings.queue_poll_interval_seconds if poll_interval is None else poll_interval
        self.job_timeout = settings.job_timeout_seconds if job_timeout is None else job_timeout
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"

    async def run_once(self, *, now: datetime | None = None) -> bool:
        """Claim and run a single job. Returns False when nothing was runnable."""
        async with self.session_factory() as session:
            job = await queue.claim_next(
                session, job_types=list(self.handlers), worker_id=self.worker_id, now=now
            )
        if job is None:
            return False

        ctx = JobContext(
            id=job.id,
            type=job.type,
            payload=dict(job.payload or {}),
            attempt=job.attempt_count,
            max_attempts=job.max_attempts,
        )
        with structlog.contextvars.bound_contextvars(
            job_id=str(ctx.id), job_type=ctx.type, attempt=ctx.attempt, correlation_id=ctx.correlation_id
        ):
            started = time.monotonic()
            log.info("job_started")
            try:
                await self._execute(ctx)
            except Exception as exc:
                kind = classify(exc)
                async with self.session_factory() as session:
                    state = await queue.mark_failed(
                        session, ctx.id, exc, retryable=kind is ErrorKind.TRANSIENT, now=now
                    )
                on_failure = getattr(self.handlers[ctx.type], "on_failure", None)
                if on_failure is not None:
                    await on_failure(ctx, exc, terminal=state == JobState.FAILED)
                event = "job_failed" if state == JobState.FAILED else "job_retry_scheduled"
                log.warning(
                    event,
                    error=str(exc),
                    category=error_category(exc),
                    kind=kind.value,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            else:
                async with self.session_factory() as session:
                    await queue.mark_completed(session, ctx.id, now=now)
                log.info("job_completed", duration_ms=int((time.monotonic() - started) * 1000))
        return True

    async def _execute(self, ctx: JobContext) -> None:
        try:
            await asyncio.wait_for(self.handlers[ctx.type](ctx), timeout=self.job_timeout)
        except asyncio.TimeoutError:
            raise TransientError(f"job exceeded its {self.job_timeout}s timeout", category="timeout") from None

    async def _consume(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                worked = await self.run_once()
            except Exception:
                log.exception("worker_loop_error", worker_id=self.worker_id)
                worked = False
            if not worked:
                await _sleep_until(stop, self.poll_interval)

    async def run(self, stop: asyncio.Event, *, schedule_reconciliation: bool | None = None) -> None:
        if schedule_reconciliation is None:
            schedule_reconciliation = settings.monitoring_enabled
        log.info("worker_started", worker_id=self.worker_id, concurrency=self.concurrency, job_types=list(self.handlers))
        tasks = [asyncio.create_task(self._consume(stop)) for _ in range(self.concurrency)]
        tasks.append(asyncio.create_task(_every(stop, settings.stale_sweep_interval_seconds, self.sweep_stale)))
        if schedule_reconciliation:
            tasks.append(asyncio.create_task(
                _every(stop, settings.monitor_interval_seconds, self.schedule_reconciliation)
            ))
        try:
            await asyncio.gather(*tasks)
        finally:
            log.info("worker_stopped", worker_id=self.worker_id)

    async def sweep_stale(self, *, now: datetime | None = None) -> int:
        async with self.session_factory() as session:
            return len(await recover_stale_jobs(session, now=now))

    async def schedule_reconciliation(self) -> uuid.UUID | None:
        async with self.session_factory() as session:
            try:
                job_id = await queue.enqueue(
                    session, queue.LEDGER_RECONCILIATION, {}, singleton_key=queue.LEDGER_RECONCILIATION, max_attempts=1
                )
            except DuplicateJob:
                log.info("reconciliation_already_scheduled")
                return None
            await session.commit()
            return job_id


async def _sleep_until(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


async def _every(stop: asyncio.Event, seconds: float, fn: Callable[[], Awaitable[object]]) -> None:
    while not stop.is_set():
        try:
            await fn()
        except Exception:
            log.exception("periodic_task_error", task=getattr(fn, "__name__", repr(fn)))
        await _sleep_until(stop, seconds)


async def _main() -> None:
    from chainproof.db import SessionLocal, engine
    from chainproof.services.gateways import HttpLedger, HttpProver
    from chainproof.services.storage import MinioBlobStore

    prover, ledger = HttpProver(), HttpLedger()
    worker = Worker(SessionLocal, build_handlers(SessionLocal, MinioBlobStore.from_settings(), prover, ledger))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    try:
        await worker.run(stop)
    finally:
        await prover.aclose()
        await ledger.aclose()
        await engine.dispose()


def main() -> None:
    from chainproof.logging_setup import configure_logging

    configure_logging()
    asyncio.run(_main())


if __name__ == "__main__":
    main()
