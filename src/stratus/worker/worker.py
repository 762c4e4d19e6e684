"""Durable job worker: leases due jobs and dispatches them by kind."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import structlog
from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..provisioning import db
from ..provisioning.jobs import JobHandler, JobOutcome

LOGGER = structlog.get_logger("stratus.worker")
TRACER = trace.get_tracer("stratus.worker")

JOB_RUN_COUNTER = GLOBAL_REGISTRY.register(Counter("stratus_worker_jobs_total", "Jobs processed by kind and result"))
JOB_LEASE_LOST_COUNTER = GLOBAL_REGISTRY.register(
    Counter("stratus_worker_lease_lost_total", "Job outcomes discarded because the lease was fenced")
)


class JobWorker:
    """Runs one job at a time until stopped.

    Each claim bumps the job's version; the outcome is only written back if the
    version still matches, so a worker whose lease expired cannot overwrite the
    work of the one that picked the job up after it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        handlers: Iterable[JobHandler],
        *,
        worker_id: str,
        lease_seconds: int = 300,
        idle_sleep_seconds: float = 2.0,
        max_failures: int = 10,
        failure_retry_seconds: float = 15.0,
    ) -> None:
        self._session_factory = session_factory
        self._handlers = {handler.kind: handler for handler in handlers}
        self._worker_id = worker_id
        self._lease_seconds = lease_seconds
        self._idle_sleep = idle_sleep_seconds
        self._max_failures = max(1, max_failures)
        self._failure_retry = failure_retry_seconds
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        self._stopping.set()

    async def run(self) -> None:
        LOGGER.info("Worker started", worker_id=self._worker_id, kinds=sorted(self._handlers))
        while not self._stopping.is_set():
            processed = await self.run_once()
            if processed:
                continue
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._idle_sleep)
            except asyncio.TimeoutError:
                pass
        LOGGER.info("Worker stopped", worker_id=self._worker_id)

    async def run_once(self) -> bool:
        """Claim and process at most one due job; returns whether one was found."""

        async with self._session_factory() as session:
            job = await db.claim_due_job(session, self._worker_id, self._lease_seconds)
            await session.commit()
        if job is None:
            return False

        kind = job["kind"]
        handler = self._handlers.get(kind)
        if handler is None:
            LOGGER.error("No handler for job kind; dropping job", job_id=job["id"], kind=kind)
            await self._apply(job, JobOutcome.done())
            JOB_RUN_COUNTER.inc(labels={"kind": kind, "result": "unhandled"})
            return True

        with TRACER.start_as_current_span("worker.job") as span:
            span.set_attribute("stratus.job_id", job["id"])
            span.set_attribute("stratus.job_kind", kind)
            outcome, clean = await self._run_handler(handler, job)
        await self._apply(job, outcome, clean=clean)
        return True

    async def _run_handler(self, handler: JobHandler, job: dict) -> tuple[JobOutcome, bool]:
        try:
            outcome = await handler.run(dict(job["payload"]))
        except Exception as exc:  # noqa: BLE001 - job failures must not stop the worker
            LOGGER.exception(
                "Job handler raised",
                job_id=job["id"],
                kind=job["kind"],
                attempts=job["attempts"],
                error=str(exc),
            )
            if job["attempts"] >= self._max_failures:
                LOGGER.error("Dropping job after repeated failures", job_id=job["id"], kind=job["kind"])
                JOB_RUN_COUNTER.inc(labels={"kind": job["kind"], "result": "dropped"})
                return JobOutcome.done(), False
            JOB_RUN_COUNTER.inc(labels={"kind": job["kind"], "result": "error"})
            delay = self._failure_retry * (2 ** max(0, job["attempts"] - 1))
            return JobOutcome.retry(datetime.now(timezone.utc) + timedelta(seconds=delay), error=str(exc)), False
        JOB_RUN_COUNTER.inc(labels={"kind": job["kind"], "result": "done" if outcome.finished else "rescheduled"})
        return outcome, True

    async def _apply(self, job: dict, outcome: JobOutcome, *, clean: bool = True) -> None:
        async with self._session_factory() as session:
            if outcome.finished:
                applied = await db.complete_job(session, job["id"], job["version"])
            else:
                applied = await db.reschedule_job(
                    session,
                    job["id"],
                    job["version"],
                    run_at=outcome.run_at,
                    payload=outcome.payload,
                    last_error=outcome.error,
                    reset_attempts=clean,
                )
            await session.commit()
        if not applied:
            JOB_LEASE_LOST_COUNTER.inc()
            LOGGER.warning("Job lease lost; outcome discarded", job_id=job["id"], worker_id=self._worker_id)


def build_worker(settings, session_factory, handlers: Iterable[JobHandler], worker_id: Optional[str] = None) -> JobWorker:
    return JobWorker(
        session_factory,
        handlers,
        worker_id=worker_id or settings.worker_id,
        lease_seconds=settings.job_lease_ttl_seconds,
        idle_sleep_seconds=settings.idle_sleep_seconds,
        max_failures=settings.max_job_failures,
        failure_retry_seconds=settings.job_failure_retry_seconds,
    )
