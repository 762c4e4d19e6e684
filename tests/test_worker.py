from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from stratus.common.schemas import OPERATION_SUCCEEDED
from stratus.common.settings import WorkerSettings
from stratus.provisioning import db
from stratus.provisioning.jobs import JobOutcome, state_fetch_key
from stratus.provisioning.orchestrator import ServiceInstanceCreate
from stratus.worker.main import build_handlers
from stratus.worker.worker import JOB_LEASE_LOST_COUNTER, JobWorker
from tests.utils.fakes import PLAN_GUID, SPACE_GUID


class RecordingHandler:
    kind = "echo"

    def __init__(self, outcome: JobOutcome | None = None, error: Exception | None = None) -> None:
        self.outcome = outcome or JobOutcome.done()
        self.error = error
        self.payloads: list[dict] = []

    async def run(self, payload: dict) -> JobOutcome:
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        return self.outcome


async def _enqueue(session_factory, kind: str = "echo", payload: dict | None = None) -> int:
    async with session_factory() as session:
        job_id = await db.enqueue_job(session, kind=kind, payload=payload or {"n": 1})
        await session.commit()
    return job_id


async def _job(session_factory, job_id: int):
    async with session_factory() as session:
        return await db.get_job(session, job_id)


@pytest.mark.asyncio
async def test_run_once_dispatches_and_completes(session_factory) -> None:
    handler = RecordingHandler()
    worker = JobWorker(session_factory, [handler], worker_id="w-1")
    job_id = await _enqueue(session_factory, payload={"n": 7})

    assert await worker.run_once() is True
    assert await worker.run_once() is False

    assert handler.payloads == [{"n": 7}]
    assert await _job(session_factory, job_id) is None


@pytest.mark.asyncio
async def test_clean_retry_reschedules_with_fresh_attempts(session_factory) -> None:
    run_at = datetime.now(timezone.utc) + timedelta(minutes=5)
    handler = RecordingHandler(JobOutcome.retry(run_at, payload={"n": 2}))
    worker = JobWorker(session_factory, [handler], worker_id="w-1")
    job_id = await _enqueue(session_factory)

    await worker.run_once()

    job = await _job(session_factory, job_id)
    assert job["payload"] == {"n": 2}
    assert job["attempts"] == 0
    assert job["locked_by"] is None
    assert await worker.run_once() is False


@pytest.mark.asyncio
async def test_handler_exception_backs_off_then_drops(session_factory) -> None:
    handler = RecordingHandler(error=RuntimeError("kaboom"))
    worker = JobWorker(session_factory, [handler], worker_id="w-1", max_failures=2, failure_retry_seconds=0)
    job_id = await _enqueue(session_factory)

    await worker.run_once()
    job = await _job(session_factory, job_id)
    assert job["attempts"] == 1
    assert job["last_error"] == "kaboom"
    assert job["payload"] == {"n": 1}

    await worker.run_once()

    assert len(handler.payloads) == 2
    assert await _job(session_factory, job_id) is None


@pytest.mark.asyncio
async def test_unknown_kind_is_dropped(session_factory) -> None:
    worker = JobWorker(session_factory, [RecordingHandler()], worker_id="w-1")
    job_id = await _enqueue(session_factory, kind="mystery")

    assert await worker.run_once() is True
    assert await _job(session_factory, job_id) is None


@pytest.mark.asyncio
async def test_expired_lease_outcome_is_discarded(session_factory) -> None:
    class StolenLease(RecordingHandler):
        async def run(self, payload: dict) -> JobOutcome:
            async with session_factory() as session:
                stolen = await db.claim_due_job(session, "w-2", lease_seconds=60)
                await session.commit()
            assert stolen is not None
            return JobOutcome.done()

    worker = JobWorker(session_factory, [StolenLease()], worker_id="w-1", lease_seconds=0)
    job_id = await _enqueue(session_factory)
    before = JOB_LEASE_LOST_COUNTER.value()

    await worker.run_once()

    job = await _job(session_factory, job_id)
    assert job is not None
    assert job["locked_by"] == "w-2"
    assert JOB_LEASE_LOST_COUNTER.value() == before + 1


@pytest.mark.asyncio
async def test_run_returns_after_stop(session_factory) -> None:
    worker = JobWorker(session_factory, [RecordingHandler()], worker_id="w-1", idle_sleep_seconds=0.01)
    await _enqueue(session_factory)

    task = asyncio.create_task(worker.run())
    await asyncio.sleep(0.05)
    worker.stop()
    await asyncio.wait_for(task, timeout=2)

    async with session_factory() as session:
        assert await db.count_pending_jobs(session) == {}


@pytest.mark.asyncio
async def test_worker_drives_async_provision_to_success(
    monkeypatch, settings, session_factory, http_client, broker, broker_factory, registrar, events
) -> None:
    monkeypatch.setenv("STRATUS_POLL_INTERVAL", "0")
    worker_settings = WorkerSettings()
    broker.provision_reply = (202, {"operation": "op-1"})
    broker.last_operation_replies = [
        (200, {"state": "in progress"}),
        (200, {"state": "succeeded", "credentials": {"host": "db"}}),
    ]
    orchestrator = ServiceInstanceCreate(session_factory, broker_factory, registrar, events, worker_settings)
    outcome = await orchestrator.create(
        {"name": "queued-db", "space_guid": SPACE_GUID, "service_plan_guid": PLAN_GUID},
        accepts_incomplete=True,
    )
    worker = JobWorker(
        session_factory,
        build_handlers(worker_settings, session_factory, http_client),
        worker_id="w-1",
    )

    assert await worker.run_once() is True
    async with session_factory() as session:
        job = await db.get_job_by_key(session, state_fetch_key(outcome.instance.guid))
    assert job["payload"]["attempt"] == 2
    assert job["attempts"] == 0

    assert await worker.run_once() is True
    async with session_factory() as session:
        row = await db.get_instance(session, outcome.instance.guid)
        pending = await db.count_pending_jobs(session)
    assert row["last_operation"]["state"] == OPERATION_SUCCEEDED
    assert row["credentials"] == {"host": "db"}
    assert pending == {}
