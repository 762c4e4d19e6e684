from __future__ import annotations

import httpx
import pytest

from stratus.provisioning import db
from stratus.provisioning.jobs import ORPHAN_MITIGATION_KIND, orphan_mitigation_key
from stratus.provisioning.orphans import (
    ORPHAN_MITIGATION_COUNTER,
    AsynchronousOrphanMitigator,
    OrphanMitigationJob,
    SynchronousOrphanMitigator,
)
from tests.utils.fakes import BROKER_GUID, PLAN_GUID, load_instance


@pytest.mark.asyncio
async def test_sync_mitigation_deprovisions_once(session_factory, broker, broker_factory) -> None:
    instance, plan = await load_instance(session_factory)
    before = ORPHAN_MITIGATION_COUNTER.value(labels={"mode": "sync", "outcome": "succeeded"})

    await SynchronousOrphanMitigator(broker_factory, session_factory).mitigate(instance, plan)

    deletes = broker.calls("DELETE")
    assert len(deletes) == 1
    assert deletes[0].url.path == f"/v2/service_instances/{instance.guid}"
    assert ORPHAN_MITIGATION_COUNTER.value(labels={"mode": "sync", "outcome": "succeeded"}) == before + 1
    async with session_factory() as session:
        assert await db.list_orphans(session) == []


@pytest.mark.asyncio
async def test_sync_mitigation_failure_is_swallowed_and_recorded(session_factory, broker, broker_factory) -> None:
    instance, plan = await load_instance(session_factory)
    broker.deprovision_reply = httpx.ConnectError("refused")

    await SynchronousOrphanMitigator(broker_factory, session_factory).mitigate(instance, plan)

    async with session_factory() as session:
        orphans = await db.list_orphans(session)
    assert len(orphans) == 1
    assert orphans[0]["service_instance_guid"] == instance.guid
    assert orphans[0]["service_broker_guid"] == BROKER_GUID
    assert "refused" in orphans[0]["error"]


@pytest.mark.asyncio
async def test_async_mitigation_enqueues_in_callers_transaction(session_factory, broker) -> None:
    instance, plan = await load_instance(session_factory)

    async with session_factory() as session:
        mitigator = AsynchronousOrphanMitigator(session)
        await mitigator.mitigate(instance, plan)
        await mitigator.mitigate(instance, plan)
        await session.rollback()
        assert await db.get_job_by_key(session, orphan_mitigation_key(instance.guid)) is None

    async with session_factory() as session:
        mitigator = AsynchronousOrphanMitigator(session)
        await mitigator.mitigate(instance, plan)
        await mitigator.mitigate(instance, plan)
        await session.commit()
        counts = await db.count_pending_jobs(session)
        job = await db.get_job_by_key(session, orphan_mitigation_key(instance.guid))

    assert counts == {ORPHAN_MITIGATION_KIND: 1}
    assert job["payload"]["plan_guid"] == PLAN_GUID
    assert broker.requests == []


@pytest.mark.asyncio
async def test_mitigation_job_retries_then_records_orphan(session_factory, broker, broker_factory) -> None:
    instance, _ = await load_instance(session_factory)
    broker.deprovision_reply = (500, {"description": "busy"})
    handler = OrphanMitigationJob(broker_factory, session_factory, max_attempts=2, retry_seconds=5)

    first = await handler.run({"instance_guid": instance.guid, "plan_guid": PLAN_GUID})
    assert not first.finished
    assert first.payload["attempt"] == 2
    assert "busy" in first.error

    second = await handler.run(first.payload)
    assert second.finished
    assert len(broker.calls("DELETE")) == 2
    async with session_factory() as session:
        orphans = await db.list_orphans(session)
    assert [orphan["source"] for orphan in orphans] == ["async"]


@pytest.mark.asyncio
async def test_mitigation_job_treats_gone_as_done(session_factory, broker, broker_factory) -> None:
    instance, _ = await load_instance(session_factory)
    broker.deprovision_reply = (410, {})

    outcome = await OrphanMitigationJob(broker_factory, session_factory).run(
        {"instance_guid": instance.guid, "plan_guid": PLAN_GUID}
    )

    assert outcome.finished
    async with session_factory() as session:
        assert await db.list_orphans(session) == []


@pytest.mark.asyncio
async def test_mitigation_job_without_plan_gives_up(session_factory, broker, broker_factory) -> None:
    outcome = await OrphanMitigationJob(broker_factory, session_factory).run(
        {"instance_guid": "gone", "plan_guid": "no-such-plan"}
    )

    assert outcome.finished
    assert broker.requests == []
