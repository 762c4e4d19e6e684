from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from stratus.common.schemas import OPERATION_FAILED, OPERATION_IN_PROGRESS, OPERATION_SUCCEEDED
from stratus.provisioning import db
from tests.utils.fakes import BROKER_GUID, PLAN_GUID, RETIRED_PLAN_GUID, SPACE_GUID, load_instance


@pytest.mark.asyncio
async def test_get_plan_resolves_broker(session_factory) -> None:
    async with session_factory() as session:
        plan = await db.get_plan(session, PLAN_GUID)
        retired = await db.get_plan(session, RETIRED_PLAN_GUID)
        missing = await db.get_plan(session, "nope")

    assert plan is not None
    assert plan.unique_id == "plan-small"
    assert plan.service_unique_id == "svc-mysql"
    assert plan.broker.guid == BROKER_GUID
    assert plan.broker.broker_url == "http://broker.test"
    assert "hunter2" not in repr(plan.broker)
    assert retired is not None and retired.active is False
    assert missing is None


@pytest.mark.asyncio
async def test_instance_and_operation_written_together(session_factory) -> None:
    instance, _ = await load_instance(session_factory)
    instance.dashboard_url = "http://x"
    instance.parameters = {"secret": "value"}

    async with session_factory() as session:
        await db.create_instance_with_operation(session, instance, state=OPERATION_SUCCEEDED)
        await session.commit()

    async with session_factory() as session:
        row = await db.get_instance(session, instance.guid)
        taken = await db.instance_name_taken(session, SPACE_GUID, instance.name)

    assert row["credentials"] == {}
    assert row["dashboard_url"] == "http://x"
    assert row["last_operation"]["state"] == OPERATION_SUCCEEDED
    assert row["last_operation"]["type"] == "create"
    assert "parameters" not in row
    assert taken is True


@pytest.mark.asyncio
async def test_instance_names_unique_per_space(session_factory) -> None:
    first, _ = await load_instance(session_factory, guid="a")
    second, _ = await load_instance(session_factory, guid="b")

    async with session_factory() as session:
        await db.create_instance_with_operation(session, first, state=OPERATION_SUCCEEDED)
        await session.commit()

    async with session_factory() as session:
        with pytest.raises(IntegrityError):
            await db.create_instance_with_operation(session, second, state=OPERATION_SUCCEEDED)
            await session.commit()


@pytest.mark.asyncio
async def test_transition_only_from_in_progress(session_factory) -> None:
    instance, _ = await load_instance(session_factory)
    async with session_factory() as session:
        await db.create_instance_with_operation(session, instance, state=OPERATION_IN_PROGRESS, broker_operation="op")
        await session.commit()

    async with session_factory() as session:
        first = await db.transition_operation(session, instance.guid, state=OPERATION_FAILED, description="broke")
        second = await db.transition_operation(session, instance.guid, state=OPERATION_SUCCEEDED)
        await session.commit()
        operation = await db.get_last_operation(session, instance.guid)

    assert first is True
    assert second is False
    assert operation["state"] == OPERATION_FAILED
    assert operation["description"] == "broke"
    assert operation["broker_operation"] == "op"


@pytest.mark.asyncio
async def test_list_instances_filters_by_space(session_factory) -> None:
    instance, _ = await load_instance(session_factory)
    async with session_factory() as session:
        await db.create_instance_with_operation(session, instance, state=OPERATION_SUCCEEDED)
        await session.commit()
        in_space = await db.list_instances(session, space_guid=SPACE_GUID)
        elsewhere = await db.list_instances(session, space_guid="other")

    assert [row["guid"] for row in in_space] == [instance.guid]
    assert elsewhere == []


@pytest.mark.asyncio
async def test_keyed_enqueue_is_single_flight(session_factory) -> None:
    async with session_factory() as session:
        first = await db.enqueue_job(session, kind="k", payload={"n": 1}, key="state_fetch:x")
        second = await db.enqueue_job(session, kind="k", payload={"n": 2}, key="state_fetch:x")
        unkeyed = await db.enqueue_job(session, kind="k", payload={"n": 3})
        await session.commit()
        job = await db.get_job(session, first)
        counts = await db.count_pending_jobs(session)

    assert first == second
    assert unkeyed != first
    assert job["payload"] == {"n": 1}
    assert counts == {"k": 2}


@pytest.mark.asyncio
async def test_claim_skips_future_and_leased_jobs(session_factory) -> None:
    future = datetime.now(timezone.utc) + timedelta(hours=1)
    async with session_factory() as session:
        await db.enqueue_job(session, kind="later", payload={}, run_at=future)
        due_id = await db.enqueue_job(session, kind="now", payload={})
        await session.commit()

    async with session_factory() as session:
        claimed = await db.claim_due_job(session, "worker-a", lease_seconds=60)
        await session.commit()
        again = await db.claim_due_job(session, "worker-b", lease_seconds=60)
        await session.commit()

    assert claimed["id"] == due_id
    assert claimed["attempts"] == 1
    assert claimed["locked_by"] == "worker-a"
    assert again is None


@pytest.mark.asyncio
async def test_stale_version_cannot_complete_or_reschedule(session_factory) -> None:
    async with session_factory() as session:
        job_id = await db.enqueue_job(session, kind="k", payload={})
        await session.commit()
        claimed = await db.claim_due_job(session, "worker-a", lease_seconds=60)
        await session.commit()

    stale_version = claimed["version"] - 1
    async with session_factory() as session:
        assert await db.complete_job(session, job_id, stale_version) is False
        rescheduled = await db.reschedule_job(
            session,
            job_id,
            claimed["version"],
            run_at=datetime.now(timezone.utc),
            payload={"attempt": 2},
            reset_attempts=True,
        )
        await session.commit()
        job = await db.get_job(session, job_id)

    assert rescheduled is True
    assert job["payload"] == {"attempt": 2}
    assert job["attempts"] == 0
    assert job["locked_by"] is None
    assert job["version"] == claimed["version"] + 1

    async with session_factory() as session:
        assert await db.complete_job(session, job_id, claimed["version"]) is False
        assert await db.complete_job(session, job_id, job["version"]) is True
        await session.commit()
        assert await db.get_job(session, job_id) is None


@pytest.mark.asyncio
async def test_orphans_recorded_for_operators(session_factory) -> None:
    async with session_factory() as session:
        await db.record_orphan(
            session,
            instance_guid="i-1",
            plan_guid=PLAN_GUID,
            broker_guid=BROKER_GUID,
            source="sync",
            error="broker said no",
        )
        await session.commit()
        orphans = await db.list_orphans(session)

    assert len(orphans) == 1
    assert orphans[0]["service_instance_guid"] == "i-1"
    assert orphans[0]["created_at"].tzinfo is not None


def test_load_catalog_reads_yaml(tmp_path) -> None:
    path = tmp_path / "catalog.yaml"
    path.write_text(
        """
spaces:
  - guid: s-1
    name: prod
    organization_guid: o-1
brokers:
  - guid: b-1
    name: redis-broker
    url: http://redis.test/
    username: u
    password: p
    services:
      - guid: svc-1
        label: redis
        plans:
          - guid: p-1
            name: tiny
""".strip(),
        encoding="utf-8",
    )

    catalog = db.load_catalog(path)

    assert catalog["spaces"][0]["guid"] == "s-1"
    assert catalog["brokers"][0]["services"][0]["plans"][0]["name"] == "tiny"
    assert db.load_catalog(tmp_path / "missing.yaml") == {"spaces": [], "brokers": []}


@pytest.mark.asyncio
async def test_upsert_catalog_updates_existing_rows(session_factory) -> None:
    catalog = {
        "spaces": [],
        "brokers": [
            {
                "guid": BROKER_GUID,
                "name": "mysql-broker",
                "url": "http://broker-v2.test/",
                "username": "admin",
                "password": "rotated",
                "services": [],
            }
        ],
    }
    async with session_factory() as session:
        await db.upsert_catalog(session, catalog)
        await session.commit()
        plan = await db.get_plan(session, PLAN_GUID)

    assert plan.broker.broker_url == "http://broker-v2.test"
    assert plan.broker.auth_password == "rotated"
