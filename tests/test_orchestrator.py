from __future__ import annotations

import httpx
import pytest

from stratus.common.schemas import OPERATION_IN_PROGRESS, OPERATION_SUCCEEDED, StateFetchPayload
from stratus.common.settings import ProvisioningSettings
from stratus.provisioning import db
from stratus.provisioning.errors import (
    BrokerRequestRejected,
    BrokerUnreachable,
    InvalidProvisionRequest,
    LocalPersistenceError,
)
from stratus.provisioning.events import REDACTED
from stratus.provisioning.jobs import STATE_FETCH_KIND, state_fetch_key
from stratus.provisioning.orchestrator import ServiceInstanceCreate
from tests.utils.fakes import PLAN_GUID, RETIRED_PLAN_GUID, SPACE_GUID


def _request(**overrides) -> dict:
    attrs = {"name": "my-instance", "space_guid": SPACE_GUID, "service_plan_guid": PLAN_GUID}
    attrs.update(overrides)
    return attrs


@pytest.fixture
def orchestrator(session_factory, broker_factory, registrar, events, settings) -> ServiceInstanceCreate:
    return ServiceInstanceCreate(session_factory, broker_factory, registrar, events, settings)


async def _events_for(session_factory, actee: str, event_type: str = "audit.service_instance.create") -> list[dict]:
    async with session_factory() as session:
        return await db.list_events(session, actee=actee, event_type=event_type)


async def _instance_count(session_factory) -> int:
    async with session_factory() as session:
        return len(await db.list_instances(session))


@pytest.mark.asyncio
async def test_sync_provision_persists_instance_and_audits(orchestrator, session_factory, broker) -> None:
    broker.provision_reply = (201, {"credentials": {}, "dashboard_url": "http://x"})

    outcome = await orchestrator.create(_request(), accepts_incomplete=False, actor="user-1")

    assert outcome.operation_state == OPERATION_SUCCEEDED
    assert outcome.warnings == []
    async with session_factory() as session:
        row = await db.get_instance(session, outcome.instance.guid)
    assert row["credentials"] == {}
    assert row["dashboard_url"] == "http://x"
    assert row["last_operation"]["state"] == OPERATION_SUCCEEDED
    events = await _events_for(session_factory, outcome.instance.guid)
    assert len(events) == 1
    assert events[0]["actor"] == "user-1"
    assert events[0]["actee_name"] == "my-instance"


@pytest.mark.asyncio
async def test_broker_credentials_are_stored(orchestrator, session_factory, broker) -> None:
    broker.provision_reply = (200, {"credentials": {"uri": "mysql://u:p@h/db"}})

    outcome = await orchestrator.create(_request(), accepts_incomplete=False)

    async with session_factory() as session:
        row = await db.get_instance(session, outcome.instance.guid)
    assert row["credentials"] == {"uri": "mysql://u:p@h/db"}


@pytest.mark.asyncio
async def test_parameters_forwarded_but_never_stored(orchestrator, session_factory, broker) -> None:
    parameters = {"backups": {"enabled": True, "window": ["02:00", "04:00"]}, "password": "pw"}

    outcome = await orchestrator.create(_request(parameters=parameters), accepts_incomplete=False)

    assert broker.provision_bodies()[0]["parameters"] == parameters
    events = await _events_for(session_factory, outcome.instance.guid)
    assert events[0]["metadata"]["request"]["parameters"] == REDACTED
    assert events[0]["metadata"]["request"]["name"] == "my-instance"


@pytest.mark.asyncio
async def test_async_provision_schedules_poll_without_audit(orchestrator, session_factory, broker, settings) -> None:
    broker.provision_reply = (202, {"operation": "op-42"})

    outcome = await orchestrator.create(_request(), accepts_incomplete=True)

    assert outcome.accepted is True
    assert outcome.job_id is not None
    async with session_factory() as session:
        row = await db.get_instance(session, outcome.instance.guid)
        job = await db.get_job_by_key(session, state_fetch_key(outcome.instance.guid))
    assert row["last_operation"]["state"] == OPERATION_IN_PROGRESS
    assert row["last_operation"]["broker_operation"] == "op-42"
    assert row["credentials"] == {}
    assert job["id"] == outcome.job_id
    assert job["kind"] == STATE_FETCH_KIND
    payload = StateFetchPayload.model_validate(job["payload"])
    assert payload.broker_operation == "op-42"
    assert payload.attempt == 1
    assert payload.request_attrs["name"] == "my-instance"
    assert await _events_for(session_factory, outcome.instance.guid) == []


@pytest.mark.asyncio
async def test_broker_rejection_leaves_no_trace(orchestrator, session_factory, broker) -> None:
    broker.provision_reply = (422, {"description": "plan full"})

    with pytest.raises(BrokerRequestRejected):
        await orchestrator.create(_request(), accepts_incomplete=False)

    assert await _instance_count(session_factory) == 0
    assert broker.calls("DELETE") == []
    async with session_factory() as session:
        assert await db.list_events(session) == []


@pytest.mark.asyncio
async def test_ambiguous_broker_failure_is_mitigated(orchestrator, session_factory, broker) -> None:
    broker.provision_reply = httpx.ReadTimeout("broker slow")

    with pytest.raises(BrokerUnreachable):
        await orchestrator.create(_request(), accepts_incomplete=False)

    deletes = broker.calls("DELETE")
    assert len(deletes) == 1
    assert deletes[0].url.path == broker.calls("PUT")[0].url.path
    assert await _instance_count(session_factory) == 0


@pytest.mark.asyncio
async def test_ambiguous_failure_mitigation_can_be_disabled(
    monkeypatch, session_factory, broker_factory, registrar, events, broker
) -> None:
    monkeypatch.setenv("STRATUS_MITIGATE_AMBIGUOUS_FAILURES", "false")
    settings = ProvisioningSettings()
    orchestrator = ServiceInstanceCreate(session_factory, broker_factory, registrar, events, settings)
    broker.provision_reply = (500, {"description": "boom"})

    with pytest.raises(BrokerRequestRejected):
        await orchestrator.create(_request(), accepts_incomplete=False)

    assert broker.calls("DELETE") == []


@pytest.mark.asyncio
async def test_save_failure_mitigates_once_and_reports(monkeypatch, orchestrator, session_factory, broker) -> None:
    broker.provision_reply = (201, {"credentials": {}})

    async def failing_save(*_args, **_kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(db, "create_instance_with_operation", failing_save)

    with pytest.raises(LocalPersistenceError) as exc_info:
        await orchestrator.create(_request(), accepts_incomplete=False)

    put = broker.calls("PUT")[0]
    deletes = broker.calls("DELETE")
    assert len(deletes) == 1
    assert deletes[0].url.path == put.url.path
    assert deletes[0].url.params["plan_id"] == "plan-small"
    assert exc_info.value.mitigation_attempted is True
    assert put.url.path.endswith(exc_info.value.instance_guid)
    async with session_factory() as session:
        assert await db.list_events(session) == []


@pytest.mark.asyncio
async def test_failed_mitigation_records_known_orphan(monkeypatch, orchestrator, session_factory, broker) -> None:
    broker.provision_reply = (201, {"credentials": {}})
    broker.deprovision_reply = (500, {"description": "cannot delete"})

    async def failing_save(*_args, **_kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(db, "create_instance_with_operation", failing_save)

    with pytest.raises(LocalPersistenceError) as exc_info:
        await orchestrator.create(_request(), accepts_incomplete=False)

    async with session_factory() as session:
        orphans = await db.list_orphans(session)
    assert [orphan["service_instance_guid"] for orphan in orphans] == [exc_info.value.instance_guid]
    assert orphans[0]["source"] == "sync"


@pytest.mark.asyncio
async def test_async_save_failure_also_mitigates(monkeypatch, orchestrator, session_factory, broker) -> None:
    broker.provision_reply = (202, {})

    async def failing_enqueue(*_args, **_kwargs):
        raise RuntimeError("queue unavailable")

    monkeypatch.setattr(db, "enqueue_job", failing_enqueue)

    with pytest.raises(LocalPersistenceError):
        await orchestrator.create(_request(), accepts_incomplete=True)

    assert len(broker.calls("DELETE")) == 1
    assert await _instance_count(session_factory) == 0


@pytest.mark.asyncio
async def test_dashboard_client_registered_when_supplied(orchestrator, session_factory, broker, uaa) -> None:
    broker.provision_reply = (
        201,
        {"credentials": {}, "dashboard_client": {"id": "sso-1", "secret": "s", "redirect_uri": "http://cb"}},
    )

    outcome = await orchestrator.create(_request(), accepts_incomplete=False)

    assert outcome.warnings == []
    assert uaa.clients["sso-1"]["redirect_uri"] == ["http://cb"]
    async with session_factory() as session:
        claim = await db.get_dashboard_client_for_instance(session, outcome.instance.guid)
    assert claim["uaa_id"] == "sso-1"
    assert len(await _events_for(session_factory, "sso-1", "audit.service_dashboard_client.create")) == 1


@pytest.mark.asyncio
async def test_no_dashboard_client_means_no_registration(orchestrator, broker, uaa) -> None:
    broker.provision_reply = (201, {"credentials": {}, "dashboard_url": "http://x"})

    await orchestrator.create(_request(), accepts_incomplete=False)

    assert uaa.clients == {}
    assert uaa.token_requests == 0


@pytest.mark.asyncio
async def test_registrar_failure_is_reported_not_fatal(orchestrator, session_factory, broker, uaa) -> None:
    uaa.create_status = 500
    broker.provision_reply = (201, {"dashboard_client": {"id": "sso-1", "secret": "s"}})

    outcome = await orchestrator.create(_request(), accepts_incomplete=False)

    assert outcome.operation_state == OPERATION_SUCCEEDED
    assert len(outcome.warnings) == 1
    assert "sso-1" in outcome.warnings[0]
    assert broker.calls("DELETE") == []
    assert len(await _events_for(session_factory, outcome.instance.guid)) == 1


@pytest.mark.asyncio
async def test_inactive_plan_rejected_before_broker_call(orchestrator, broker) -> None:
    with pytest.raises(InvalidProvisionRequest):
        await orchestrator.create(_request(service_plan_guid=RETIRED_PLAN_GUID), accepts_incomplete=False)

    assert broker.requests == []


@pytest.mark.asyncio
async def test_malformed_uaa_token_is_reported_not_fatal(orchestrator, session_factory, broker, uaa) -> None:
    uaa.token_reply = (200, {"error": "unexpected"})
    broker.provision_reply = (201, {"credentials": {"u": "p"}, "dashboard_client": {"id": "sso-1", "secret": "s"}})

    outcome = await orchestrator.create(_request(), accepts_incomplete=False)

    assert outcome.operation_state == OPERATION_SUCCEEDED
    assert len(outcome.warnings) == 1
    assert "sso-1" in outcome.warnings[0]
    assert broker.calls("DELETE") == []
    assert len(await _events_for(session_factory, outcome.instance.guid)) == 1


@pytest.mark.asyncio
async def test_audit_failure_after_sync_success_is_a_warning(
    monkeypatch, orchestrator, session_factory, broker, events
) -> None:
    broker.provision_reply = (201, {"credentials": {}})

    async def failing_event(*args, **kwargs):
        raise RuntimeError("events table locked")

    monkeypatch.setattr(events, "record_service_instance_event", failing_event)

    outcome = await orchestrator.create(_request(), accepts_incomplete=False)

    assert outcome.operation_state == OPERATION_SUCCEEDED
    assert len(outcome.warnings) == 1
    assert "events table locked" in outcome.warnings[0]
    assert broker.calls("DELETE") == []
    async with session_factory() as session:
        row = await db.get_instance(session, outcome.instance.guid)
    assert row["last_operation"]["state"] == OPERATION_SUCCEEDED


@pytest.mark.asyncio
async def test_tags_are_stored_with_the_instance(orchestrator, session_factory, broker) -> None:
    outcome = await orchestrator.create(_request(tags=["prod", "orders"]), accepts_incomplete=False)

    async with session_factory() as session:
        row = await db.get_instance(session, outcome.instance.guid)
    assert row["tags"] == ["prod", "orders"]
    assert "tags" not in broker.provision_bodies()[0]
