"""Async database helpers for service instances, operations and jobs."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

import structlog
import yaml
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    delete,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..common.schemas import OPERATION_IN_PROGRESS
from .models import ServiceBroker, ServiceInstance, ServicePlan, Space

LOGGER = structlog.get_logger("stratus.provisioning.db")

metadata = MetaData()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


spaces_table = Table(
    "spaces",
    metadata,
    Column("guid", String(length=64), primary_key=True),
    Column("name", String(length=255), nullable=False),
    Column("organization_guid", String(length=64), nullable=False),
)


service_brokers_table = Table(
    "service_brokers",
    metadata,
    Column("guid", String(length=64), primary_key=True),
    Column("name", String(length=255), nullable=False, unique=True),
    Column("broker_url", String(length=1024), nullable=False),
    Column("auth_username", String(length=255), nullable=False),
    Column("auth_password", String(length=255), nullable=False),
)


services_table = Table(
    "services",
    metadata,
    Column("guid", String(length=64), primary_key=True),
    Column("unique_id", String(length=255), nullable=False),
    Column("label", String(length=255), nullable=False),
    Column("service_broker_guid", String(length=64), ForeignKey("service_brokers.guid"), nullable=False),
    Column("requires", JSON(none_as_null=True)),
    UniqueConstraint("service_broker_guid", "unique_id", name="uq_service_broker_unique_id"),
)


service_plans_table = Table(
    "service_plans",
    metadata,
    Column("guid", String(length=64), primary_key=True),
    Column("unique_id", String(length=255), nullable=False),
    Column("name", String(length=255), nullable=False),
    Column("service_guid", String(length=64), ForeignKey("services.guid"), nullable=False),
    Column("active", Boolean, nullable=False, default=True),
)


service_instances_table = Table(
    "service_instances",
    metadata,
    Column("guid", String(length=64), primary_key=True),
    Column("name", String(length=255), nullable=False),
    Column("space_guid", String(length=64), ForeignKey("spaces.guid"), nullable=False),
    Column("service_plan_guid", String(length=64), ForeignKey("service_plans.guid"), nullable=False),
    Column("credentials", JSON, nullable=False, default=dict),
    Column("dashboard_url", String(length=2048), nullable=True),
    Column("tags", JSON, nullable=False, default=list),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("space_guid", "name", name="uq_service_instance_space_name"),
)


service_instance_operations_table = Table(
    "service_instance_operations",
    metadata,
    Column(
        "service_instance_guid",
        String(length=64),
        ForeignKey("service_instances.guid", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("type", String(length=32), nullable=False),
    Column("state", String(length=32), nullable=False),
    Column("description", Text, nullable=True),
    Column("broker_operation", String(length=10000), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


service_dashboard_clients_table = Table(
    "service_dashboard_clients",
    metadata,
    Column("uaa_id", String(length=255), primary_key=True),
    Column("service_instance_guid", String(length=64), nullable=False, unique=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


events_table = Table(
    "events",
    metadata,
    Column("guid", String(length=64), primary_key=True),
    Column("type", String(length=128), nullable=False),
    Column("actor", String(length=255), nullable=False),
    Column("actee", String(length=255), nullable=False),
    Column("actee_type", String(length=64), nullable=False),
    Column("actee_name", String(length=255), nullable=True),
    Column("space_guid", String(length=64), nullable=True),
    Column("metadata", JSON(none_as_null=True)),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Index("ix_events_actee", "actee"),
)


background_jobs_table = Table(
    "background_jobs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("job_key", String(length=255), nullable=True, unique=True),
    Column("kind", String(length=64), nullable=False),
    Column("payload", JSON, nullable=False),
    Column("run_at", DateTime(timezone=True), nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("version", Integer, nullable=False, default=1),
    Column("locked_by", String(length=128), nullable=True),
    Column("locked_until", DateTime(timezone=True), nullable=True),
    Column("last_error", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index("ix_background_jobs_run_at", "run_at"),
)


orphaned_instances_table = Table(
    "orphaned_instances",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("service_instance_guid", String(length=64), nullable=False),
    Column("service_plan_guid", String(length=64), nullable=False),
    Column("service_broker_guid", String(length=64), nullable=True),
    Column("source", String(length=32), nullable=False),
    Column("error", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


def create_engine(database_url: str) -> AsyncEngine:
    url = make_url(database_url)
    engine_kwargs: dict[str, object] = {
        "future": True,
        "echo": False,
        "pool_pre_ping": True,
    }
    if url.get_backend_name() != "sqlite":
        engine_kwargs.update(
            {
                "pool_size": 10,
                "max_overflow": 20,
                "pool_timeout": 30,
                "pool_recycle": 1800,
            }
        )
    return create_async_engine(database_url, **engine_kwargs)


async def ensure_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


def _isoformat_row(row: dict, *keys: str) -> dict:
    for key in keys:
        value = row.get(key)
        if isinstance(value, datetime):
            row[key] = _as_utc(value).isoformat()
    return row


# Catalog lookups -----------------------------------------------------------


async def get_space(session: AsyncSession, space_guid: str) -> Optional[Space]:
    result = await session.execute(select(spaces_table).where(spaces_table.c.guid == space_guid))
    row = result.mappings().first()
    if row is None:
        return None
    return Space(guid=row["guid"], name=row["name"], organization_guid=row["organization_guid"])


async def get_plan(session: AsyncSession, plan_guid: str) -> Optional[ServicePlan]:
    """Resolve plan -> service -> broker in a single read."""

    stmt = (
        select(
            service_plans_table.c.guid,
            service_plans_table.c.unique_id,
            service_plans_table.c.name,
            service_plans_table.c.active,
            services_table.c.guid.label("service_guid"),
            services_table.c.unique_id.label("service_unique_id"),
            services_table.c.label.label("service_label"),
            service_brokers_table.c.guid.label("broker_guid"),
            service_brokers_table.c.name.label("broker_name"),
            service_brokers_table.c.broker_url,
            service_brokers_table.c.auth_username,
            service_brokers_table.c.auth_password,
        )
        .select_from(
            service_plans_table.join(services_table, service_plans_table.c.service_guid == services_table.c.guid).join(
                service_brokers_table, services_table.c.service_broker_guid == service_brokers_table.c.guid
            )
        )
        .where(service_plans_table.c.guid == plan_guid)
    )
    result = await session.execute(stmt)
    row = result.mappings().first()
    if row is None:
        return None
    broker = ServiceBroker(
        guid=row["broker_guid"],
        name=row["broker_name"],
        broker_url=row["broker_url"],
        auth_username=row["auth_username"],
        auth_password=row["auth_password"],
    )
    return ServicePlan(
        guid=row["guid"],
        unique_id=row["unique_id"],
        name=row["name"],
        active=bool(row["active"]),
        service_guid=row["service_guid"],
        service_unique_id=row["service_unique_id"],
        service_label=row["service_label"],
        broker=broker,
    )


# Service instances and operations -----------------------------------------


async def instance_name_taken(session: AsyncSession, space_guid: str, name: str) -> bool:
    stmt = select(service_instances_table.c.guid).where(
        and_(
            service_instances_table.c.space_guid == space_guid,
            service_instances_table.c.name == name,
        )
    )
    result = await session.execute(stmt)
    return result.first() is not None


async def create_instance_with_operation(
    session: AsyncSession,
    instance: ServiceInstance,
    *,
    state: str,
    description: Optional[str] = None,
    broker_operation: Optional[str] = None,
    operation_type: str = "create",
) -> None:
    """Insert an instance and its (single) operation in the caller's transaction."""

    now = _utc_now()
    await session.execute(
        insert(service_instances_table).values(
            guid=instance.guid,
            name=instance.name,
            space_guid=instance.space.guid,
            service_plan_guid=instance.plan.guid,
            credentials=instance.credentials or {},
            dashboard_url=instance.dashboard_url,
            tags=list(instance.tags),
            created_at=now,
            updated_at=now,
        )
    )
    await session.execute(
        delete(service_instance_operations_table).where(
            service_instance_operations_table.c.service_instance_guid == instance.guid
        )
    )
    await session.execute(
        insert(service_instance_operations_table).values(
            service_instance_guid=instance.guid,
            type=operation_type,
            state=state,
            description=description,
            broker_operation=broker_operation,
            created_at=now,
            updated_at=now,
        )
    )


async def get_last_operation(session: AsyncSession, instance_guid: str) -> Optional[dict]:
    stmt = select(service_instance_operations_table).where(
        service_instance_operations_table.c.service_instance_guid == instance_guid
    )
    result = await session.execute(stmt)
    row = result.mappings().first()
    if row is None:
        return None
    payload = dict(row)
    payload["updated_at"] = _as_utc(payload.get("updated_at"))
    payload["created_at"] = _as_utc(payload.get("created_at"))
    return payload


async def get_instance(session: AsyncSession, instance_guid: str) -> Optional[dict]:
    result = await session.execute(
        select(service_instances_table).where(service_instances_table.c.guid == instance_guid)
    )
    row = result.mappings().first()
    if row is None:
        return None
    payload = dict(row)
    payload["credentials"] = payload.get("credentials") or {}
    payload["tags"] = payload.get("tags") or []
    payload["created_at"] = _as_utc(payload.get("created_at"))
    payload["updated_at"] = _as_utc(payload.get("updated_at"))
    payload["last_operation"] = await get_last_operation(session, instance_guid)
    return payload


async def list_instances(
    session: AsyncSession,
    *,
    space_guid: Optional[str] = None,
    limit: int = 100,
) -> list[dict]:
    stmt = (
        select(service_instances_table.c.guid)
        .order_by(service_instances_table.c.created_at.desc())
        .limit(max(1, min(limit, 500)))
    )
    if space_guid is not None:
        stmt = stmt.where(service_instances_table.c.space_guid == space_guid)
    result = await session.execute(stmt)
    instances: list[dict] = []
    for guid in result.scalars().all():
        instance = await get_instance(session, guid)
        if instance is not None:
            instances.append(instance)
    return instances


async def transition_operation(
    session: AsyncSession,
    instance_guid: str,
    *,
    state: str,
    description: Optional[str] = None,
) -> bool:
    """Move an in-progress operation to ``state``.

    Only ``in progress`` rows are touched, so a terminal operation can never be
    flipped or reverted by a late or duplicate poll.
    """

    stmt = (
        update(service_instance_operations_table)
        .where(
            and_(
                service_instance_operations_table.c.service_instance_guid == instance_guid,
                service_instance_operations_table.c.state == OPERATION_IN_PROGRESS,
            )
        )
        .values(state=state, description=description, updated_at=_utc_now())
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def update_operation_description(session: AsyncSession, instance_guid: str, description: str) -> None:
    stmt = (
        update(service_instance_operations_table)
        .where(
            and_(
                service_instance_operations_table.c.service_instance_guid == instance_guid,
                service_instance_operations_table.c.state == OPERATION_IN_PROGRESS,
            )
        )
        .values(description=description, updated_at=_utc_now())
    )
    await session.execute(stmt)


async def finalize_instance(
    session: AsyncSession,
    instance_guid: str,
    *,
    credentials: Optional[dict[str, Any]],
    dashboard_url: Optional[str],
) -> None:
    values: dict[str, Any] = {"credentials": credentials or {}, "updated_at": _utc_now()}
    if dashboard_url is not None:
        values["dashboard_url"] = dashboard_url
    await session.execute(
        update(service_instances_table).where(service_instances_table.c.guid == instance_guid).values(**values)
    )


# Dashboard clients ---------------------------------------------------------


async def get_dashboard_client(session: AsyncSession, uaa_id: str) -> Optional[dict]:
    result = await session.execute(
        select(service_dashboard_clients_table).where(service_dashboard_clients_table.c.uaa_id == uaa_id)
    )
    row = result.mappings().first()
    return dict(row) if row else None


async def get_dashboard_client_for_instance(session: AsyncSession, instance_guid: str) -> Optional[dict]:
    result = await session.execute(
        select(service_dashboard_clients_table).where(
            service_dashboard_clients_table.c.service_instance_guid == instance_guid
        )
    )
    row = result.mappings().first()
    return dict(row) if row else None


async def claim_dashboard_client(session: AsyncSession, uaa_id: str, instance_guid: str) -> None:
    await session.execute(
        insert(service_dashboard_clients_table).values(
            uaa_id=uaa_id,
            service_instance_guid=instance_guid,
            created_at=_utc_now(),
        )
    )


# Audit events --------------------------------------------------------------


async def record_event(
    session: AsyncSession,
    *,
    event_type: str,
    actor: str,
    actee: str,
    actee_type: str,
    actee_name: Optional[str] = None,
    space_guid: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> str:
    guid = str(uuid4())
    await session.execute(
        insert(events_table).values(
            guid=guid,
            type=event_type,
            actor=actor,
            actee=actee,
            actee_type=actee_type,
            actee_name=actee_name,
            space_guid=space_guid,
            metadata=metadata or {},
            timestamp=_utc_now(),
        )
    )
    return guid


async def list_events(
    session: AsyncSession,
    *,
    actee: Optional[str] = None,
    event_type: Optional[str] = None,
    limit: int = 100,
) -> list[dict]:
    stmt = select(events_table).order_by(events_table.c.timestamp.asc()).limit(max(1, limit))
    if actee is not None:
        stmt = stmt.where(events_table.c.actee == actee)
    if event_type is not None:
        stmt = stmt.where(events_table.c.type == event_type)
    result = await session.execute(stmt)
    return [_isoformat_row(dict(row), "timestamp") for row in result.mappings()]


# Background jobs -----------------------------------------------------------


async def enqueue_job(
    session: AsyncSession,
    *,
    kind: str,
    payload: dict[str, Any],
    run_at: Optional[datetime] = None,
    key: Optional[str] = None,
) -> int:
    """Insert a job, or return the pending job already registered under ``key``."""

    if key is not None:
        existing = await session.execute(
            select(background_jobs_table.c.id).where(background_jobs_table.c.job_key == key)
        )
        existing_id = existing.scalar_one_or_none()
        if existing_id is not None:
            LOGGER.debug("Job already pending", job_key=key, job_id=existing_id)
            return int(existing_id)

    now = _utc_now()
    result = await session.execute(
        insert(background_jobs_table).values(
            job_key=key,
            kind=kind,
            payload=payload,
            run_at=run_at or now,
            attempts=0,
            version=1,
            locked_by=None,
            locked_until=None,
            last_error=None,
            created_at=now,
            updated_at=now,
        )
    )
    return int(result.inserted_primary_key[0])


async def get_job(session: AsyncSession, job_id: int) -> Optional[dict]:
    result = await session.execute(select(background_jobs_table).where(background_jobs_table.c.id == job_id))
    row = result.mappings().first()
    return dict(row) if row else None


async def get_job_by_key(session: AsyncSession, key: str) -> Optional[dict]:
    result = await session.execute(select(background_jobs_table).where(background_jobs_table.c.job_key == key))
    row = result.mappings().first()
    return dict(row) if row else None


async def claim_due_job(session: AsyncSession, worker_id: str, lease_seconds: int) -> Optional[dict]:
    """Lease the oldest due job.

    The version column is the fence: the claim only succeeds when nobody bumped
    it since we read the row, and every later write must present the new value.
    """

    now = _utc_now()
    stmt = (
        select(background_jobs_table)
        .where(
            and_(
                background_jobs_table.c.run_at <= now,
                or_(
                    background_jobs_table.c.locked_until.is_(None),
                    background_jobs_table.c.locked_until <= now,
                ),
            )
        )
        .order_by(background_jobs_table.c.run_at.asc(), background_jobs_table.c.id.asc())
        .limit(1)
    )
    result = await session.execute(stmt)
    row = result.mappings().first()
    if row is None:
        return None

    job = dict(row)
    claim = (
        update(background_jobs_table)
        .where(
            and_(
                background_jobs_table.c.id == job["id"],
                background_jobs_table.c.version == job["version"],
            )
        )
        .values(
            version=background_jobs_table.c.version + 1,
            locked_by=worker_id,
            locked_until=now + timedelta(seconds=lease_seconds),
            attempts=background_jobs_table.c.attempts + 1,
            updated_at=now,
        )
    )
    claimed = await session.execute(claim)
    if claimed.rowcount != 1:
        LOGGER.debug("Job claim lost race", job_id=job["id"], worker_id=worker_id)
        return None
    job["version"] += 1
    job["attempts"] += 1
    job["locked_by"] = worker_id
    return job


async def reschedule_job(
    session: AsyncSession,
    job_id: int,
    version: int,
    *,
    run_at: datetime,
    payload: Optional[dict[str, Any]] = None,
    last_error: Optional[str] = None,
    reset_attempts: bool = False,
) -> bool:
    """Release a leased job for a later run; ``attempts`` counts unclean runs unless reset."""

    values: dict[str, Any] = {
        "run_at": run_at,
        "locked_by": None,
        "locked_until": None,
        "last_error": last_error,
        "version": background_jobs_table.c.version + 1,
        "updated_at": _utc_now(),
    }
    if payload is not None:
        values["payload"] = payload
    if reset_attempts:
        values["attempts"] = 0
    stmt = (
        update(background_jobs_table)
        .where(and_(background_jobs_table.c.id == job_id, background_jobs_table.c.version == version))
        .values(**values)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def complete_job(session: AsyncSession, job_id: int, version: int) -> bool:
    stmt = delete(background_jobs_table).where(
        and_(background_jobs_table.c.id == job_id, background_jobs_table.c.version == version)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def count_pending_jobs(session: AsyncSession) -> dict[str, int]:
    stmt = select(background_jobs_table.c.kind, func.count()).group_by(background_jobs_table.c.kind)
    result = await session.execute(stmt)
    return {kind: int(count) for kind, count in result.all()}


# Orphans -------------------------------------------------------------------


async def record_orphan(
    session: AsyncSession,
    *,
    instance_guid: str,
    plan_guid: str,
    broker_guid: Optional[str],
    source: str,
    error: Optional[str],
) -> None:
    await session.execute(
        insert(orphaned_instances_table).values(
            service_instance_guid=instance_guid,
            service_plan_guid=plan_guid,
            service_broker_guid=broker_guid,
            source=source,
            error=error,
            created_at=_utc_now(),
        )
    )


async def list_orphans(session: AsyncSession, *, limit: int = 100) -> list[dict]:
    stmt = select(orphaned_instances_table).order_by(orphaned_instances_table.c.created_at.desc()).limit(limit)
    result = await session.execute(stmt)
    rows = []
    for row in result.mappings():
        payload = dict(row)
        payload["created_at"] = _as_utc(payload["created_at"])
        rows.append(payload)
    return rows


# Catalog seeding -----------------------------------------------------------


def load_catalog(path: Optional[Path]) -> dict[str, list[dict]]:
    if path is None or not path.exists():
        LOGGER.warning("Catalog file not provided", path=str(path))
        return {"spaces": [], "brokers": []}
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return {
        "spaces": list(data.get("spaces") or []),
        "brokers": list(data.get("brokers") or []),
    }


async def _upsert(session: AsyncSession, table: Table, guid: str, values: dict[str, Any]) -> None:
    result = await session.execute(select(table.c.guid).where(table.c.guid == guid))
    if result.first():
        await session.execute(update(table).where(table.c.guid == guid).values(**values))
        return
    await session.execute(insert(table).values(guid=guid, **values))


async def upsert_space(session: AsyncSession, *, guid: str, name: str, organization_guid: str) -> None:
    await _upsert(session, spaces_table, guid, {"name": name, "organization_guid": organization_guid})


async def upsert_service_broker(
    session: AsyncSession,
    *,
    guid: str,
    name: str,
    broker_url: str,
    auth_username: str,
    auth_password: str,
) -> None:
    await _upsert(
        session,
        service_brokers_table,
        guid,
        {
            "name": name,
            "broker_url": broker_url.rstrip("/"),
            "auth_username": auth_username,
            "auth_password": auth_password,
        },
    )


async def upsert_service(
    session: AsyncSession,
    *,
    guid: str,
    unique_id: str,
    label: str,
    service_broker_guid: str,
    requires: Optional[list[str]] = None,
) -> None:
    await _upsert(
        session,
        services_table,
        guid,
        {
            "unique_id": unique_id,
            "label": label,
            "service_broker_guid": service_broker_guid,
            "requires": requires or [],
        },
    )


async def upsert_service_plan(
    session: AsyncSession,
    *,
    guid: str,
    unique_id: str,
    name: str,
    service_guid: str,
    active: bool = True,
) -> None:
    await _upsert(
        session,
        service_plans_table,
        guid,
        {"unique_id": unique_id, "name": name, "service_guid": service_guid, "active": active},
    )


async def upsert_catalog(session: AsyncSession, catalog: dict[str, list[dict]]) -> None:
    """Ensure spaces, brokers, services and plans from the seed file exist."""

    for space in catalog.get("spaces", []):
        await upsert_space(
            session,
            guid=str(space["guid"]),
            name=str(space["name"]),
            organization_guid=str(space.get("organization_guid", "")),
        )
    for broker in catalog.get("brokers", []):
        broker_guid = str(broker["guid"])
        await upsert_service_broker(
            session,
            guid=broker_guid,
            name=str(broker["name"]),
            broker_url=str(broker["url"]),
            auth_username=str(broker.get("username", "")),
            auth_password=str(broker.get("password", "")),
        )
        for service in broker.get("services") or []:
            service_guid = str(service["guid"])
            await upsert_service(
                session,
                guid=service_guid,
                unique_id=str(service.get("unique_id", service_guid)),
                label=str(service.get("label", service_guid)),
                service_broker_guid=broker_guid,
                requires=list(service.get("requires") or []),
            )
            for plan in service.get("plans") or []:
                plan_guid = str(plan["guid"])
                await upsert_service_plan(
                    session,
                    guid=plan_guid,
                    unique_id=str(plan.get("unique_id", plan_guid)),
                    name=str(plan.get("name", plan_guid)),
                    service_guid=service_guid,
                    active=bool(plan.get("active", True)),
                )
