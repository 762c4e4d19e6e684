"""Compensating deprovision for instances the broker has but we could not keep."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol

import structlog
from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.schemas import OrphanMitigationPayload
from . import db
from .broker import BrokerClientFactory
from .errors import BrokerError, OrphanMitigationError
from .jobs import ORPHAN_MITIGATION_KIND, JobOutcome, orphan_mitigation_key
from .models import ServiceInstance, ServicePlan

LOGGER = structlog.get_logger("stratus.provisioning.orphans")
TRACER = trace.get_tracer("stratus.provisioning.orphans")

ORPHAN_MITIGATION_COUNTER = GLOBAL_REGISTRY.register(
    Counter("stratus_orphan_mitigations_total", "Orphan mitigation attempts by mode and outcome")
)


class OrphanMitigator(Protocol):
    async def mitigate(self, instance: ServiceInstance, plan: ServicePlan) -> None:
        ...


async def _attempt_deprovision(broker_factory: BrokerClientFactory, instance_guid: str, plan: ServicePlan) -> None:
    client = broker_factory.for_plan(plan)
    try:
        await client.deprovision(plan, instance_guid)
    except BrokerError as exc:
        raise OrphanMitigationError(
            f"Deprovision of orphaned instance {instance_guid} via broker {plan.broker.name} failed: {exc}"
        ) from exc


async def _record_known_orphan(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    instance_guid: str,
    plan: ServicePlan,
    source: str,
    error: str,
) -> None:
    async with session_factory() as session:
        await db.record_orphan(
            session,
            instance_guid=instance_guid,
            plan_guid=plan.guid,
            broker_guid=plan.broker.guid,
            source=source,
            error=error,
        )
        await session.commit()


class SynchronousOrphanMitigator:
    """Deprovisions inline; the caller waits for the single attempt."""

    def __init__(
        self,
        broker_factory: BrokerClientFactory,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self._broker_factory = broker_factory
        self._session_factory = session_factory

    async def mitigate(self, instance: ServiceInstance, plan: ServicePlan) -> None:
        with TRACER.start_as_current_span("orphan_mitigation.sync") as span:
            span.set_attribute("stratus.instance_guid", instance.guid)
            LOGGER.info("Attempting orphan mitigation", instance_guid=instance.guid, broker=plan.broker.name)
            try:
                await _attempt_deprovision(self._broker_factory, instance.guid, plan)
            except OrphanMitigationError as exc:
                ORPHAN_MITIGATION_COUNTER.inc(labels={"mode": "sync", "outcome": "failed"})
                LOGGER.error(
                    "Orphan mitigation failed",
                    instance_guid=instance.guid,
                    plan_guid=plan.guid,
                    broker=plan.broker.name,
                    error=str(exc),
                )
                await self._record_failure(instance, plan, str(exc))
                return
            ORPHAN_MITIGATION_COUNTER.inc(labels={"mode": "sync", "outcome": "succeeded"})
            LOGGER.info("Orphan mitigation succeeded", instance_guid=instance.guid, broker=plan.broker.name)

    async def _record_failure(self, instance: ServiceInstance, plan: ServicePlan, error: str) -> None:
        # The original failure is re-raised by the caller; this row is best-effort.
        try:
            await _record_known_orphan(
                self._session_factory,
                instance_guid=instance.guid,
                plan=plan,
                source="sync",
                error=error,
            )
        except Exception as exc:  # noqa: BLE001 - logged for operators
            LOGGER.error("Could not record orphaned instance", instance_guid=instance.guid, error=str(exc))


class AsynchronousOrphanMitigator:
    """Defers the deprovision to the worker by enqueuing it in the caller's transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def mitigate(self, instance: ServiceInstance, plan: ServicePlan) -> None:
        payload = OrphanMitigationPayload(instance_guid=instance.guid, plan_guid=plan.guid)
        job_id = await db.enqueue_job(
            self._session,
            kind=ORPHAN_MITIGATION_KIND,
            payload=payload.model_dump(mode="json"),
            key=orphan_mitigation_key(instance.guid),
        )
        ORPHAN_MITIGATION_COUNTER.inc(labels={"mode": "async", "outcome": "enqueued"})
        LOGGER.info("Enqueued orphan mitigation", instance_guid=instance.guid, job_id=job_id)


class OrphanMitigationJob:
    """Worker-side handler for deferred orphan mitigation."""

    kind = ORPHAN_MITIGATION_KIND

    def __init__(
        self,
        broker_factory: BrokerClientFactory,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = 3,
        retry_seconds: float = 30.0,
    ) -> None:
        self._broker_factory = broker_factory
        self._session_factory = session_factory
        self._max_attempts = max(1, max_attempts)
        self._retry_seconds = max(0.0, retry_seconds)

    async def run(self, payload: dict) -> JobOutcome:
        job = OrphanMitigationPayload.model_validate(payload)
        async with self._session_factory() as session:
            plan = await db.get_plan(session, job.plan_guid)
        if plan is None:
            LOGGER.error("Orphan mitigation skipped: plan vanished", instance_guid=job.instance_guid, plan_guid=job.plan_guid)
            return JobOutcome.done()

        with TRACER.start_as_current_span("orphan_mitigation.async") as span:
            span.set_attribute("stratus.instance_guid", job.instance_guid)
            span.set_attribute("stratus.attempt", job.attempt)
            try:
                await _attempt_deprovision(self._broker_factory, job.instance_guid, plan)
            except OrphanMitigationError as exc:
                if job.attempt < self._max_attempts:
                    delay = self._retry_seconds * (2 ** (job.attempt - 1))
                    LOGGER.warning(
                        "Orphan mitigation attempt failed",
                        instance_guid=job.instance_guid,
                        attempt=job.attempt,
                        retry_in=delay,
                        error=str(exc),
                    )
                    next_payload = job.model_copy(update={"attempt": job.attempt + 1})
                    return JobOutcome.retry(
                        datetime.now(timezone.utc) + timedelta(seconds=delay),
                        payload=next_payload.model_dump(mode="json"),
                        error=str(exc),
                    )
                ORPHAN_MITIGATION_COUNTER.inc(labels={"mode": "async", "outcome": "failed"})
                LOGGER.error(
                    "Orphan mitigation gave up",
                    instance_guid=job.instance_guid,
                    attempts=job.attempt,
                    broker=plan.broker.name,
                    error=str(exc),
                )
                await _record_known_orphan(
                    self._session_factory,
                    instance_guid=job.instance_guid,
                    plan=plan,
                    source="async",
                    error=str(exc),
                )
                return JobOutcome.done()

        ORPHAN_MITIGATION_COUNTER.inc(labels={"mode": "async", "outcome": "succeeded"})
        LOGGER.info("Orphan mitigation succeeded", instance_guid=job.instance_guid, broker=plan.broker.name)
        return JobOutcome.done()
