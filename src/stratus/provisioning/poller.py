"""Background polling of brokers for asynchronously provisioned instances."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.schemas import (
    OPERATION_FAILED,
    OPERATION_IN_PROGRESS,
    OPERATION_SUCCEEDED,
    StateFetchPayload,
)
from . import db
from .broker import BrokerClientFactory, LastOperation
from .dashboard import DashboardClientRegistrar
from .errors import BrokerError, DashboardRegistrationError, PollExhausted
from .events import EventRepository
from .jobs import STATE_FETCH_KIND, JobOutcome
from .models import ServiceInstance, ServicePlan
from .orphans import AsynchronousOrphanMitigator

LOGGER = structlog.get_logger("stratus.provisioning.poller")
TRACER = trace.get_tracer("stratus.provisioning.poller")

POLL_OUTCOME_COUNTER = GLOBAL_REGISTRY.register(
    Counter("stratus_state_fetch_outcomes_total", "Last-operation poll outcomes")
)

POLL_TIMEOUT_DESCRIPTION = "Service broker failed to provision within the required time."


def poll_delay(attempt: int, base_seconds: float, max_seconds: float) -> float:
    base = max(0.0, base_seconds)
    return min(base * (2 ** max(0, attempt - 1)), max(base, max_seconds))


class ServiceInstanceStateFetch:
    """Drives one asynchronously accepted instance from ``in progress`` to terminal.

    Each run performs a single last-operation read. Anything short of a terminal
    broker answer, including transport failures, reschedules the same job until
    the attempt or time budget is spent.
    """

    kind = STATE_FETCH_KIND

    def __init__(
        self,
        broker_factory: BrokerClientFactory,
        session_factory: async_sessionmaker[AsyncSession],
        registrar: DashboardClientRegistrar,
        event_repository: EventRepository,
        *,
        poll_interval_seconds: float,
        poll_interval_max_seconds: float,
        max_attempts: int,
    ) -> None:
        self._broker_factory = broker_factory
        self._session_factory = session_factory
        self._registrar = registrar
        self._events = event_repository
        self._interval = poll_interval_seconds
        self._interval_max = poll_interval_max_seconds
        self._max_attempts = max(1, max_attempts)

    async def run(self, payload: dict) -> JobOutcome:
        job = StateFetchPayload.model_validate(payload)
        async with self._session_factory() as session:
            row = await db.get_instance(session, job.instance_guid)
            plan = await db.get_plan(session, job.plan_guid)
            space = await db.get_space(session, row["space_guid"]) if row else None

        operation = row.get("last_operation") if row else None
        if row is None or operation is None or operation["state"] != OPERATION_IN_PROGRESS:
            LOGGER.info("Instance no longer awaiting provisioning", instance_guid=job.instance_guid)
            return JobOutcome.done()
        if plan is None or space is None:
            LOGGER.error("Cannot poll instance: plan or space missing", instance_guid=job.instance_guid)
            async with self._session_factory() as session:
                await db.transition_operation(
                    session, job.instance_guid, state=OPERATION_FAILED, description="Service plan no longer available"
                )
                await session.commit()
            return JobOutcome.done()

        instance = ServiceInstance(
            guid=row["guid"],
            name=row["name"],
            space=space,
            plan=plan,
            credentials=row["credentials"],
            dashboard_url=row.get("dashboard_url"),
            tags=row.get("tags") or [],
        )

        with TRACER.start_as_current_span("state_fetch.poll") as span:
            span.set_attribute("stratus.instance_guid", instance.guid)
            span.set_attribute("stratus.attempt", job.attempt)
            last = await self._fetch(job, plan)
            state = last.state if last else OPERATION_IN_PROGRESS
            span.set_attribute("stratus.operation_state", state)
            POLL_OUTCOME_COUNTER.inc(labels={"state": state if last else "unreachable"})

            if last is not None and last.state == OPERATION_SUCCEEDED:
                await self._succeed(job, instance, last)
                return JobOutcome.done()
            if last is not None and last.state == OPERATION_FAILED:
                await self._fail(instance, plan, last.description or "Service broker reported provisioning failure")
                return JobOutcome.done()

            if last is not None and last.description:
                async with self._session_factory() as session:
                    await db.update_operation_description(session, instance.guid, last.description)
                    await session.commit()
            return await self._reschedule(job, instance, plan)

    async def _fetch(self, job: StateFetchPayload, plan: ServicePlan) -> Optional[LastOperation]:
        client = self._broker_factory.for_plan(plan)
        try:
            return await client.fetch_last_operation(plan, job.instance_guid, job.broker_operation)
        except BrokerError as exc:
            LOGGER.warning(
                "Last operation poll failed; treating as in progress",
                instance_guid=job.instance_guid,
                broker=plan.broker.name,
                attempt=job.attempt,
                error=str(exc),
            )
            return None

    async def _reschedule(self, job: StateFetchPayload, instance: ServiceInstance, plan: ServicePlan) -> JobOutcome:
        now = datetime.now(timezone.utc)
        deadline = job.deadline if job.deadline.tzinfo else job.deadline.replace(tzinfo=timezone.utc)
        if job.attempt >= self._max_attempts or now >= deadline:
            exhausted = PollExhausted(
                f"Gave up polling instance {instance.guid} after {job.attempt} attempts"
            )
            LOGGER.warning("Poll budget exhausted", instance_guid=instance.guid, attempts=job.attempt, error=str(exhausted))
            await self._fail(instance, plan, POLL_TIMEOUT_DESCRIPTION)
            return JobOutcome.done()

        delay = poll_delay(job.attempt, self._interval, self._interval_max)
        run_at = min(now + timedelta(seconds=delay), deadline)
        next_payload = job.model_copy(update={"attempt": job.attempt + 1})
        LOGGER.debug("Instance still provisioning", instance_guid=instance.guid, attempt=job.attempt, retry_in=delay)
        return JobOutcome.retry(run_at, payload=next_payload.model_dump(mode="json"))

    async def _succeed(self, job: StateFetchPayload, instance: ServiceInstance, last: LastOperation) -> None:
        credentials = last.credentials or {}
        dashboard_url = last.dashboard_url if last.dashboard_url is not None else instance.dashboard_url
        async with self._session_factory() as session:
            changed = await db.transition_operation(
                session, instance.guid, state=OPERATION_SUCCEEDED, description=last.description
            )
            if not changed:
                await session.rollback()
                LOGGER.info("Operation already terminal; skipping finalize", instance_guid=instance.guid)
                return
            await db.finalize_instance(session, instance.guid, credentials=credentials, dashboard_url=dashboard_url)
            # Success and its audit event commit together.
            await self._events.add_service_instance_event(
                session, "create", instance, job.request_attrs, actor=job.actor
            )
            await session.commit()

        instance.credentials = credentials
        instance.dashboard_url = dashboard_url
        LOGGER.info("Asynchronous provisioning succeeded", instance_guid=instance.guid)

        if last.dashboard_client is not None:
            try:
                await self._registrar.register(last.dashboard_client, instance)
            except DashboardRegistrationError as exc:
                LOGGER.warning(
                    "Dashboard client registration failed; instance provisioned",
                    instance_guid=instance.guid,
                    client_id=last.dashboard_client.id,
                    error=str(exc),
                )

    async def _fail(self, instance: ServiceInstance, plan: ServicePlan, description: str) -> None:
        async with self._session_factory() as session:
            changed = await db.transition_operation(
                session, instance.guid, state=OPERATION_FAILED, description=description
            )
            if not changed:
                await session.rollback()
                return
            await AsynchronousOrphanMitigator(session).mitigate(instance, plan)
            await session.commit()
        LOGGER.warning("Asynchronous provisioning failed", instance_guid=instance.guid, description=description)
