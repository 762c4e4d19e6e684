"""Create-service-instance workflow: broker call, local record, compensation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Union
from uuid import uuid4

import structlog
from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.schemas import (
    OPERATION_IN_PROGRESS,
    OPERATION_SUCCEEDED,
    DashboardClientInfo,
    ServiceInstanceCreateRequest,
    StateFetchPayload,
)
from ..common.settings import ProvisioningSettings
from . import db
from .broker import BrokerClientFactory, ProvisionAccepted, ProvisionCompleted, ProvisionFailed
from .dashboard import DashboardClientRegistrar
from .errors import DashboardRegistrationError, InvalidProvisionRequest, LocalPersistenceError
from .events import EventRepository
from .jobs import STATE_FETCH_KIND, state_fetch_key
from .models import ServiceInstance, ServicePlan
from .orphans import OrphanMitigator, SynchronousOrphanMitigator

LOGGER = structlog.get_logger("stratus.provisioning.orchestrator")
TRACER = trace.get_tracer("stratus.provisioning.orchestrator")

PROVISION_COUNTER = GLOBAL_REGISTRY.register(
    Counter("stratus_provision_requests_total", "Service instance create requests by outcome")
)


@dataclass
class ProvisionOutcome:
    instance: ServiceInstance
    operation_state: str
    operation_description: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    job_id: Optional[int] = None

    @property
    def accepted(self) -> bool:
        return self.operation_state == OPERATION_IN_PROGRESS


class ServiceInstanceCreate:
    """Provisions one service instance through its plan's broker.

    The broker is always called before anything is written locally. Once the
    broker reports success every local failure is followed by a compensating
    deprovision before the error reaches the caller.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        broker_factory: BrokerClientFactory,
        registrar: DashboardClientRegistrar,
        event_repository: EventRepository,
        settings: ProvisioningSettings,
        *,
        orphan_mitigator: Optional[OrphanMitigator] = None,
    ) -> None:
        self._session_factory = session_factory
        self._broker_factory = broker_factory
        self._registrar = registrar
        self._events = event_repository
        self._settings = settings
        self._mitigator = orphan_mitigator or SynchronousOrphanMitigator(broker_factory, session_factory)

    async def create(
        self,
        request_attrs: Union[ServiceInstanceCreateRequest, Mapping[str, Any]],
        accepts_incomplete: bool = False,
        *,
        actor: Optional[str] = None,
    ) -> ProvisionOutcome:
        if isinstance(request_attrs, ServiceInstanceCreateRequest):
            request = request_attrs
            snapshot = request_attrs.model_dump(mode="json")
        else:
            request = ServiceInstanceCreateRequest.model_validate(request_attrs)
            snapshot = dict(request_attrs)

        async with self._session_factory() as session:
            plan = await db.get_plan(session, request.service_plan_guid)
            space = await db.get_space(session, request.space_guid)
        if plan is None:
            raise InvalidProvisionRequest(f"Service plan {request.service_plan_guid} not found")
        if space is None:
            raise InvalidProvisionRequest(f"Space {request.space_guid} not found")
        if not plan.active:
            raise InvalidProvisionRequest(f"Service plan {plan.name} is not active")

        instance = ServiceInstance(
            guid=str(uuid4()),
            name=request.name,
            space=space,
            plan=plan,
            tags=list(request.tags),
            parameters=dict(request.parameters),
        )

        with TRACER.start_as_current_span("service_instance.create") as span:
            span.set_attribute("stratus.instance_guid", instance.guid)
            span.set_attribute("stratus.plan_guid", plan.guid)
            span.set_attribute("stratus.accepts_incomplete", accepts_incomplete)

            client = self._broker_factory.for_plan(plan)
            result = await client.provision(plan, instance, request.parameters, accepts_incomplete)

            if isinstance(result, ProvisionFailed):
                PROVISION_COUNTER.inc(labels={"outcome": "broker_failed"})
                LOGGER.warning(
                    "Broker provisioning failed",
                    instance_guid=instance.guid,
                    broker=plan.broker.name,
                    orphan_risk=result.orphan_risk,
                    error=str(result.error),
                )
                if result.orphan_risk and self._settings.mitigate_ambiguous_broker_failures:
                    await self._mitigator.mitigate(instance, plan)
                raise result.error

            if isinstance(result, ProvisionCompleted):
                outcome = await self._complete(instance, plan, result, snapshot, actor)
            else:
                outcome = await self._accept(instance, plan, result, snapshot, actor)
            span.set_attribute("stratus.operation_state", outcome.operation_state)
            return outcome

    async def _complete(
        self,
        instance: ServiceInstance,
        plan: ServicePlan,
        result: ProvisionCompleted,
        snapshot: dict[str, Any],
        actor: Optional[str],
    ) -> ProvisionOutcome:
        instance.credentials = result.credentials or {}
        instance.dashboard_url = result.dashboard_url

        try:
            async with self._session_factory() as session:
                await db.create_instance_with_operation(session, instance, state=OPERATION_SUCCEEDED)
                await session.commit()
        except Exception as exc:
            raise await self._compensate(instance, plan, exc) from exc

        warnings = await self._register_dashboard_client(result.dashboard_client, instance)
        try:
            await self._events.record_service_instance_event("create", instance, snapshot, actor=actor)
        except Exception as exc:
            LOGGER.error(
                "Failed to record create audit event; instance provisioned",
                instance_guid=instance.guid,
                error=str(exc),
            )
            warnings.append(f"Audit event for service instance {instance.name} could not be recorded: {exc}")
        PROVISION_COUNTER.inc(labels={"outcome": "succeeded"})
        LOGGER.info("Service instance provisioned", instance_guid=instance.guid, name=instance.name)
        return ProvisionOutcome(instance=instance, operation_state=OPERATION_SUCCEEDED, warnings=warnings)

    async def _accept(
        self,
        instance: ServiceInstance,
        plan: ServicePlan,
        result: ProvisionAccepted,
        snapshot: dict[str, Any],
        actor: Optional[str],
    ) -> ProvisionOutcome:
        instance.dashboard_url = result.dashboard_url
        now = datetime.now(timezone.utc)
        payload = StateFetchPayload(
            instance_guid=instance.guid,
            plan_guid=plan.guid,
            broker_operation=result.operation,
            deadline=now + timedelta(seconds=self._settings.max_poll_duration_seconds),
            request_attrs=snapshot,
            actor=actor,
        )

        try:
            async with self._session_factory() as session:
                await db.create_instance_with_operation(
                    session,
                    instance,
                    state=OPERATION_IN_PROGRESS,
                    broker_operation=result.operation,
                )
                job_id = await db.enqueue_job(
                    session,
                    kind=STATE_FETCH_KIND,
                    payload=payload.model_dump(mode="json"),
                    run_at=now + timedelta(seconds=self._settings.poll_interval_seconds),
                    key=state_fetch_key(instance.guid),
                )
                await session.commit()
        except Exception as exc:
            raise await self._compensate(instance, plan, exc) from exc

        PROVISION_COUNTER.inc(labels={"outcome": "accepted"})
        LOGGER.info(
            "Service instance provisioning accepted",
            instance_guid=instance.guid,
            broker_operation=result.operation,
            job_id=job_id,
        )
        return ProvisionOutcome(instance=instance, operation_state=OPERATION_IN_PROGRESS, job_id=job_id)

    async def _compensate(
        self, instance: ServiceInstance, plan: ServicePlan, exc: Exception
    ) -> LocalPersistenceError:
        PROVISION_COUNTER.inc(labels={"outcome": "save_failed"})
        LOGGER.error(
            "Failed to save service instance",
            instance_guid=instance.guid,
            plan_guid=plan.guid,
            broker=plan.broker.name,
            error=str(exc),
        )
        await self._mitigator.mitigate(instance, plan)
        return LocalPersistenceError(
            f"Service instance {instance.name} could not be saved; orphan mitigation was attempted",
            instance_guid=instance.guid,
        )

    async def _register_dashboard_client(
        self, client_info: Optional[DashboardClientInfo], instance: ServiceInstance
    ) -> list[str]:
        if client_info is None:
            return []
        try:
            await self._registrar.register(client_info, instance)
        except DashboardRegistrationError as exc:
            LOGGER.warning(
                "Dashboard client registration failed; instance provisioned",
                instance_guid=instance.guid,
                client_id=client_info.id,
                error=str(exc),
            )
            return [str(exc)]
        return []
