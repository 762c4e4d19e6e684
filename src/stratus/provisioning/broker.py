"""HTTP adapter for the service broker provisioning protocol."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import httpx
import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.networking import build_timeout
from ..common.schemas import (
    OPERATION_FAILED,
    OPERATION_IN_PROGRESS,
    OPERATION_SUCCEEDED,
    DashboardClientInfo,
)
from ..common.settings import ProvisioningSettings
from .errors import BrokerError, BrokerProtocolError, BrokerRequestRejected, BrokerUnreachable
from .models import ServiceBroker, ServiceInstance, ServicePlan

LOGGER = structlog.get_logger("stratus.provisioning.broker")
TRACER = trace.get_tracer("stratus.provisioning.broker")

BROKER_REQUEST_COUNTER = GLOBAL_REGISTRY.register(
    Counter("stratus_broker_requests_total", "Requests issued to service brokers")
)
BROKER_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("stratus_broker_failures_total", "Broker calls that did not succeed")
)
BROKER_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "stratus_broker_request_latency_seconds",
        buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0],
        description="Service broker request latency",
    )
)

VALID_LAST_OPERATION_STATES = {OPERATION_IN_PROGRESS, OPERATION_SUCCEEDED, OPERATION_FAILED}


@dataclass
class ProvisionCompleted:
    credentials: dict[str, Any] = field(default_factory=dict)
    dashboard_url: Optional[str] = None
    dashboard_client: Optional[DashboardClientInfo] = None


@dataclass
class ProvisionAccepted:
    operation: Optional[str] = None
    dashboard_url: Optional[str] = None


@dataclass
class ProvisionFailed:
    error: BrokerError
    # The broker may have created the resource even though we saw a failure.
    orphan_risk: bool = False


ProvisionResult = Union[ProvisionCompleted, ProvisionAccepted, ProvisionFailed]


@dataclass
class LastOperation:
    state: str
    description: Optional[str] = None
    credentials: Optional[dict[str, Any]] = None
    dashboard_url: Optional[str] = None
    dashboard_client: Optional[DashboardClientInfo] = None


def _parse_dashboard_client(value: Any) -> Optional[DashboardClientInfo]:
    if not value:
        return None
    if not isinstance(value, dict):
        raise BrokerProtocolError("dashboard_client must be an object")
    try:
        return DashboardClientInfo.model_validate(value)
    except ValueError as exc:
        raise BrokerProtocolError(f"invalid dashboard_client: {exc}") from exc


def _parse_json_object(response: httpx.Response, broker: str) -> dict[str, Any]:
    if not response.content or not response.content.strip():
        return {}
    try:
        body = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise BrokerProtocolError(
            f"Service broker {broker} returned malformed JSON (status {response.status_code})",
            broker=broker,
        ) from exc
    if not isinstance(body, dict):
        raise BrokerProtocolError(
            f"Service broker {broker} returned a non-object JSON body (status {response.status_code})",
            broker=broker,
        )
    return body


def _error_description(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        text = response.text.strip()
        return text[:512] if text else None
    if isinstance(body, dict):
        description = body.get("description") or body.get("error")
        return str(description) if description else None
    return None


class BrokerClient:
    """Stateless adapter for one broker; build one per call via :class:`BrokerClientFactory`."""

    def __init__(
        self,
        broker: ServiceBroker,
        http_client: httpx.AsyncClient,
        *,
        timeout: httpx.Timeout,
        api_version: str = "2.5",
    ) -> None:
        self._broker = broker
        self._http = http_client
        self._timeout = timeout
        self._api_version = api_version

    @property
    def broker(self) -> ServiceBroker:
        return self._broker

    def _url(self, instance_guid: str, suffix: str = "") -> str:
        return f"{self._broker.broker_url.rstrip('/')}/v2/service_instances/{instance_guid}{suffix}"

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        BROKER_REQUEST_COUNTER.inc(labels={"method": method})
        start = time.perf_counter()
        try:
            return await self._http.request(
                method,
                url,
                auth=(self._broker.auth_username, self._broker.auth_password),
                headers={"X-Broker-API-Version": self._api_version, "Accept": "application/json"},
                timeout=self._timeout,
                **kwargs,
            )
        except httpx.TimeoutException as exc:
            BROKER_FAILURE_COUNTER.inc(labels={"reason": "timeout"})
            raise BrokerUnreachable(
                f"Service broker {self._broker.name} timed out: {method} {url}",
                broker=self._broker.name,
                timed_out=True,
            ) from exc
        except httpx.HTTPError as exc:
            BROKER_FAILURE_COUNTER.inc(labels={"reason": "transport"})
            raise BrokerUnreachable(
                f"Service broker {self._broker.name} unreachable: {exc}",
                broker=self._broker.name,
            ) from exc
        finally:
            BROKER_LATENCY_HISTOGRAM.observe(time.perf_counter() - start)

    async def provision(
        self,
        plan: ServicePlan,
        instance: ServiceInstance,
        parameters: Optional[dict[str, Any]],
        accepts_incomplete: bool,
    ) -> ProvisionResult:
        """Ask the broker to create ``instance``; never raises for broker failures."""

        body: dict[str, Any] = {
            "service_id": plan.service_unique_id,
            "plan_id": plan.unique_id,
            "organization_guid": instance.space.organization_guid,
            "space_guid": instance.space.guid,
        }
        if parameters:
            body["parameters"] = parameters
        params = {"accepts_incomplete": "true"} if accepts_incomplete else None

        with TRACER.start_as_current_span("broker.provision") as span:
            span.set_attribute("stratus.broker", self._broker.name)
            span.set_attribute("stratus.instance_guid", instance.guid)
            span.set_attribute("stratus.accepts_incomplete", accepts_incomplete)
            try:
                response = await self._send("PUT", self._url(instance.guid), json=body, params=params)
            except BrokerUnreachable as exc:
                LOGGER.warning(
                    "Provision request failed in transport",
                    broker=self._broker.name,
                    instance_guid=instance.guid,
                    error=str(exc),
                )
                return ProvisionFailed(error=exc, orphan_risk=exc.timed_out)

            span.set_attribute("http.status_code", response.status_code)
            return self._interpret_provision(response, instance, accepts_incomplete)

    def _interpret_provision(
        self, response: httpx.Response, instance: ServiceInstance, accepts_incomplete: bool
    ) -> ProvisionResult:
        status = response.status_code
        broker = self._broker.name
        if status in (200, 201):
            try:
                body = _parse_json_object(response, broker)
                dashboard_client = _parse_dashboard_client(body.get("dashboard_client"))
            except BrokerProtocolError as exc:
                BROKER_FAILURE_COUNTER.inc(labels={"reason": "protocol"})
                LOGGER.warning("Provision response malformed", broker=broker, instance_guid=instance.guid, error=str(exc))
                return ProvisionFailed(error=exc, orphan_risk=True)
            credentials = body.get("credentials")
            return ProvisionCompleted(
                credentials=credentials if isinstance(credentials, dict) else {},
                dashboard_url=body.get("dashboard_url"),
                dashboard_client=dashboard_client,
            )

        if status == 202:
            if not accepts_incomplete:
                BROKER_FAILURE_COUNTER.inc(labels={"reason": "protocol"})
                error = BrokerProtocolError(
                    f"Service broker {broker} responded asynchronously to a request that did not accept it",
                    broker=broker,
                )
                LOGGER.warning("Unexpected asynchronous provision", broker=broker, instance_guid=instance.guid)
                return ProvisionFailed(error=error, orphan_risk=True)
            try:
                body = _parse_json_object(response, broker)
            except BrokerProtocolError as exc:
                BROKER_FAILURE_COUNTER.inc(labels={"reason": "protocol"})
                return ProvisionFailed(error=exc, orphan_risk=True)
            operation = body.get("operation")
            return ProvisionAccepted(
                operation=str(operation) if operation is not None else None,
                dashboard_url=body.get("dashboard_url"),
            )

        BROKER_FAILURE_COUNTER.inc(labels={"reason": f"status_{status}"})
        description = _error_description(response)
        LOGGER.warning(
            "Provision request rejected",
            broker=broker,
            instance_guid=instance.guid,
            status=status,
            description=description,
        )
        error = BrokerRequestRejected(
            f"Service broker {broker} rejected provision request with status {status}",
            status_code=status,
            description=description,
            broker=broker,
        )
        return ProvisionFailed(error=error, orphan_risk=status >= 500 or status == 408)

    async def fetch_last_operation(
        self,
        plan: ServicePlan,
        instance_guid: str,
        operation: Optional[str] = None,
    ) -> LastOperation:
        params = {"service_id": plan.service_unique_id, "plan_id": plan.unique_id}
        if operation:
            params["operation"] = operation
        with TRACER.start_as_current_span("broker.last_operation") as span:
            span.set_attribute("stratus.broker", self._broker.name)
            span.set_attribute("stratus.instance_guid", instance_guid)
            response = await self._send("GET", self._url(instance_guid, "/last_operation"), params=params)
            span.set_attribute("http.status_code", response.status_code)

        if response.status_code != 200:
            BROKER_FAILURE_COUNTER.inc(labels={"reason": f"status_{response.status_code}"})
            raise BrokerRequestRejected(
                f"Service broker {self._broker.name} last_operation returned status {response.status_code}",
                status_code=response.status_code,
                description=_error_description(response),
                broker=self._broker.name,
            )
        body = _parse_json_object(response, self._broker.name)
        state = body.get("state")
        if state not in VALID_LAST_OPERATION_STATES:
            raise BrokerProtocolError(
                f"Service broker {self._broker.name} reported unknown operation state {state!r}",
                broker=self._broker.name,
            )
        credentials = body.get("credentials")
        return LastOperation(
            state=state,
            description=body.get("description"),
            credentials=credentials if isinstance(credentials, dict) else None,
            dashboard_url=body.get("dashboard_url"),
            dashboard_client=_parse_dashboard_client(body.get("dashboard_client")),
        )

    async def deprovision(self, plan: ServicePlan, instance_guid: str) -> None:
        params = {"service_id": plan.service_unique_id, "plan_id": plan.unique_id}
        with TRACER.start_as_current_span("broker.deprovision") as span:
            span.set_attribute("stratus.broker", self._broker.name)
            span.set_attribute("stratus.instance_guid", instance_guid)
            response = await self._send("DELETE", self._url(instance_guid), params=params)
            span.set_attribute("http.status_code", response.status_code)
        # 410 means the broker never had (or already removed) the instance.
        if response.status_code in (200, 202, 410):
            return
        BROKER_FAILURE_COUNTER.inc(labels={"reason": f"status_{response.status_code}"})
        raise BrokerRequestRejected(
            f"Service broker {self._broker.name} rejected deprovision with status {response.status_code}",
            status_code=response.status_code,
            description=_error_description(response),
            broker=self._broker.name,
        )


class BrokerClientFactory:
    """Builds broker clients on demand from the broker record of a plan."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        timeout_seconds: float,
        connect_timeout_seconds: Optional[float] = None,
        api_version: str = "2.5",
    ) -> None:
        self._http = http_client
        self._timeout = build_timeout(timeout_seconds, connect_timeout_seconds)
        self._api_version = api_version

    def for_plan(self, plan: ServicePlan) -> BrokerClient:
        return BrokerClient(plan.broker, self._http, timeout=self._timeout, api_version=self._api_version)

    @classmethod
    def from_settings(cls, http_client: httpx.AsyncClient, settings: ProvisioningSettings) -> "BrokerClientFactory":
        return cls(
            http_client,
            timeout_seconds=settings.broker_timeout_seconds,
            connect_timeout_seconds=settings.broker_connect_timeout_seconds,
            api_version=settings.broker_api_version,
        )
