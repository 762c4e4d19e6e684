"""Shared data models for the Stratus control plane and worker."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

OPERATION_IN_PROGRESS = "in progress"
OPERATION_SUCCEEDED = "succeeded"
OPERATION_FAILED = "failed"
TERMINAL_OPERATION_STATES = frozenset({OPERATION_SUCCEEDED, OPERATION_FAILED})

OperationState = Literal["in progress", "succeeded", "failed"]


class ServiceInstanceCreateRequest(BaseModel):
    """Already-validated attributes of a create request."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1, max_length=255)
    space_guid: str = Field(min_length=1)
    service_plan_guid: str = Field(min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)


class DashboardClientInfo(BaseModel):
    """SSO client credentials returned by a broker."""

    id: str
    secret: str
    redirect_uri: Optional[str] = None


class LastOperationRecord(BaseModel):
    type: str = "create"
    state: OperationState
    description: Optional[str] = None
    updated_at: Optional[datetime] = None


class ServiceInstanceRecord(BaseModel):
    """Service instance as exposed by the control plane."""

    guid: str
    name: str
    space_guid: str
    service_plan_guid: str
    credentials: dict[str, Any] = Field(default_factory=dict)
    dashboard_url: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_operation: Optional[LastOperationRecord] = None


class ProvisionResponse(BaseModel):
    instance: ServiceInstanceRecord
    warnings: list[str] = Field(default_factory=list)


class OrphanRecord(BaseModel):
    """Instance whose compensating deprovision could not be completed."""

    id: int
    service_instance_guid: str
    service_plan_guid: str
    service_broker_guid: Optional[str] = None
    source: str
    error: Optional[str] = None
    created_at: datetime


class StateFetchPayload(BaseModel):
    """Durable payload of an asynchronous provisioning poll job."""

    instance_guid: str
    plan_guid: str
    broker_operation: Optional[str] = None
    attempt: int = 1
    deadline: datetime
    request_attrs: dict[str, Any] = Field(default_factory=dict)
    actor: Optional[str] = None


class OrphanMitigationPayload(BaseModel):
    """Durable payload of a deferred orphan mitigation job."""

    instance_guid: str
    plan_guid: str
    attempt: int = 1
