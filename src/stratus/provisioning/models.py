"""In-memory views of the records the provisioning workflow operates on."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class ServiceBroker:
    guid: str
    name: str
    broker_url: str
    auth_username: str
    auth_password: str = field(repr=False)


@dataclass(frozen=True)
class ServicePlan:
    """A plan resolved through its service to the broker that offers it."""

    guid: str
    unique_id: str
    name: str
    active: bool
    service_guid: str
    service_unique_id: str
    service_label: str
    broker: ServiceBroker


@dataclass(frozen=True)
class Space:
    guid: str
    name: str
    organization_guid: str


@dataclass
class ServiceInstance:
    guid: str
    name: str
    space: Space
    plan: ServicePlan
    credentials: dict[str, Any] = field(default_factory=dict)
    dashboard_url: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    # Forwarded to the broker only; never stored or compared.
    parameters: dict[str, Any] = field(default_factory=dict, repr=False)
