"""Failure taxonomy for service instance provisioning."""

from __future__ import annotations

from typing import Optional


class ProvisioningError(Exception):
    """Base class for provisioning failures."""


class InvalidProvisionRequest(ProvisioningError):
    """The request references a plan or space that cannot be used."""


class BrokerError(ProvisioningError):
    """A call to a service broker did not produce a usable answer."""

    def __init__(self, message: str, *, broker: Optional[str] = None) -> None:
        super().__init__(message)
        self.broker = broker


class BrokerUnreachable(BrokerError):
    """Transport-level failure: DNS, connection refused, timeout."""

    def __init__(self, message: str, *, broker: Optional[str] = None, timed_out: bool = False) -> None:
        super().__init__(message, broker=broker)
        self.timed_out = timed_out


class BrokerProtocolError(BrokerError):
    """The broker answered, but not in a shape the protocol allows."""


class BrokerRequestRejected(BrokerError):
    """The broker answered with a non-success status code."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        description: Optional[str] = None,
        broker: Optional[str] = None,
    ) -> None:
        super().__init__(message, broker=broker)
        self.status_code = status_code
        self.description = description


class LocalPersistenceError(ProvisioningError):
    """The broker succeeded but the instance could not be saved locally."""

    def __init__(self, message: str, *, instance_guid: str, mitigation_attempted: bool = True) -> None:
        super().__init__(message)
        self.instance_guid = instance_guid
        self.mitigation_attempted = mitigation_attempted


class DashboardRegistrationError(ProvisioningError):
    """Dashboard SSO client could not be registered; provisioning stands."""


class OrphanMitigationError(ProvisioningError):
    """The compensating deprovision request itself failed."""


class PollExhausted(ProvisioningError):
    """The poll budget ran out while the broker still reported in progress."""


class IdentityProviderError(ProvisioningError):
    """UAA answered, but not with a usable token or client response."""
