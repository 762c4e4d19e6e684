"""Service instance provisioning through service brokers.

The foreground path is :class:`ServiceInstanceCreate`; everything that has to
happen after the request returns runs as durable jobs handled by
:class:`ServiceInstanceStateFetch` and :class:`OrphanMitigationJob`.
"""

from .broker import BrokerClient, BrokerClientFactory
from .dashboard import DashboardClientRegistrar, IdentityProviderClient, build_identity_client
from .errors import (
    BrokerError,
    BrokerProtocolError,
    BrokerRequestRejected,
    BrokerUnreachable,
    DashboardRegistrationError,
    InvalidProvisionRequest,
    LocalPersistenceError,
    OrphanMitigationError,
    PollExhausted,
    ProvisioningError,
)
from .events import EventRepository
from .orchestrator import ProvisionOutcome, ServiceInstanceCreate
from .orphans import AsynchronousOrphanMitigator, OrphanMitigationJob, SynchronousOrphanMitigator
from .poller import ServiceInstanceStateFetch

__all__ = [
    "AsynchronousOrphanMitigator",
    "BrokerClient",
    "BrokerClientFactory",
    "BrokerError",
    "BrokerProtocolError",
    "BrokerRequestRejected",
    "BrokerUnreachable",
    "DashboardClientRegistrar",
    "DashboardRegistrationError",
    "EventRepository",
    "IdentityProviderClient",
    "InvalidProvisionRequest",
    "LocalPersistenceError",
    "OrphanMitigationError",
    "OrphanMitigationJob",
    "PollExhausted",
    "ProvisionOutcome",
    "ProvisioningError",
    "ServiceInstanceCreate",
    "ServiceInstanceStateFetch",
    "SynchronousOrphanMitigator",
    "build_identity_client",
]
