"""Dashboard single-sign-on client registration against UAA."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.networking import build_timeout
from ..common.schemas import DashboardClientInfo
from ..common.settings import ProvisioningSettings
from . import db
from .errors import DashboardRegistrationError, IdentityProviderError
from .events import EventRepository
from .models import ServiceInstance

LOGGER = structlog.get_logger("stratus.provisioning.dashboard")

DASHBOARD_CLIENT_COUNTER = GLOBAL_REGISTRY.register(
    Counter("stratus_dashboard_client_registrations_total", "Dashboard client registration attempts")
)

DASHBOARD_CLIENT_SCOPES = ["openid", "cloud_controller_service_permissions.read"]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AccessToken:
    token: str
    expires_at: datetime

    @property
    def is_valid(self) -> bool:
        return self.expires_at > _utc_now() + timedelta(seconds=30)


class IdentityProviderClient:
    """Wraps the UAA calls needed to manage dashboard clients."""

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient,
        *,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self._http = http_client
        self._timeout = build_timeout(timeout_seconds)
        self._cached_token: Optional[AccessToken] = None

    async def _exchange_token(self) -> AccessToken:
        response = await self._http.post(
            f"{self._base_url}/oauth/token",
            data={"grant_type": "client_credentials"},
            auth=(self._client_id, self._client_secret),
            headers={"Accept": "application/json"},
            timeout=self._timeout,
        )
        response.raise_for_status()
        try:
            data = response.json()
            expires_in = int(data.get("expires_in", 0))
            token = AccessToken(token=str(data["access_token"]), expires_at=_utc_now() + timedelta(seconds=expires_in))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise IdentityProviderError(f"Malformed token response from {self._base_url}: {exc!r}") from exc
        self._cached_token = token
        return token

    async def _auth_headers(self) -> dict[str, str]:
        token = self._cached_token
        if token is None or not token.is_valid:
            token = await self._exchange_token()
        return {"Authorization": f"Bearer {token.token}", "Accept": "application/json"}

    async def create_client(self, client: DashboardClientInfo) -> None:
        payload = {
            "client_id": client.id,
            "client_secret": client.secret,
            "redirect_uri": [client.redirect_uri] if client.redirect_uri else [],
            "scope": DASHBOARD_CLIENT_SCOPES,
            "authorities": ["uaa.resource"],
            "authorized_grant_types": ["authorization_code"],
        }
        response = await self._http.post(
            f"{self._base_url}/oauth/clients",
            json=payload,
            headers=await self._auth_headers(),
            timeout=self._timeout,
        )
        # 409: the client already exists in UAA, e.g. a retried registration
        if response.status_code == 409:
            LOGGER.info("Dashboard client already present in UAA", client_id=client.id)
            return
        response.raise_for_status()


class DashboardClientRegistrar:
    """Registers broker-supplied SSO clients and ties them to their instance."""

    def __init__(
        self,
        identity_client: Optional[IdentityProviderClient],
        session_factory: async_sessionmaker[AsyncSession],
        event_repository: EventRepository,
    ) -> None:
        self._identity = identity_client
        self._session_factory = session_factory
        self._events = event_repository

    async def register(self, client_info: DashboardClientInfo, instance: ServiceInstance) -> None:
        DASHBOARD_CLIENT_COUNTER.inc()
        if self._identity is None:
            raise DashboardRegistrationError(
                f"Dashboard client {client_info.id} not registered: SSO identity provider not configured"
            )
        try:
            await self._register(self._identity, client_info, instance)
        except DashboardRegistrationError:
            raise
        except (httpx.HTTPError, IdentityProviderError) as exc:
            raise DashboardRegistrationError(
                f"Identity provider rejected dashboard client {client_info.id}: {exc}"
            ) from exc
        except Exception as exc:
            raise DashboardRegistrationError(f"Dashboard client {client_info.id} could not be registered: {exc!r}") from exc
        LOGGER.info("Registered dashboard client", client_id=client_info.id, instance_guid=instance.guid)

    async def _register(
        self, identity: IdentityProviderClient, client_info: DashboardClientInfo, instance: ServiceInstance
    ) -> None:
        async with self._session_factory() as session:
            existing = await db.get_dashboard_client(session, client_info.id)
        if existing is not None:
            if existing["service_instance_guid"] == instance.guid:
                LOGGER.debug("Dashboard client already claimed", client_id=client_info.id, instance_guid=instance.guid)
                return
            raise DashboardRegistrationError(
                f"Dashboard client {client_info.id} is already claimed by another service instance"
            )

        await identity.create_client(client_info)

        try:
            async with self._session_factory() as session:
                await db.claim_dashboard_client(session, client_info.id, instance.guid)
                await session.commit()
        except Exception as exc:
            raise DashboardRegistrationError(
                f"Dashboard client {client_info.id} created but could not be recorded: {exc}"
            ) from exc

        await self._events.record_dashboard_client_event("create", client_info.id, instance, client_info.redirect_uri)


def build_identity_client(
    settings: ProvisioningSettings, http_client: httpx.AsyncClient
) -> Optional[IdentityProviderClient]:
    if not settings.dashboard_sso_enabled:
        LOGGER.info("Dashboard SSO disabled; identity provider not configured")
        return None
    return IdentityProviderClient(
        str(settings.uaa_url),
        settings.uaa_client_id,
        settings.uaa_client_secret.get_secret_value(),
        http_client,
        timeout_seconds=settings.uaa_timeout_seconds,
    )
