"""Audit event recording for service instances and dashboard clients."""

from __future__ import annotations

from typing import Any, Mapping, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import db
from .models import ServiceInstance

LOGGER = structlog.get_logger("stratus.provisioning.events")

REDACTED = "[PRIVATE DATA HIDDEN]"
SYSTEM_ACTOR = "system"


def redact_request(request_attrs: Mapping[str, Any]) -> dict[str, Any]:
    redacted = dict(request_attrs)
    if "parameters" in redacted:
        redacted["parameters"] = REDACTED
    return redacted


class EventRepository:
    """Writes audit events, normally each in its own transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record_service_instance_event(
        self,
        action: str,
        instance: ServiceInstance,
        request_attrs: Mapping[str, Any],
        actor: Optional[str] = None,
    ) -> str:
        async with self._session_factory() as session:
            guid = await self.add_service_instance_event(session, action, instance, request_attrs, actor=actor)
            await session.commit()
        LOGGER.info(
            "Recorded audit event",
            event_type=f"audit.service_instance.{action}",
            instance_guid=instance.guid,
            event_guid=guid,
        )
        return guid

    async def add_service_instance_event(
        self,
        session: AsyncSession,
        action: str,
        instance: ServiceInstance,
        request_attrs: Mapping[str, Any],
        actor: Optional[str] = None,
    ) -> str:
        """Stage the event in the caller's transaction; the caller commits."""

        return await db.record_event(
            session,
            event_type=f"audit.service_instance.{action}",
            actor=actor or SYSTEM_ACTOR,
            actee=instance.guid,
            actee_type="service_instance",
            actee_name=instance.name,
            space_guid=instance.space.guid,
            metadata={"request": redact_request(request_attrs)},
        )

    async def record_dashboard_client_event(
        self,
        action: str,
        client_id: str,
        instance: ServiceInstance,
        redirect_uri: Optional[str],
    ) -> str:
        event_type = f"audit.service_dashboard_client.{action}"
        async with self._session_factory() as session:
            guid = await db.record_event(
                session,
                event_type=event_type,
                actor=SYSTEM_ACTOR,
                actee=client_id,
                actee_type="service_dashboard_client",
                actee_name=client_id,
                space_guid=instance.space.guid,
                metadata={
                    "service_instance_guid": instance.guid,
                    "redirect_uri": redirect_uri,
                },
            )
            await session.commit()
        return guid
