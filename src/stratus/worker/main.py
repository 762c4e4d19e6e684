"""Command-line entrypoint for the Stratus background worker."""

from __future__ import annotations

import asyncio
import signal

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..common.networking import create_http_client
from ..common.observability import configure_logging, configure_tracing
from ..common.settings import WorkerSettings
from ..provisioning import db
from ..provisioning.broker import BrokerClientFactory
from ..provisioning.dashboard import DashboardClientRegistrar, build_identity_client
from ..provisioning.events import EventRepository
from ..provisioning.jobs import JobHandler
from ..provisioning.orphans import OrphanMitigationJob
from ..provisioning.poller import ServiceInstanceStateFetch
from .worker import build_worker

LOGGER = structlog.get_logger("stratus.worker.main")


def build_handlers(
    settings: WorkerSettings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient,
) -> list[JobHandler]:
    broker_factory = BrokerClientFactory.from_settings(http_client, settings)
    events = EventRepository(session_factory)
    registrar = DashboardClientRegistrar(build_identity_client(settings, http_client), session_factory, events)
    return [
        ServiceInstanceStateFetch(
            broker_factory,
            session_factory,
            registrar,
            events,
            poll_interval_seconds=settings.poll_interval_seconds,
            poll_interval_max_seconds=settings.poll_interval_max_seconds,
            max_attempts=settings.max_poll_attempts,
        ),
        OrphanMitigationJob(
            broker_factory,
            session_factory,
            max_attempts=settings.orphan_mitigation_max_attempts,
            retry_seconds=settings.orphan_mitigation_retry_seconds,
        ),
    ]


async def serve(settings: WorkerSettings) -> None:
    engine = db.create_engine(settings.database_url)
    await db.ensure_schema(engine)
    session_factory = db.session_factory(engine)
    http_client = create_http_client(
        timeout=settings.broker_timeout_seconds,
        connect_timeout=settings.broker_connect_timeout_seconds,
        ca_bundle=settings.ca_bundle_path,
    )
    worker = build_worker(settings, session_factory, build_handlers(settings, session_factory, http_client))

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, worker.stop)
        except NotImplementedError:  # pragma: no cover - Windows
            pass

    try:
        await worker.run()
    finally:
        await http_client.aclose()
        await engine.dispose()


def main() -> None:
    settings = WorkerSettings()
    configure_logging("stratus.worker", settings.log_level, secrets=settings.log_secrets)
    configure_tracing(
        service_name="stratus.worker",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    LOGGER.info("Starting worker", worker_id=settings.worker_id)
    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
