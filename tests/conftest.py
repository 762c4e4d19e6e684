from __future__ import annotations

import httpx
import pytest
import pytest_asyncio

from stratus.common.settings import ProvisioningSettings
from stratus.provisioning import db
from stratus.provisioning.broker import BrokerClientFactory
from stratus.provisioning.dashboard import DashboardClientRegistrar, build_identity_client
from stratus.provisioning.events import EventRepository
from tests.utils.fakes import CATALOG, UAA_URL, FakeBroker, FakeUAA, routing_transport


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def uaa() -> FakeUAA:
    return FakeUAA()


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'stratus-test.db'}"


@pytest.fixture
def settings(monkeypatch, database_url) -> ProvisioningSettings:
    env = {
        "STRATUS_DATABASE_URL": database_url,
        "STRATUS_POLL_INTERVAL": "1",
        "STRATUS_POLL_INTERVAL_MAX": "4",
        "STRATUS_MAX_POLL_ATTEMPTS": "3",
        "STRATUS_UAA_URL": UAA_URL,
        "STRATUS_UAA_CLIENT_ID": "stratus",
        "STRATUS_UAA_CLIENT_SECRET": "uaa-secret",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return ProvisioningSettings()


@pytest_asyncio.fixture
async def session_factory(database_url):
    engine = db.create_engine(database_url)
    await db.ensure_schema(engine)
    factory = db.session_factory(engine)
    async with factory() as session:
        await db.upsert_catalog(session, CATALOG)
        await session.commit()
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def http_client(broker, uaa):
    client = httpx.AsyncClient(transport=routing_transport(broker, uaa))
    try:
        yield client
    finally:
        await client.aclose()


@pytest.fixture
def broker_factory(http_client, settings) -> BrokerClientFactory:
    return BrokerClientFactory.from_settings(http_client, settings)


@pytest.fixture
def events(session_factory) -> EventRepository:
    return EventRepository(session_factory)


@pytest.fixture
def registrar(settings, http_client, session_factory, events) -> DashboardClientRegistrar:
    return DashboardClientRegistrar(build_identity_client(settings, http_client), session_factory, events)
