"""FastAPI application exposing the Stratus provisioning API."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..common.http_security import require_api_subject, require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.networking import create_http_client
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.schemas import (
    OrphanRecord,
    ProvisionResponse,
    ServiceInstanceCreateRequest,
    ServiceInstanceRecord,
)
from ..common.settings import ControlPlaneSettings
from ..provisioning import db
from ..provisioning.broker import BrokerClientFactory
from ..provisioning.dashboard import DashboardClientRegistrar, build_identity_client
from ..provisioning.errors import BrokerError, InvalidProvisionRequest, LocalPersistenceError
from ..provisioning.events import EventRepository
from ..provisioning.orchestrator import ServiceInstanceCreate

LOGGER = structlog.get_logger("stratus.control_plane")

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("stratus_api_requests_total", "Total API requests"))
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "stratus_api_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
        description="API request latency",
    )
)


class AppState:
    """Container for application-level shared resources."""

    def __init__(
        self,
        settings: ControlPlaneSettings,
        http_client: httpx.AsyncClient,
        session_factory,
        orchestrator: ServiceInstanceCreate,
    ) -> None:
        self.settings = settings
        self.http_client = http_client
        self.session_factory = session_factory
        self.orchestrator = orchestrator


def _get_state(request: Request) -> AppState:
    state: AppState = request.app.state.container  # type: ignore[attr-defined]
    return state


def get_settings(state: AppState = Depends(_get_state)) -> ControlPlaneSettings:
    return state.settings


async def get_session(state: AppState = Depends(_get_state)) -> AsyncSession:
    async with state.session_factory() as session:  # type: ignore[call-arg]
        yield session


def verify_api_token(request: Request, settings: ControlPlaneSettings = Depends(get_settings)) -> str:
    return require_api_subject(request, settings.jwt_secrets, settings.allowed_subjects)


def _instance_record(row: dict) -> ServiceInstanceRecord:
    return ServiceInstanceRecord.model_validate(row)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = ControlPlaneSettings()
    configure_logging("stratus.control_plane", settings.log_level, secrets=settings.log_secrets)
    configure_tracing(
        service_name="stratus.control_plane",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    instrument_fastapi_app(app)

    engine = db.create_engine(settings.database_url)
    await db.ensure_schema(engine)
    session_factory = db.session_factory(engine)
    catalog = db.load_catalog(settings.catalog_path)
    async with session_factory() as session:  # type: ignore[call-arg]
        await db.upsert_catalog(session, catalog)
        await session.commit()

    http_client = create_http_client(
        timeout=settings.broker_timeout_seconds,
        connect_timeout=settings.broker_connect_timeout_seconds,
        ca_bundle=settings.ca_bundle_path,
    )
    events = EventRepository(session_factory)
    registrar = DashboardClientRegistrar(build_identity_client(settings, http_client), session_factory, events)
    orchestrator = ServiceInstanceCreate(
        session_factory,
        BrokerClientFactory.from_settings(http_client, settings),
        registrar,
        events,
        settings,
    )
    app.state.container = AppState(
        settings=settings,
        http_client=http_client,
        session_factory=session_factory,
        orchestrator=orchestrator,
    )
    LOGGER.info(
        "Control plane ready",
        brokers=len(catalog["brokers"]),
        spaces=len(catalog["spaces"]),
        dashboard_sso=settings.dashboard_sso_enabled,
    )
    try:
        yield
    finally:
        await http_client.aclose()
        await engine.dispose()


def create_app() -> FastAPI:
    app = FastAPI(title="Stratus", lifespan=lifespan)

    @app.middleware("http")
    async def record_request_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    @app.post(
        "/v2/service_instances",
        response_model=ProvisionResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def create_service_instance(
        request_body: ServiceInstanceCreateRequest,
        response: Response,
        accepts_incomplete: bool = Query(False),
        subject: str = Depends(verify_api_token),
        state: AppState = Depends(_get_state),
    ) -> ProvisionResponse:
        REQUEST_COUNTER.inc()
        async with state.session_factory() as session:  # type: ignore[call-arg]
            plan = await db.get_plan(session, request_body.service_plan_guid)
            space = await db.get_space(session, request_body.space_guid)
            name_taken = await db.instance_name_taken(session, request_body.space_guid, request_body.name)
        if plan is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service plan not found")
        if space is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Space not found")
        if not plan.active:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Service plan is not active")
        if name_taken:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Service instance name is already taken in this space",
            )

        try:
            outcome = await state.orchestrator.create(request_body, accepts_incomplete, actor=subject)
        except InvalidProvisionRequest as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except BrokerError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
        except LocalPersistenceError as exc:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

        async with state.session_factory() as session:  # type: ignore[call-arg]
            row = await db.get_instance(session, outcome.instance.guid)
        if row is None:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Service instance vanished")
        if outcome.accepted:
            response.status_code = status.HTTP_202_ACCEPTED
        return ProvisionResponse(instance=_instance_record(row), warnings=outcome.warnings)

    @app.get("/v2/service_instances/{instance_guid}", response_model=ServiceInstanceRecord)
    async def get_service_instance(
        instance_guid: str,
        _: str = Depends(verify_api_token),
        session: AsyncSession = Depends(get_session),
    ) -> ServiceInstanceRecord:
        REQUEST_COUNTER.inc()
        row = await db.get_instance(session, instance_guid)
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service instance not found")
        return _instance_record(row)

    @app.get("/v2/service_instances", response_model=list[ServiceInstanceRecord])
    async def list_service_instances(
        space_guid: Optional[str] = None,
        limit: int = 100,
        _: str = Depends(verify_api_token),
        session: AsyncSession = Depends(get_session),
    ) -> list[ServiceInstanceRecord]:
        REQUEST_COUNTER.inc()
        rows = await db.list_instances(session, space_guid=space_guid, limit=limit)
        return [_instance_record(row) for row in rows]

    @app.get("/v2/orphans", response_model=list[OrphanRecord])
    async def list_orphaned_instances(
        limit: int = 100,
        _: str = Depends(verify_api_token),
        session: AsyncSession = Depends(get_session),
    ) -> list[OrphanRecord]:
        REQUEST_COUNTER.inc()
        rows = await db.list_orphans(session, limit=max(1, min(limit, 500)))
        return [OrphanRecord.model_validate(row) for row in rows]

    @app.get("/api/status", status_code=status.HTTP_200_OK)
    async def service_status(
        _: str = Depends(verify_api_token),
        session: AsyncSession = Depends(get_session),
    ) -> dict[str, object]:
        REQUEST_COUNTER.inc()
        pending = await db.count_pending_jobs(session)
        return {
            "pending_jobs": sum(pending.values()),
            "jobs_by_kind": pending,
        }

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(
        request: Request,
        settings: ControlPlaneSettings = Depends(get_settings),
    ) -> PlainTextResponse:
        require_metrics_access(request, settings.metrics_token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    return app
