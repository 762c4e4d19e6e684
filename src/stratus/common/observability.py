"""Logging and tracing setup shared by the Stratus processes.

Every log line is JSON, carries the id of the span it was written under and
has sensitive fields and configured secret values masked.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
try:  # pragma: no cover - optional dependency
    from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
except ModuleNotFoundError:  # pragma: no cover - httpx-tracing extra not installed
    HTTPXClientInstrumentor = None  # type: ignore[assignment]
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from structlog.contextvars import bind_contextvars
from structlog.typing import EventDict, WrappedLogger

MASK = "***REDACTED***"
SENSITIVE_KEYS = frozenset(
    {"credentials", "password", "auth_password", "client_secret", "secret", "access_token", "parameters"}
)

_logging_configured = False
_tracer_configured = False


def _log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        numeric = logging.getLevelName(level.strip().upper())
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def add_trace_context(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp the current span's ids so log lines join up with traces."""

    context = trace.get_current_span().get_span_context()
    if context.is_valid:
        event_dict.setdefault("trace_id", trace.format_trace_id(context.trace_id))
        event_dict.setdefault("span_id", trace.format_span_id(context.span_id))
    return event_dict


class SecretMasker:
    """structlog processor hiding sensitive keys and known secret values."""

    def __init__(self, secrets: Iterable[Optional[str]] = ()) -> None:
        self._secrets = sorted({value for value in secrets if value}, key=len, reverse=True)

    def _mask(self, key: Optional[str], value: Any) -> Any:
        if key is not None and key.lower() in SENSITIVE_KEYS and value:
            return MASK
        if isinstance(value, dict):
            return {k: self._mask(str(k), v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._mask(None, item) for item in value]
        if isinstance(value, str):
            for secret in self._secrets:
                value = value.replace(secret, MASK)
        return value

    def __call__(self, logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        return {key: self._mask(key, value) for key, value in event_dict.items()}


def configure_logging(
    service_name: str,
    level: str | int | None = None,
    secrets: Iterable[Optional[str]] = (),
) -> None:
    """Route structlog through stdlib logging and render JSON lines."""

    global _logging_configured
    numeric_level = _log_level(level)
    if not _logging_configured:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _logging_configured = True
    else:
        logging.getLogger().setLevel(numeric_level)
    # httpx logs every request at INFO, which duplicates the broker call logs
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            add_trace_context,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.dict_tracebacks,
            SecretMasker(secrets),
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    if not headers:
        return {}
    result: Dict[str, str] = {}
    for item in headers.split(","):
        key, _, value = item.partition("=")
        if key.strip() and value.strip():
            result[key.strip()] = value.strip()
    return result


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
) -> None:
    """Install a tracer provider once per process.

    Sampling follows the parent span when one is present.
    """

    global _tracer_configured
    if _tracer_configured:
        return
    if isinstance(trace.get_tracer_provider(), TracerProvider):
        _tracer_configured = True
        return

    ratio = max(0.0, min(1.0, sampler_ratio))
    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name, "service.namespace": "stratus"}),
        sampler=ParentBased(TraceIdRatioBased(ratio)),
    )
    if endpoint:
        exporter = OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers))
        provider.add_span_processor(BatchSpanProcessor(exporter))
    else:
        provider.add_span_processor(SimpleSpanProcessor(InMemorySpanExporter()))
    trace.set_tracer_provider(provider)
    _tracer_configured = True

    if HTTPXClientInstrumentor is not None:
        HTTPXClientInstrumentor().instrument()


def instrument_fastapi_app(app) -> None:
    """Attach OpenTelemetry instrumentation to a FastAPI app.

    Health and metrics scrapes are not traced.
    """

    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=trace.get_tracer_provider(),
        excluded_urls="healthz,metrics",
    )
