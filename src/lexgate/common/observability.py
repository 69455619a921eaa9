"""Logging and tracing setup for Lexgate services."""

from __future__ import annotations

import hashlib
import logging
import uuid
from typing import Dict, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from structlog.contextvars import bind_contextvars, unbind_contextvars


_logging_configured = False
_tracer_configured = False
_httpx_instrumented = False

# Keys bound per request; everything else (e.g. service) lives for the process.
_REQUEST_CONTEXT_KEYS = ("request_id", "bucket_class", "subject_hash", "resource_key")


def _log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        numeric = logging.getLevelName(level.strip().upper())
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def configure_logging(service_name: str, level: str | int | None = None) -> None:
    """Configure structlog for JSON structured logging."""

    global _logging_configured
    numeric_level = _log_level(level)
    if not _logging_configured:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _logging_configured = True
    else:
        logging.getLogger().setLevel(numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


def bind_request_context(request_id: Optional[str] = None, **values: object) -> str:
    """Start a fresh request log context with a correlation id (and extra values)."""

    unbind_contextvars(*_REQUEST_CONTEXT_KEYS)
    request_id = request_id or uuid.uuid4().hex
    bind_contextvars(request_id=request_id, **values)
    return request_id


def subject_fingerprint(subject_id: str) -> str:
    """Short stable handle for a user id in logs and spans."""
    return hashlib.sha256(subject_id.encode("utf-8")).hexdigest()[:16]


def annotate_content_request(
    bucket_class: str, subject_id: Optional[str] = None, resource_key: Optional[str] = None
) -> None:
    """Attach gateway context to the active span and the request log context."""

    context: Dict[str, str] = {"bucket_class": bucket_class}
    if subject_id:
        context["subject_hash"] = subject_fingerprint(subject_id)
    if resource_key:
        context["resource_key"] = resource_key
    span = trace.get_current_span()
    if span.is_recording():
        span.set_attributes({f"lexgate.{name}": value for name, value in context.items()})
    bind_contextvars(**context)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    if not headers:
        return {}
    result: Dict[str, str] = {}
    for item in headers.split(","):
        if not item.strip():
            continue
        key, _, value = item.partition("=")
        if key and value:
            result[key.strip()] = value.strip()
    return result


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
) -> None:
    """Install the tracer provider; spans are exported only when an OTLP endpoint is set."""

    global _tracer_configured
    if _tracer_configured:
        return

    if isinstance(trace.get_tracer_provider(), TracerProvider):
        _tracer_configured = True
        return

    resource = Resource.create({"service.name": service_name})
    sampler_ratio = max(0.0, min(1.0, sampler_ratio))
    provider = TracerProvider(resource=resource, sampler=ParentBased(TraceIdRatioBased(sampler_ratio)))
    if endpoint:
        exporter = OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers))
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _tracer_configured = True

    global _httpx_instrumented
    if not _httpx_instrumented:
        HTTPXClientInstrumentor().instrument()
        _httpx_instrumented = True


def instrument_fastapi_app(app) -> None:
    """Attach OpenTelemetry instrumentation to a FastAPI app once."""

    if getattr(app, "_is_instrumented_by_opentelemetry", False):
        return
    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=trace.get_tracer_provider(),
        excluded_urls="healthz,metrics",
    )
