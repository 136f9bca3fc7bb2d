"""Logging and tracing setup shared by spray processes.

Every log line is a single JSON object on stdlib logging. The event name is
carried as ``message`` and the severity as ``level``, so shippers can route
warnings (missing optional config objects, 404s) apart from errors (storage
failures, recovered crashes). Values passed as ``context`` to
``configure_logging`` are bound once and appear on every line, which is how
the served bucket ends up on logs emitted outside a request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import structlog
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from structlog.contextvars import bind_contextvars

UNTRACED_ROUTES = "readyz,livez,metrics"


@dataclass
class _Setup:
    root_handler_installed: bool = False
    tracer_provider: Optional[TracerProvider] = None


STATE = _Setup()


def resolve_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    return logging.getLevelNamesMapping().get((level or "").strip().upper(), logging.INFO)


def _json_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.dict_tracebacks,
        structlog.processors.EventRenamer("message"),
        structlog.processors.JSONRenderer(),
    ]


def configure_logging(service_name: str, level: str | int | None = None, **context: Any) -> None:
    numeric = resolve_level(level)
    if not STATE.root_handler_installed:
        logging.basicConfig(format="%(message)s")
        STATE.root_handler_installed = True
    logging.getLogger().setLevel(numeric)

    structlog.configure(
        processors=_json_processors(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name, **context)


def span_exporter(endpoint: Optional[str], headers: Optional[str] = None) -> Optional[OTLPSpanExporter]:
    """OTLP/HTTP exporter for ``endpoint``; ``headers`` is ``key=value`` pairs joined by commas."""
    if not endpoint:
        return None
    pairs = [item.split("=", 1) for item in (headers or "").split(",") if "=" in item]
    return OTLPSpanExporter(endpoint=endpoint, headers={key.strip(): value.strip() for key, value in pairs})


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
    resource_attributes: Optional[dict[str, str]] = None,
) -> TracerProvider:
    """Return the process tracer provider, installing it on first use.

    Without an endpoint spans are still sampled and propagated but never leave
    the process.
    """
    if STATE.tracer_provider is not None:
        return STATE.tracer_provider

    current = trace.get_tracer_provider()
    if isinstance(current, TracerProvider):
        STATE.tracer_provider = current
        return current

    ratio = min(max(sampler_ratio, 0.0), 1.0)
    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name, **(resource_attributes or {})}),
        sampler=ParentBased(TraceIdRatioBased(ratio)),
    )
    exporter = span_exporter(endpoint, headers)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    STATE.tracer_provider = provider
    return provider


def instrument_fastapi_app(app: FastAPI, provider: Optional[TracerProvider] = None) -> None:
    if getattr(app.state, "otel_instrumented", False):
        return
    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=provider or trace.get_tracer_provider(),
        excluded_urls=UNTRACED_ROUTES,
    )
    app.state.otel_instrumented = True
