"""FastAPI application serving a bucket as a static site."""

from __future__ import annotations

import asyncio
import contextlib
import time
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse

from ..common.http_security import require_metrics_access
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.settings import SpraySettings
from .metrics import SiteMetrics
from .server import ContentServer, ServingContext
from .storage import ObjectStore, build_store

LOGGER = structlog.get_logger("spray.site.app")

SERVICE_NAME = "spray.site"
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


def get_context(request: Request) -> ServingContext:
    return request.app.state.serving_context  # type: ignore[attr-defined]


def get_server(request: Request) -> ContentServer:
    return request.app.state.content_server  # type: ignore[attr-defined]


async def reload_periodically(context: ServingContext, interval: float) -> None:
    """Refresh site configuration; a failed reload keeps serving the previous snapshot."""
    while True:
        await asyncio.sleep(interval)
        try:
            config = await context.reload()
        except Exception as exc:  # noqa: BLE001 - keep the last good snapshot
            LOGGER.error("config_reload_failed", bucket=context.bucket_name, error=str(exc), exc_info=exc)
        else:
            LOGGER.debug("config_reloaded", bucket=context.bucket_name, redirect_count=len(config.redirects))


def create_app(settings: Optional[SpraySettings] = None, store: Optional[ObjectStore] = None) -> FastAPI:
    settings = settings or SpraySettings()
    configure_logging(SERVICE_NAME, settings.log_level, bucket=settings.site_label)
    provider = configure_tracing(
        service_name=SERVICE_NAME,
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
        resource_attributes={"spray.bucket": settings.site_label},
    )
    store = store or build_store(settings)
    context = ServingContext(settings, store, SiteMetrics())
    server = ContentServer(context)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # config errors other than missing objects or permissions abort startup
        await context.reload()
        LOGGER.info("site_ready", bucket=context.bucket_name, storage=store.describe())
        reload_task: asyncio.Task | None = None
        if settings.config_reload_seconds > 0:
            reload_task = asyncio.create_task(reload_periodically(context, settings.config_reload_seconds))
        try:
            yield
        finally:
            if reload_task is not None:
                reload_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reload_task

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.serving_context = context
    app.state.content_server = server
    instrument_fastapi_app(app, provider)

    @app.middleware("http")
    async def log_unhandled(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            return await call_next(request)
        except Exception:
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                user_agent=request.headers.get("user-agent", ""),
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            raise

    @app.get("/metrics")
    async def metrics_endpoint(request: Request, context: ServingContext = Depends(get_context)) -> Response:
        token = context.settings.metrics_token.get_secret_value() if context.settings.metrics_token else None
        require_metrics_access(request, token)
        return Response(context.metrics.render(), media_type=PROMETHEUS_CONTENT_TYPE)

    @app.get("/readyz", response_class=PlainTextResponse)
    async def readyz() -> PlainTextResponse:
        return PlainTextResponse("ok")

    @app.get("/livez", response_class=PlainTextResponse)
    async def livez() -> PlainTextResponse:
        return PlainTextResponse("ok")

    @app.api_route("/config/redirects", methods=ALL_METHODS)
    async def config_redirects(request: Request, context: ServingContext = Depends(get_context)) -> Response:
        if request.method != "GET":
            return PlainTextResponse("Method not allowed", status_code=status.HTTP_405_METHOD_NOT_ALLOWED)
        redirects = context.config.redirects
        LOGGER.info(
            "config_redirects",
            path="/config/redirects",
            bucket=context.bucket_name,
            redirect_count=len(redirects),
        )
        return JSONResponse(
            {
                "redirects": dict(redirects.rules),
                "count": len(redirects),
                "config_source": context.loader.redirects_source,
                "bucket_name": context.bucket_name,
            }
        )

    @app.api_route("/{site_path:path}", methods=["GET", "HEAD"], include_in_schema=False)
    async def serve_site(request: Request, server: ContentServer = Depends(get_server)) -> Response:
        return await server.serve(request)

    return app
