"""Request-serving pipeline: resolve, redirect, fetch, validate, stream."""

from __future__ import annotations

import asyncio
import time
from typing import AsyncIterator, Optional

import structlog
from fastapi import Request, status
from fastapi.responses import RedirectResponse, Response, StreamingResponse
from opentelemetry import trace

from .. import __version__
from ..common.settings import SpraySettings
from .cache_policy import BYPASS, CacheDecision, decide, should_apply_cache
from .config import ConfigLoader, HeaderConfig, SiteConfig
from .error_pages import ErrorResponder
from .errors import CopyError, InvalidPath, ObjectNotFound, PanicError, PermissionDenied, StorageError
from .metrics import SiteMetrics
from .paths import resolve_path
from .storage import ObjectStore, StoredObject

TRACER = trace.get_tracer("spray.site")

MSG_INVALID_PATH = "The requested path is invalid."
MSG_NOT_FOUND = "The requested resource was not found."
MSG_PERMISSION = "The service is temporarily unavailable due to a configuration issue. Please try again later."
MSG_UNAVAILABLE = "The service is temporarily unavailable. Please try again later."
MSG_INTERNAL = "An unexpected error occurred. Please try again later."

# nginx convention for a client that went away before the response finished
STATUS_CLIENT_CLOSED = 499


def resolve_powered_by(env_value: Optional[str], headers: Optional[HeaderConfig], version: str = __version__) -> str:
    """Value for ``X-Powered-By``; an empty string means the header is not sent.

    An operator who sets the environment value to the empty string disables
    the header for every site. Otherwise a site may opt out through
    ``powered_by.enabled = false`` in its header config.
    """
    if env_value == "":
        return ""
    value = env_value if env_value is not None else f"spray/{version}"
    if headers is not None and not headers.powered_by.enabled:
        return ""
    return value


def request_target_path(request: Request) -> bytes:
    """The undecoded bytes of the request target path, query string removed."""
    raw = request.scope.get("raw_path")
    if raw:
        return raw.split(b"?", 1)[0]
    return request.url.path.encode("utf-8")


class ServingContext:
    """Everything a request handler needs, built once at startup.

    Site configuration is held as an immutable ``SiteConfig`` snapshot; a reload
    builds a complete new snapshot and swaps the reference, so a request that
    read ``config`` keeps a consistent view until it finishes.
    """

    def __init__(
        self,
        settings: SpraySettings,
        store: ObjectStore,
        metrics: SiteMetrics,
        config: Optional[SiteConfig] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.metrics = metrics
        self.bucket_name = settings.site_label
        self.loader = ConfigLoader(store, settings.config_prefix, metrics, self.bucket_name)
        self._config = config or SiteConfig()

    @property
    def config(self) -> SiteConfig:
        return self._config

    def publish(self, config: SiteConfig) -> None:
        self._config = config

    async def reload(self) -> SiteConfig:
        config = await self.loader.load()
        self.publish(config)
        return config


class ContentServer:
    def __init__(self, context: ServingContext) -> None:
        self._context = context
        self._metrics = context.metrics
        self._bucket = context.bucket_name
        self._errors = ErrorResponder(context.metrics, context.bucket_name)
        self._logger = structlog.get_logger("spray.site").bind(bucket=context.bucket_name)

    async def serve(self, request: Request) -> Response:
        start = time.perf_counter()
        snapshot = self._context.config
        self._logger.info(
            "incoming_request",
            path=request.url.path,
            method=request.method,
            user_agent=request.headers.get("user-agent", ""),
            remote_ip=request.client.host if request.client else "",
            accept=request.headers.get("accept", ""),
        )

        base_headers: dict[str, str] = {}
        powered_by = resolve_powered_by(self._context.settings.powered_by_header, snapshot.headers)
        if powered_by:
            base_headers["X-Powered-By"] = powered_by

        # a streamed body owns the gauge until the last chunk is written
        self._metrics.active_requests.labels(bucket_name=self._bucket).inc()
        streamed = False
        try:
            with TRACER.start_as_current_span("spray.serve", attributes={"http.target": request.url.path}) as span:
                response, streamed = await self._handle(request, snapshot, base_headers, start)
                span.set_attribute("http.status_code", response.status_code)
        except Exception as exc:  # noqa: BLE001 - a crash must never take the process down
            response = self._recover(request, exc, base_headers)
        finally:
            if not streamed:
                self._metrics.active_requests.labels(bucket_name=self._bucket).dec()

        if not streamed:
            self._complete(request, response.status_code, start)
        return response

    async def _handle(
        self, request: Request, snapshot: SiteConfig, base_headers: dict[str, str], start: float
    ) -> tuple[Response, bool]:
        target = request_target_path(request)
        try:
            key = resolve_path(target)
        except InvalidPath as exc:
            response = self._fail(
                request, target.decode("latin-1"), status.HTTP_400_BAD_REQUEST, MSG_INVALID_PATH, exc, base_headers
            )
            return response, False

        destination = snapshot.redirects.match(key)
        if destination is not None:
            return self._redirect(request, key, destination, base_headers), False

        stored = await self._fetch(request, key, base_headers)
        if isinstance(stored, Response):
            return stored, False

        try:
            return self._respond_with_object(request, key, stored, snapshot, base_headers, start)
        except BaseException:
            stored.body.close()
            raise

    def _respond_with_object(
        self,
        request: Request,
        key: str,
        stored: StoredObject,
        snapshot: SiteConfig,
        base_headers: dict[str, str],
        start: float,
    ) -> tuple[Response, bool]:
        attrs = stored.attrs
        self._metrics.object_size.labels(bucket_name=self._bucket).observe(attrs.size)

        cache_config = snapshot.headers.cache
        remote_addr = request.client.host if request.client else ""
        user_agent = request.headers.get("user-agent", "")
        if should_apply_cache(remote_addr, user_agent, key, cache_config):
            decision = decide(request.headers, attrs, key, cache_config)
            self._metrics.cache_headers_set.labels(
                bucket_name=self._bucket, content_type=attrs.content_type, cache_policy=decision.policy
            ).inc()
        else:
            decision = BYPASS
            self._metrics.cache_status.labels(bucket_name=self._bucket, path=key, status="bypass").inc()

        headers = {**base_headers, **decision.headers()}
        if decision.not_modified:
            return self._not_modified(request, key, stored, decision, headers, start), False

        if decision.applies:
            self._record_cache_miss(request, key)

        headers["Content-Type"] = attrs.content_type
        headers["Content-Length"] = str(attrs.size)
        if request.method == "HEAD":
            return self._head(request, key, stored, decision, headers, start), False
        body = self._stream(request, key, stored, decision, start)
        return StreamingResponse(body, status_code=status.HTTP_200_OK, headers=headers), True

    async def _fetch(self, request: Request, key: str, base_headers: dict[str, str]) -> StoredObject | Response:
        fetch_start = time.perf_counter()
        try:
            with TRACER.start_as_current_span("spray.get_object", attributes={"spray.key": key}):
                return await self._context.store.get_object(key)
        except ObjectNotFound as exc:
            response = self._fail(request, key, status.HTTP_404_NOT_FOUND, MSG_NOT_FOUND, exc, base_headers)
        except PermissionDenied as exc:
            response = self._fail(
                request, key, status.HTTP_500_INTERNAL_SERVER_ERROR, MSG_PERMISSION, exc, base_headers
            )
        except StorageError as exc:
            response = self._fail(
                request, key, status.HTTP_500_INTERNAL_SERVER_ERROR, MSG_UNAVAILABLE, exc, base_headers
            )
        except InvalidPath as exc:
            response = self._fail(request, key, status.HTTP_400_BAD_REQUEST, MSG_INVALID_PATH, exc, base_headers)
        finally:
            self._metrics.storage_latency.labels(bucket_name=self._bucket, operation="get_object").observe(
                time.perf_counter() - fetch_start
            )
        return response

    def _fail(
        self,
        request: Request,
        key: str,
        status_code: int,
        message: str,
        error: BaseException,
        headers: dict[str, str],
    ) -> Response:
        return self._errors.respond(request, key, status_code, message, error, headers)

    def _redirect(self, request: Request, key: str, destination: str, headers: dict[str, str]) -> Response:
        started = time.perf_counter()
        status_code = self._context.settings.redirect_status_code
        self._logger.info("redirect", path=key, destination=destination, status=status_code)
        self._metrics.requests_total.labels(
            bucket_name=self._bucket, path=key, method=request.method, status=str(status_code)
        ).inc()
        self._metrics.redirect_hits.labels(bucket_name=self._bucket, path=key, destination=destination).inc()
        response = RedirectResponse(destination, status_code=status_code, headers=headers)
        self._metrics.redirect_latency.labels(bucket_name=self._bucket).observe(time.perf_counter() - started)
        return response

    def _not_modified(
        self,
        request: Request,
        key: str,
        stored: StoredObject,
        decision: CacheDecision,
        headers: dict[str, str],
        start: float,
    ) -> Response:
        # the body is never read; the store only served metadata
        stored.body.close()
        self._metrics.cache_status.labels(bucket_name=self._bucket, path=key, status="hit").inc()
        self._metrics.conditional_requests.labels(
            bucket_name=self._bucket, type=decision.condition, result="hit"
        ).inc()
        self._metrics.requests_total.labels(
            bucket_name=self._bucket, path=key, method=request.method, status="304"
        ).inc()
        self._metrics.storage_operations_skipped.labels(bucket_name=self._bucket, operation="content_download").inc()
        self._logger.info(
            "cache_hit",
            path=key,
            status=304,
            condition=decision.condition,
            content_type=stored.attrs.content_type,
            cache_policy=decision.policy,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers=headers)

    def _head(
        self,
        request: Request,
        key: str,
        stored: StoredObject,
        decision: CacheDecision,
        headers: dict[str, str],
        start: float,
    ) -> Response:
        stored.body.close()
        self._metrics.requests_total.labels(
            bucket_name=self._bucket, path=key, method=request.method, status="200"
        ).inc()
        self._logger.info(
            "serve_request",
            path=key,
            status=200,
            bytes_served=0,
            content_type=stored.attrs.content_type,
            cache_policy=decision.policy,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return Response(status_code=status.HTTP_200_OK, headers=headers)

    def _record_cache_miss(self, request: Request, key: str) -> None:
        self._metrics.cache_status.labels(bucket_name=self._bucket, path=key, status="miss").inc()
        if request.headers.get("if-none-match"):
            condition = "etag"
        elif request.headers.get("if-modified-since"):
            condition = "last_modified"
        else:
            return
        self._metrics.conditional_requests.labels(bucket_name=self._bucket, type=condition, result="miss").inc()

    async def _stream(
        self,
        request: Request,
        key: str,
        stored: StoredObject,
        decision: CacheDecision,
        start: float,
    ) -> AsyncIterator[bytes]:
        written = 0
        status_code = status.HTTP_200_OK
        try:
            async for chunk in stored.body.iter_chunks(self._context.settings.stream_chunk_bytes):
                written += len(chunk)
                yield chunk
        except (GeneratorExit, asyncio.CancelledError):
            status_code = STATUS_CLIENT_CLOSED
            self._logger.warning("client_disconnected", path=key, status=status_code, bytes_served=written)
            self._metrics.requests_total.labels(
                bucket_name=self._bucket, path=key, method=request.method, status=str(status_code)
            ).inc()
            self._metrics.bytes_transferred.labels(
                bucket_name=self._bucket, path=key, method=request.method, direction="download"
            ).inc(written)
            raise
        except Exception as exc:  # noqa: BLE001 - headers are already sent, log and stop
            status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
            error = CopyError(f"error copying object contents: {exc}")
            self._logger.error(
                "copy_contents",
                path=key,
                status=status_code,
                bytes_served=written,
                error=str(error),
                error_type=error.error_type,
            )
            self._metrics.errors_total.labels(bucket_name=self._bucket, path=key, error_type=error.error_type).inc()
            self._metrics.requests_total.labels(
                bucket_name=self._bucket, path=key, method=request.method, status=str(status_code)
            ).inc()
        else:
            self._metrics.requests_total.labels(
                bucket_name=self._bucket, path=key, method=request.method, status=str(status_code)
            ).inc()
            self._metrics.bytes_transferred.labels(
                bucket_name=self._bucket, path=key, method=request.method, direction="download"
            ).inc(written)
            self._logger.info(
                "serve_request",
                path=key,
                status=status_code,
                bytes_served=written,
                content_type=stored.attrs.content_type,
                cache_policy=decision.policy,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
        finally:
            stored.body.close()
            self._metrics.active_requests.labels(bucket_name=self._bucket).dec()
            self._complete(request, status_code, start)

    def _recover(self, request: Request, exc: Exception, headers: dict[str, str]) -> Response:
        self._logger.error(
            "panic_recovery",
            method=request.method,
            path=request.url.path,
            user_agent=request.headers.get("user-agent", ""),
            error=repr(exc),
            exc_info=exc,
        )
        return self._errors.respond(
            request,
            request.url.path,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            MSG_INTERNAL,
            PanicError(exc),
            headers,
        )

    def _complete(self, request: Request, status_code: int, start: float) -> None:
        duration = time.perf_counter() - start
        self._metrics.request_duration.labels(bucket_name=self._bucket, method=request.method).observe(duration)
        self._logger.info(
            "request_completed",
            path=request.url.path,
            method=request.method,
            status=status_code,
            duration_ms=round(duration * 1000, 2),
        )
