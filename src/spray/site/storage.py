"""Object store backends the site is served from: S3-compatible buckets or a local directory."""

from __future__ import annotations

import asyncio
import mimetypes
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional

import boto3
import structlog
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from botocore.exceptions import ConnectionError as BotoConnectionError

from ..common.settings import SpraySettings
from .errors import (
    InvalidPath,
    ObjectNotFound,
    PermissionDenied,
    StorageConnectionError,
    StorageError,
    StorageTimeout,
)

LOGGER = structlog.get_logger("spray.storage")

DEFAULT_CONTENT_TYPE = "application/octet-stream"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
PERMISSION_CODES = {"403", "AccessDenied", "Forbidden", "AllAccessDisabled", "InvalidAccessKeyId"}


def guess_content_type(key: str) -> str:
    content_type, _ = mimetypes.guess_type(key, strict=False)
    return content_type or DEFAULT_CONTENT_TYPE


@dataclass(frozen=True)
class ObjectAttrs:
    name: str
    content_type: str
    size: int
    updated: datetime


class ObjectBody:
    """Async view over a blocking reader exposing ``read(n)`` and ``close()``."""

    def __init__(self, reader: Any) -> None:
        self._reader = reader
        self._closed = False

    async def iter_chunks(self, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await asyncio.to_thread(self._reader.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            self.close()

    async def read_all(self) -> bytes:
        try:
            return await asyncio.to_thread(self._reader.read)
        finally:
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._reader.close()

    @property
    def closed(self) -> bool:
        return self._closed


@dataclass
class StoredObject:
    attrs: ObjectAttrs
    body: ObjectBody


class ObjectStore:
    async def get_object(self, key: str) -> StoredObject:  # pragma: no cover - interface
        raise NotImplementedError

    def describe(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError


class CircuitBreaker:
    def __init__(self, failure_threshold: int, reset_timeout: float):
        self._failure_threshold = max(1, failure_threshold)
        self._reset_timeout = max(0.0, reset_timeout)
        self._failure_count = 0
        self._opened_at: float | None = None

    def _maybe_reset(self) -> None:
        if self._opened_at is None:
            return
        if time.monotonic() - self._opened_at >= self._reset_timeout:
            self._opened_at = None
            self._failure_count = 0

    def allow_request(self) -> bool:
        self._maybe_reset()
        return self._opened_at is None

    def record_success(self) -> None:
        self._failure_count = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._failure_count >= self._failure_threshold:
            self._opened_at = time.monotonic()

    @property
    def is_open(self) -> bool:
        self._maybe_reset()
        return self._opened_at is not None


def translate_s3_error(exc: Exception, key: str) -> StorageError:
    if isinstance(exc, ClientError):
        code = str(exc.response.get("Error", {}).get("Code", ""))
        if code in NOT_FOUND_CODES:
            return ObjectNotFound(key)
        if code in PERMISSION_CODES:
            return PermissionDenied(f"access denied reading {key!r}: {exc}")
        return StorageError(f"s3 error {code or 'unknown'} reading {key!r}: {exc}")
    if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError)):
        return StorageTimeout(f"timeout reading {key!r}: {exc}")
    if isinstance(exc, (EndpointConnectionError, BotoConnectionError)):
        return StorageConnectionError(f"connection error reading {key!r}: {exc}")
    return StorageError(f"storage error reading {key!r}: {exc}")


class S3ObjectStore(ObjectStore):
    def __init__(self, settings: SpraySettings):
        self._settings = settings
        session = boto3.session.Session()
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": settings.s3_region,
        }
        self._client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._bucket = settings.bucket_name
        self._max_retries = max(0, settings.s3_max_retries)
        self._retry_base = max(0.0, settings.s3_retry_base_seconds)
        self._retry_max = max(self._retry_base, settings.s3_retry_max_seconds)
        self._breaker = CircuitBreaker(
            failure_threshold=settings.s3_circuit_breaker_failures,
            reset_timeout=settings.s3_circuit_breaker_reset_seconds,
        )

    async def get_object(self, key: str) -> StoredObject:
        response = await self._call_with_retry(key, self._client.get_object, Bucket=self._bucket, Key=key)
        updated = response.get("LastModified") or EPOCH
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        attrs = ObjectAttrs(
            name=key,
            content_type=response.get("ContentType") or guess_content_type(key),
            size=int(response.get("ContentLength") or 0),
            updated=updated,
        )
        return StoredObject(attrs=attrs, body=ObjectBody(response["Body"]))

    def describe(self) -> dict[str, object]:
        return {
            "backend": "s3",
            "bucket": self._bucket,
            "endpoint": self._settings.s3_endpoint_url,
            "circuit_open": self._breaker.is_open,
        }

    async def _call_with_retry(self, key: str, func: Callable[..., Any], **kwargs) -> Any:
        if not self._breaker.allow_request():
            raise StorageError("storage backend temporarily unavailable (circuit open)")

        attempt = 0
        while True:
            try:
                result = await asyncio.to_thread(func, **kwargs)
            except Exception as exc:  # noqa: BLE001 - translated below
                error = translate_s3_error(exc, key)
                if isinstance(error, (ObjectNotFound, PermissionDenied)):
                    self._breaker.record_success()
                    raise error from exc
                attempt += 1
                if attempt > self._max_retries:
                    self._breaker.record_failure()
                    raise error from exc
                delay = min(self._retry_base * (2 ** (attempt - 1)), self._retry_max)
                LOGGER.debug("storage_retry", key=key, attempt=attempt, delay=delay, error=str(exc))
                if delay:
                    await asyncio.sleep(delay)
            else:
                self._breaker.record_success()
                return result


def sanitize_key(root: Path, key: str) -> Path:
    root = root.resolve()
    candidate = root.joinpath(*key.split("/"))
    resolved = candidate.resolve(strict=False)
    if not resolved.is_relative_to(root):
        raise InvalidPath(f"key {key!r} escapes the storage root")
    return resolved


class LocalObjectStore(ObjectStore):
    """Serves a directory tree; used for local development."""

    def __init__(self, root: Path):
        self._root = root

    async def get_object(self, key: str) -> StoredObject:
        path = sanitize_key(self._root, key)
        try:
            handle, stat = await asyncio.to_thread(self._open, path)
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as exc:
            raise ObjectNotFound(key) from exc
        except PermissionError as exc:
            raise PermissionDenied(f"permission denied reading {key!r}: {exc}") from exc
        except OSError as exc:
            raise StorageError(f"error reading {key!r}: {exc}") from exc
        attrs = ObjectAttrs(
            name=key,
            content_type=guess_content_type(key),
            size=stat.st_size,
            updated=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )
        return StoredObject(attrs=attrs, body=ObjectBody(handle))

    @staticmethod
    def _open(path: Path):
        if path.is_dir():
            raise IsADirectoryError(str(path))
        handle = path.open("rb")
        try:
            stat = path.stat()
        except OSError:
            handle.close()
            raise
        return handle, stat

    def describe(self) -> dict[str, object]:
        return {"backend": "local", "storage_path": str(self._root)}


def build_store(settings: SpraySettings) -> ObjectStore:
    if settings.bucket_name:
        return S3ObjectStore(settings)
    return LocalObjectStore(settings.storage_path)
