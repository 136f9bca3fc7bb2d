"""Site configuration objects read from the bucket (``redirects.toml`` and ``headers.toml``)."""

from __future__ import annotations

import re
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigInvalidURL, ConfigLoadError, ConfigParseError, ObjectNotFound, PermissionDenied, StorageError
from .metrics import SiteMetrics
from .redirects import RedirectTable
from .storage import ObjectStore

LOGGER = structlog.get_logger("spray.config")
TRACER = trace.get_tracer("spray.config")

REDIRECTS_FILE = "redirects.toml"
HEADERS_FILE = "headers.toml"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class Toggle(_Frozen):
    enabled: bool = True


class CachePolicies(_Frozen):
    short_max_age: int = Field(300, ge=0)
    medium_max_age: int = Field(86400, ge=0)
    long_max_age: int = Field(31536000, ge=0)


class RolloutConfig(_Frozen):
    enabled: bool = False
    percentage: int = Field(100, ge=0, le=100)
    path_prefixes: tuple[str, ...] = ()
    exclude_prefixes: tuple[str, ...] = ()
    # compiled once here so requests never recompile
    user_agent_rules: tuple[re.Pattern[str], ...] = ()


class CacheConfig(_Frozen):
    enabled: bool = False
    etag: Toggle = Toggle()
    last_modified: Toggle = Toggle()
    cache_control: Toggle = Toggle()
    policies: CachePolicies = CachePolicies()
    rollout: RolloutConfig = RolloutConfig()


class HeaderConfig(_Frozen):
    powered_by: Toggle = Toggle()
    cache: CacheConfig = CacheConfig()


DEFAULT_HEADER_CONFIG = HeaderConfig()


@dataclass(frozen=True)
class SiteConfig:
    """Snapshot of everything a request reads from site configuration."""

    redirects: RedirectTable = field(default_factory=RedirectTable)
    headers: HeaderConfig = DEFAULT_HEADER_CONFIG
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ConfigLoader:
    def __init__(self, store: ObjectStore, prefix: str, metrics: SiteMetrics, bucket_name: str) -> None:
        self._store = store
        self._prefix = prefix.strip("/")
        self._metrics = metrics
        self._bucket_name = bucket_name

    def config_path(self, filename: str) -> str:
        return f"{self._prefix}/{filename}" if self._prefix else filename

    @property
    def redirects_source(self) -> str:
        return self.config_path(REDIRECTS_FILE)

    async def load(self) -> SiteConfig:
        with TRACER.start_as_current_span("spray.config.load"):
            redirects = await self.load_redirects()
            headers = await self.load_headers()
        LOGGER.info(
            "config_loaded",
            bucket=self._bucket_name,
            redirect_count=len(redirects),
            cache_enabled=headers.cache.enabled,
            rollout_enabled=headers.cache.rollout.enabled,
        )
        return SiteConfig(redirects=redirects, headers=headers)

    async def load_redirects(self) -> RedirectTable:
        path = self.config_path(REDIRECTS_FILE)
        document = await self._read_toml(path, "load_redirects")
        if document is None:
            return RedirectTable()
        raw = document.get("redirects", {})
        if not isinstance(raw, dict):
            self._count_error("parse_error")
            raise ConfigParseError(f"error parsing redirects file at {path}: [redirects] must be a table")
        try:
            return RedirectTable.from_mapping(raw)
        except ConfigInvalidURL:
            self._count_error("invalid_url")
            raise

    async def load_headers(self) -> HeaderConfig:
        path = self.config_path(HEADERS_FILE)
        document = await self._read_toml(path, "load_headers")
        if document is None:
            return DEFAULT_HEADER_CONFIG
        try:
            return HeaderConfig.model_validate(document)
        except ValidationError as exc:
            self._count_error("parse_error")
            raise ConfigParseError(f"error parsing headers file at {path}: {exc}") from exc

    async def _read_toml(self, path: str, operation: str) -> dict[str, Any] | None:
        """Return the parsed document, or ``None`` when defaults should apply."""
        try:
            stored = await self._store.get_object(path)
            payload = await stored.body.read_all()
        except ObjectNotFound:
            return None
        except PermissionDenied as exc:
            # optional config: never block startup on missing read access
            self._count_error("permission_denied")
            LOGGER.warning(
                "config_permission_denied",
                operation=operation,
                path=path,
                bucket=self._bucket_name,
                error=str(exc),
                error_type="permission_denied",
            )
            return None
        except StorageError as exc:
            self._count_error("read_error")
            raise ConfigLoadError(f"error reading {path}: {exc}") from exc

        try:
            return tomllib.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
            self._count_error("parse_error")
            raise ConfigParseError(f"error parsing {path}: {exc}") from exc

    def _count_error(self, error_type: str) -> None:
        self._metrics.redirect_config_errors.labels(bucket_name=self._bucket_name, error_type=error_type).inc()

