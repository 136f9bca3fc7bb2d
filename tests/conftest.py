from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from spray.common import observability
from spray.common.settings import SpraySettings
from spray.site.app import create_app
from tests.utils.storage import MemoryObjectStore

SETTINGS_ENV = (
    "BUCKET_NAME",
    "SPRAY_STORAGE_PATH",
    "SPRAY_CONFIG_PREFIX",
    "SPRAY_CONFIG_RELOAD_SECONDS",
    "SPRAY_REDIRECT_STATUS",
    "SPRAY_POWERED_BY_HEADER",
    "SPRAY_METRICS_TOKEN",
    "SPRAY_LOG_LEVEL",
    "SPRAY_OTEL_EXPORTER_ENDPOINT",
)

observability.configure_logging("spray.test", "DEBUG")


@pytest.fixture
def clean_env(monkeypatch):
    for name in SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def store() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture
def settings(clean_env) -> SpraySettings:
    return SpraySettings(
        _env_file=None,
        bucket_name="site-bucket",
        log_level="DEBUG",
        otel_sampler_ratio=1.0,
    )


@pytest.fixture
def site_client(settings, store):
    """Factory yielding a started ``TestClient`` for the given overrides."""

    @contextmanager
    def _client(**overrides) -> Iterator[TestClient]:
        app_settings = settings.model_copy(update=overrides) if overrides else settings
        app = create_app(app_settings, store)
        with TestClient(app) as client:
            yield client

    return _client
