from __future__ import annotations

import logging

import pytest

from spray.site.config import DEFAULT_HEADER_CONFIG, ConfigLoader
from spray.site.errors import (
    ConfigInvalidURL,
    ConfigLoadError,
    ConfigParseError,
    PermissionDenied,
    StorageTimeout,
)
from spray.site.metrics import SiteMetrics
from tests.utils.logs import log_events
from tests.utils.storage import MemoryObjectStore

BUCKET = "site-bucket"

HEADERS_TOML = """
[powered_by]
enabled = false

[cache]
enabled = true

[cache.etag]
enabled = false

[cache.policies]
short_max_age = 60

[cache.rollout]
enabled = true
percentage = 25
path_prefixes = ["assets/"]
exclude_prefixes = ["assets/private/"]
user_agent_rules = ["Chrome"]
"""


@pytest.fixture
def metrics() -> SiteMetrics:
    return SiteMetrics()


@pytest.fixture
def loader(store: MemoryObjectStore, metrics: SiteMetrics) -> ConfigLoader:
    return ConfigLoader(store, ".spray", metrics, BUCKET)


def _config_errors(metrics: SiteMetrics, error_type: str) -> float:
    return metrics.redirect_config_errors.value(bucket_name=BUCKET, error_type=error_type)


@pytest.mark.asyncio
async def test_missing_config_objects_yield_defaults(loader, store):
    config = await loader.load()
    assert len(config.redirects) == 0
    assert config.headers == DEFAULT_HEADER_CONFIG
    assert not config.headers.cache.enabled
    assert store.calls == [".spray/redirects.toml", ".spray/headers.toml"]


@pytest.mark.asyncio
async def test_loads_redirects_and_headers(loader, store):
    store.put(
        ".spray/redirects.toml",
        '[redirects]\n"/old" = "https://example.com/new"\n"docs/" = "https://docs.example.com/"\n',
    )
    store.put(".spray/headers.toml", HEADERS_TOML)

    config = await loader.load()

    assert config.redirects.match("old") == "https://example.com/new"
    assert config.redirects.match("docs/") == "https://docs.example.com/"
    headers = config.headers
    assert not headers.powered_by.enabled
    assert headers.cache.enabled
    assert not headers.cache.etag.enabled
    assert headers.cache.last_modified.enabled
    assert headers.cache.policies.short_max_age == 60
    assert headers.cache.policies.long_max_age == 31536000
    rollout = headers.cache.rollout
    assert rollout.enabled and rollout.percentage == 25
    assert rollout.path_prefixes == ("assets/",)
    assert rollout.exclude_prefixes == ("assets/private/",)
    assert rollout.user_agent_rules[0].search("Mozilla Chrome/120")


@pytest.mark.asyncio
async def test_permission_denied_falls_back_to_defaults(loader, store, metrics, caplog):
    caplog.set_level(logging.WARNING)
    store.fail(".spray/redirects.toml", PermissionDenied("access denied"))
    store.fail(".spray/headers.toml", PermissionDenied("access denied"))

    config = await loader.load()

    assert len(config.redirects) == 0
    assert config.headers == DEFAULT_HEADER_CONFIG
    assert _config_errors(metrics, "permission_denied") == 2
    warnings = log_events(caplog, "config_permission_denied")
    assert {event["path"] for event in warnings} == {".spray/redirects.toml", ".spray/headers.toml"}
    assert all(event["level"] == "warning" for event in warnings)


@pytest.mark.asyncio
async def test_invalid_redirect_url_fails_load(loader, store, metrics):
    store.put(
        ".spray/redirects.toml",
        '[redirects]\n"a" = "https://example.com/"\n"b" = "not a url"\n',
    )
    with pytest.raises(ConfigInvalidURL):
        await loader.load()
    assert _config_errors(metrics, "invalid_url") == 1


@pytest.mark.asyncio
async def test_malformed_toml_is_parse_error(loader, store, metrics):
    store.put(".spray/redirects.toml", "[redirects\nbroken")
    with pytest.raises(ConfigParseError):
        await loader.load()
    assert _config_errors(metrics, "parse_error") == 1


@pytest.mark.asyncio
async def test_redirects_must_be_a_table(loader, store):
    store.put(".spray/redirects.toml", 'redirects = "https://example.com/"\n')
    with pytest.raises(ConfigParseError):
        await loader.load()


@pytest.mark.parametrize(
    "document",
    [
        "[cache.rollout]\npercentage = 150\n",
        '[cache.rollout]\nuser_agent_rules = ["(unclosed"]\n',
        "[cache.policies]\nshort_max_age = -1\n",
        '[cache]\nenabled = "sometimes"\n',
    ],
)
@pytest.mark.asyncio
async def test_invalid_header_config_is_parse_error(loader, store, metrics, document):
    store.put(".spray/headers.toml", document)
    with pytest.raises(ConfigParseError):
        await loader.load()
    assert _config_errors(metrics, "parse_error") == 1


@pytest.mark.asyncio
async def test_other_storage_failures_are_fatal(loader, store, metrics):
    store.fail(".spray/redirects.toml", StorageTimeout("timed out"))
    with pytest.raises(ConfigLoadError):
        await loader.load()
    assert _config_errors(metrics, "read_error") == 1


@pytest.mark.asyncio
async def test_config_prefix_is_configurable(store, metrics):
    loader = ConfigLoader(store, "/site-config/", metrics, BUCKET)
    store.put("site-config/redirects.toml", '[redirects]\n"x" = "https://example.com/x"\n')
    config = await loader.load()
    assert loader.redirects_source == "site-config/redirects.toml"
    assert config.redirects.match("x") == "https://example.com/x"
