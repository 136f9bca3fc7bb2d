from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, strategies as st

from spray.site.cache_policy import (
    BYPASS,
    CONDITION_ETAG,
    CONDITION_LAST_MODIFIED,
    cache_policy,
    decide,
    evaluate_conditional,
    fnv1a_32,
    format_http_date,
    generate_etag,
    in_percentage_rollout,
    parse_http_date,
    should_apply_cache,
)
from spray.site.config import CacheConfig, CachePolicies, RolloutConfig, Toggle
from spray.site.storage import ObjectAttrs

UPDATED = datetime(2024, 5, 1, 12, 30, 15, 250000, tzinfo=timezone.utc)
ENABLED = CacheConfig(enabled=True)


def _attrs(name: str = "index.html", size: int = 128, content_type: str = "text/html; charset=utf-8") -> ObjectAttrs:
    return ObjectAttrs(name=name, content_type=content_type, size=size, updated=UPDATED)


def _rollout(**kwargs) -> CacheConfig:
    return CacheConfig(enabled=True, rollout=RolloutConfig(enabled=True, **kwargs))


def test_fnv1a_known_vectors() -> None:
    assert fnv1a_32(b"") == 0x811C9DC5
    assert fnv1a_32(b"a") == 0xE40C292C
    assert fnv1a_32(b"foobar") == 0xBF9CF968


def test_etag_is_deterministic_and_quoted() -> None:
    first = generate_etag(_attrs())
    assert first == generate_etag(_attrs())
    assert first.startswith('"') and first.endswith('"')
    assert len(first) == 34


def test_etag_changes_with_size_name_and_mtime() -> None:
    base = generate_etag(_attrs())
    assert generate_etag(_attrs(size=129)) != base
    assert generate_etag(_attrs(name="other.html")) != base
    later = ObjectAttrs(name="index.html", content_type="text/html", size=128, updated=UPDATED + timedelta(seconds=1))
    assert generate_etag(later) != base


def test_etag_ignores_sub_second_changes() -> None:
    same_second = ObjectAttrs(
        name="index.html", content_type="text/html", size=128, updated=UPDATED.replace(microsecond=0)
    )
    assert generate_etag(same_second) == generate_etag(_attrs())


def test_master_switch_disables_everything() -> None:
    assert not should_apply_cache("10.0.0.1", "curl/8.0", "index.html", CacheConfig())


def test_rollout_disabled_applies_everywhere() -> None:
    assert should_apply_cache("10.0.0.1", "curl/8.0", "index.html", ENABLED)


def test_rollout_percentage_bounds() -> None:
    assert should_apply_cache("10.0.0.1", "ua", "index.html", _rollout(percentage=100))
    assert not should_apply_cache("10.0.0.1", "ua", "index.html", _rollout(percentage=0))


def test_rollout_percentage_splits_population() -> None:
    clients = [(f"10.0.{i // 256}.{i % 256}", "Mozilla/5.0") for i in range(2000)]
    admitted = sum(in_percentage_rollout(addr, ua, 50) for addr, ua in clients)
    assert 800 < admitted < 1200


@given(st.text(max_size=40), st.text(max_size=80), st.integers(min_value=0, max_value=100))
def test_rollout_decision_is_stable(remote_addr: str, user_agent: str, percentage: int) -> None:
    first = in_percentage_rollout(remote_addr, user_agent, percentage)
    assert all(in_percentage_rollout(remote_addr, user_agent, percentage) == first for _ in range(3))


@given(st.text(max_size=40), st.text(max_size=80), st.integers(min_value=0, max_value=99))
def test_rollout_is_monotonic_in_percentage(remote_addr: str, user_agent: str, percentage: int) -> None:
    if in_percentage_rollout(remote_addr, user_agent, percentage):
        assert in_percentage_rollout(remote_addr, user_agent, percentage + 1)


def test_rollout_path_prefixes() -> None:
    config = _rollout(path_prefixes=("assets/", "blog/"))
    assert should_apply_cache("1.2.3.4", "ua", "assets/app.css", config)
    assert should_apply_cache("1.2.3.4", "ua", "blog/index.html", config)
    assert not should_apply_cache("1.2.3.4", "ua", "index.html", config)


def test_rollout_exclusions_win_over_inclusions() -> None:
    config = _rollout(path_prefixes=("assets/",), exclude_prefixes=("assets/private/",))
    assert should_apply_cache("1.2.3.4", "ua", "assets/app.css", config)
    assert not should_apply_cache("1.2.3.4", "ua", "assets/private/key.txt", config)


def test_rollout_user_agent_rules_use_search() -> None:
    config = CacheConfig.model_validate(
        {"enabled": True, "rollout": {"enabled": True, "user_agent_rules": ["Chrome/\\d+", "^curl"]}}
    )
    assert isinstance(config.rollout.user_agent_rules[0], re.Pattern)
    assert should_apply_cache("1.2.3.4", "Mozilla/5.0 Chrome/120.0", "index.html", config)
    assert should_apply_cache("1.2.3.4", "curl/8.4.0", "index.html", config)
    assert not should_apply_cache("1.2.3.4", "Mozilla/5.0 Firefox/121.0", "index.html", config)


@pytest.mark.parametrize(
    ("key", "content_type", "expected"),
    [
        ("index.html", "text/html; charset=utf-8", (300, "short")),
        ("app.min.js", "text/javascript", (31536000, "long")),
        ("bundle-v2.css", "text/css", (31536000, "long")),
        ("main.hash.js", "text/javascript", (31536000, "long")),
        ("style.css", "text/css", (86400, "medium")),
        ("logo.PNG", "image/png", (86400, "medium")),
        ("fonts/inter.woff2", "font/woff2", (86400, "medium")),
        ("report.pdf", "application/pdf", (86400, "medium")),
    ],
)
def test_cache_policy_classes(key: str, content_type: str, expected: tuple[int, str]) -> None:
    assert cache_policy(content_type, key, CachePolicies()) == expected


def test_cache_policy_uses_configured_ages() -> None:
    policies = CachePolicies(short_max_age=60, medium_max_age=600, long_max_age=6000)
    assert cache_policy("text/html", "index.html", policies) == (60, "short")


def test_http_date_round_trip_is_second_precision() -> None:
    rendered = format_http_date(UPDATED)
    assert rendered == "Wed, 01 May 2024 12:30:15 GMT"
    assert parse_http_date(rendered) == UPDATED.replace(microsecond=0)
    assert parse_http_date("not a date") is None


def test_if_none_match_variants() -> None:
    etag = generate_etag(_attrs())
    for header in (etag, f"W/{etag}", f'"other", {etag}', "*"):
        assert evaluate_conditional({"if-none-match": header}, _attrs(), ENABLED) == CONDITION_ETAG
    assert evaluate_conditional({"if-none-match": '"stale"'}, _attrs(), ENABLED) is None


def test_if_modified_since_compares_whole_seconds() -> None:
    same_second = format_http_date(UPDATED)
    earlier = format_http_date(UPDATED - timedelta(seconds=1))
    assert evaluate_conditional({"if-modified-since": same_second}, _attrs(), ENABLED) == CONDITION_LAST_MODIFIED
    assert evaluate_conditional({"if-modified-since": earlier}, _attrs(), ENABLED) is None
    assert evaluate_conditional({"if-modified-since": "garbage"}, _attrs(), ENABLED) is None


def test_etag_mismatch_falls_through_to_last_modified() -> None:
    headers = {"if-none-match": '"stale"', "if-modified-since": format_http_date(UPDATED)}
    assert evaluate_conditional(headers, _attrs(), ENABLED) == CONDITION_LAST_MODIFIED


def test_disabled_validators_are_not_evaluated() -> None:
    config = CacheConfig(enabled=True, etag=Toggle(enabled=False), last_modified=Toggle(enabled=False))
    headers = {"if-none-match": "*", "if-modified-since": format_http_date(UPDATED)}
    assert evaluate_conditional(headers, _attrs(), config) is None


def test_decide_renders_validation_headers() -> None:
    decision = decide({}, _attrs(), "index.html", ENABLED)
    assert decision.applies
    assert not decision.not_modified
    headers = decision.headers()
    assert headers["ETag"] == generate_etag(_attrs())
    assert headers["Last-Modified"] == "Wed, 01 May 2024 12:30:15 GMT"
    assert headers["Cache-Control"] == "public, max-age=300"


def test_decide_respects_sub_toggles() -> None:
    config = CacheConfig(enabled=True, cache_control=Toggle(enabled=False), etag=Toggle(enabled=False))
    decision = decide({}, _attrs(), "index.html", config)
    assert decision.policy == "disabled"
    assert set(decision.headers()) == {"Last-Modified"}


def test_decide_marks_not_modified() -> None:
    etag = generate_etag(_attrs())
    decision = decide({"if-none-match": etag}, _attrs(), "index.html", ENABLED)
    assert decision.not_modified
    assert decision.condition == CONDITION_ETAG


def test_bypass_has_no_headers() -> None:
    assert BYPASS.headers() == {}
    assert not BYPASS.applies
