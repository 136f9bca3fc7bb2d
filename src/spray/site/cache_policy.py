"""HTTP cache validation: rollout gating, validators, Cache-Control policy and conditional requests."""

from __future__ import annotations

import hashlib
import posixpath
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Mapping, Optional

from .config import CacheConfig, CachePolicies, RolloutConfig
from .storage import ObjectAttrs

FNV32_OFFSET = 0x811C9DC5
FNV32_PRIME = 0x01000193

STATIC_ASSET_EXTENSIONS = frozenset(
    {".css", ".js", ".png", ".jpg", ".jpeg", ".gif", ".webp", ".ico", ".woff", ".woff2", ".ttf", ".eot", ".svg"}
)
VERSION_MARKERS = (".min.", "-v", ".hash.")

POLICY_SHORT = "short"
POLICY_MEDIUM = "medium"
POLICY_LONG = "long"
POLICY_DISABLED = "disabled"

CONDITION_ETAG = "etag"
CONDITION_LAST_MODIFIED = "last_modified"


@dataclass(frozen=True)
class CacheDecision:
    applies: bool
    policy: str = POLICY_DISABLED
    max_age: Optional[int] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    not_modified: bool = False
    condition: Optional[str] = None

    def headers(self) -> dict[str, str]:
        """Validation headers to attach to both 200 and 304 responses."""
        headers: dict[str, str] = {}
        if self.etag is not None:
            headers["ETag"] = self.etag
        if self.last_modified is not None:
            headers["Last-Modified"] = self.last_modified
        if self.max_age is not None:
            headers["Cache-Control"] = f"public, max-age={self.max_age}"
        return headers


BYPASS = CacheDecision(applies=False)


def fnv1a_32(data: bytes) -> int:
    value = FNV32_OFFSET
    for byte in data:
        value ^= byte
        value = (value * FNV32_PRIME) & 0xFFFFFFFF
    return value


def in_percentage_rollout(remote_addr: str, user_agent: str, percentage: int) -> bool:
    """Stable per client fingerprint: the same address and agent always land in the same bucket."""
    if percentage >= 100:
        return True
    if percentage <= 0:
        return False
    percentile = fnv1a_32((remote_addr + user_agent).encode("utf-8")) % 100
    return percentile < percentage


def _in_rollout(remote_addr: str, user_agent: str, key: str, rollout: RolloutConfig) -> bool:
    if not in_percentage_rollout(remote_addr, user_agent, rollout.percentage):
        return False
    if rollout.path_prefixes and not any(key.startswith(prefix) for prefix in rollout.path_prefixes):
        return False
    if any(key.startswith(prefix) for prefix in rollout.exclude_prefixes):
        return False
    if rollout.user_agent_rules and not any(rule.search(user_agent) for rule in rollout.user_agent_rules):
        return False
    return True


def should_apply_cache(remote_addr: str, user_agent: str, key: str, config: CacheConfig) -> bool:
    if not config.enabled:
        return False
    if not config.rollout.enabled:
        return True
    return _in_rollout(remote_addr, user_agent, key, config.rollout)


def generate_etag(attrs: ObjectAttrs) -> str:
    # second granularity: rewrites within the same second keep their ETag
    data = f"{attrs.name}-{attrs.size}-{int(attrs.updated.timestamp())}"
    return '"' + hashlib.md5(data.encode("utf-8"), usedforsecurity=False).hexdigest() + '"'


def format_http_date(value: datetime) -> str:
    return format_datetime(value.astimezone(timezone.utc).replace(microsecond=0), usegmt=True)


def parse_http_date(value: str) -> Optional[datetime]:
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def cache_policy(content_type: str, key: str, policies: CachePolicies) -> tuple[int, str]:
    """Pick a max-age class; versioned file names win over the static asset class."""
    if any(marker in key for marker in VERSION_MARKERS):
        return policies.long_max_age, POLICY_LONG
    if posixpath.splitext(key)[1].lower() in STATIC_ASSET_EXTENSIONS:
        return policies.medium_max_age, POLICY_MEDIUM
    if content_type.startswith("text/html"):
        return policies.short_max_age, POLICY_SHORT
    return policies.medium_max_age, POLICY_MEDIUM


def _etag_matches(if_none_match: str, etag: str) -> bool:
    if if_none_match.strip() == "*":
        return True
    for candidate in if_none_match.split(","):
        candidate = candidate.strip()
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate == etag:
            return True
    return False


def evaluate_conditional(
    headers: Mapping[str, str], attrs: ObjectAttrs, config: CacheConfig, etag: Optional[str] = None
) -> Optional[str]:
    """Return the matching condition type, or ``None`` when the full body must be sent."""
    if config.etag.enabled:
        if_none_match = headers.get("if-none-match")
        if if_none_match:
            if _etag_matches(if_none_match, etag or generate_etag(attrs)):
                return CONDITION_ETAG

    if config.last_modified.enabled:
        if_modified_since = headers.get("if-modified-since")
        if if_modified_since:
            since = parse_http_date(if_modified_since)
            if since is not None:
                # Last-Modified is sent with second precision, compare at that precision
                updated = attrs.updated.astimezone(timezone.utc).replace(microsecond=0)
                if not updated > since:
                    return CONDITION_LAST_MODIFIED
    return None


def decide(headers: Mapping[str, str], attrs: ObjectAttrs, key: str, config: CacheConfig) -> CacheDecision:
    """Compute validators and the 304 decision for a request that passed ``should_apply_cache``."""
    etag = generate_etag(attrs) if config.etag.enabled else None
    last_modified = format_http_date(attrs.updated) if config.last_modified.enabled else None
    max_age: Optional[int] = None
    policy = POLICY_DISABLED
    if config.cache_control.enabled:
        max_age, policy = cache_policy(attrs.content_type, key, config.policies)

    condition = evaluate_conditional(headers, attrs, config, etag)
    return CacheDecision(
        applies=True,
        policy=policy,
        max_age=max_age,
        etag=etag,
        last_modified=last_modified,
        not_modified=condition is not None,
        condition=condition,
    )
