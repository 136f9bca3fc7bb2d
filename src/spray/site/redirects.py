"""Immutable redirect table loaded from the site configuration."""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping, Optional

from pydantic import AnyUrl, TypeAdapter, ValidationError

from .errors import ConfigInvalidURL

_URL_ADAPTER = TypeAdapter(AnyUrl)


def clean_redirect_path(path: str) -> str:
    """Drop one leading slash so configured paths line up with resolved keys."""
    if path.startswith("/"):
        return path[1:]
    return path


def validate_destination(path: str, destination: object) -> str:
    if not isinstance(destination, str) or not destination.strip():
        raise ConfigInvalidURL(path, destination, "destination must be a non-empty string")
    try:
        _URL_ADAPTER.validate_python(destination)
    except ValidationError as exc:
        reason = exc.errors()[0].get("msg", "invalid URL") if exc.errors() else "invalid URL"
        raise ConfigInvalidURL(path, destination, reason) from exc
    return destination


class RedirectTable:
    """Exact-match lookup from resolved keys to absolute destination URLs."""

    __slots__ = ("_rules",)

    def __init__(self, rules: Mapping[str, str] | None = None) -> None:
        self._rules: Mapping[str, str] = MappingProxyType(dict(rules or {}))

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> "RedirectTable":
        """Validate every entry; the first invalid destination fails the whole table."""
        cleaned: dict[str, str] = {}
        for path, destination in raw.items():
            path = str(path)
            cleaned[clean_redirect_path(path)] = validate_destination(path, destination)
        return cls(cleaned)

    def match(self, key: str) -> Optional[str]:
        return self._rules.get(key)

    @property
    def rules(self) -> Mapping[str, str]:
        return self._rules

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, key: object) -> bool:
        return key in self._rules

    def __repr__(self) -> str:
        return f"RedirectTable({len(self._rules)} rules)"
