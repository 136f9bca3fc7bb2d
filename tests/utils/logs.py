"""Helpers for asserting on structured log output."""

from __future__ import annotations

import json
from typing import Any


def log_events(caplog, event: str | None = None) -> list[dict[str, Any]]:
    events = []
    for record in caplog.records:
        try:
            payload = json.loads(record.getMessage())
        except ValueError:
            continue
        if not isinstance(payload, dict):
            continue
        payload.setdefault("level", record.levelname.lower())
        if event is None or payload.get("message") == event:
            events.append(payload)
    return events
