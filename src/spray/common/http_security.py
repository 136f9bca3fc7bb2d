"""Shared HTTP security helpers."""

from __future__ import annotations

import hmac
from typing import Optional

from fastapi import HTTPException, Request, status


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    """Require ``Authorization: Bearer <token>`` on the metrics endpoint when a token is configured."""
    if not token:
        return
    expected = f"Bearer {token}"
    auth_header = request.headers.get("authorization")
    if not auth_header or not hmac.compare_digest(auth_header, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
