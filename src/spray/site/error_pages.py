"""Maps failures onto client responses while keeping internal detail in the logs."""

from __future__ import annotations

import html
from http import HTTPStatus
from typing import Mapping, Optional

import structlog
from fastapi import Request
from fastapi.responses import HTMLResponse, JSONResponse, Response

from .. import __version__
from .errors import error_type_for
from .metrics import SiteMetrics
from .paths import INDEX_DOCUMENT

PROJECT_URL = "https://github.com/picotechllc/spray"

# client errors name arbitrary request targets; their metrics share one path label
UNMATCHED_PATH = "<unmatched>"

HOMEPAGE_LINK = '\n                <li>Go back to the <a href="/">homepage</a></li>'

ERROR_PAGE_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Error {status} - {reason}</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            line-height: 1.6;
            margin: 0;
            padding: 2rem;
            background-color: #f5f5f5;
            color: #333;
        }}
        .container {{
            max-width: 600px;
            margin: 0 auto 2rem auto;
            background: white;
            padding: 2rem;
            border-radius: 8px;
            box-shadow: 0 2px 10px rgba(0,0,0,0.1);
        }}
        h1 {{ color: #d73a49; margin-bottom: 1rem; }}
        .error-code {{ font-size: 3rem; font-weight: bold; color: #d73a49; margin-bottom: 0.5rem; }}
        .message {{ font-size: 1.1rem; margin-bottom: 1.5rem; }}
        .help {{ background: #f8f9fa; padding: 1rem; border-radius: 4px; border-left: 4px solid #0366d6; }}
        .footer {{
            max-width: 600px;
            margin: 0 auto;
            padding: 1rem;
            text-align: center;
            color: #666;
            font-size: 0.9rem;
            border-top: 1px solid #e1e4e8;
        }}
        .footer a {{ color: #0366d6; text-decoration: none; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="error-code">{status}</div>
        <h1>{reason}</h1>
        <div class="message">{message}</div>
        <div class="help">
            <strong>What can you do?</strong>
            <ul>
                <li>Check the URL for typos</li>
                <li>Try refreshing the page</li>{homepage_link}
            </ul>
        </div>
    </div>
    <footer class="footer">
        <a href="{project_url}" target="_blank" rel="noopener">spray</a>/{version}
    </footer>
</body>
</html>"""


def status_text(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Unknown Status"


def wants_html(accept: str) -> bool:
    wants_json = "application/json" in accept or ("*/*" in accept and "text/html" not in accept)
    return "text/html" in accept or (not wants_json and accept != "")


def render_error_page(status_code: int, user_message: str, show_homepage_link: bool) -> str:
    return ERROR_PAGE_TEMPLATE.format(
        status=status_code,
        reason=html.escape(status_text(status_code)),
        message=html.escape(user_message),
        homepage_link=HOMEPAGE_LINK if show_homepage_link else "",
        project_url=PROJECT_URL,
        version=html.escape(__version__),
    )


class ErrorResponder:
    def __init__(self, metrics: SiteMetrics, bucket_name: str) -> None:
        self._metrics = metrics
        self._bucket_name = bucket_name
        self._logger = structlog.get_logger("spray.site").bind(bucket=bucket_name)

    def respond(
        self,
        request: Request,
        key: str,
        status_code: int,
        user_message: str,
        error: Optional[BaseException],
        headers: Optional[Mapping[str, str]] = None,
    ) -> Response:
        error_type = error_type_for(error)
        log_kwargs = {
            "operation": "serve_request",
            "path": key,
            "status": status_code,
            "error": str(error) if error is not None else None,
            "error_type": error_type,
        }
        if status_code == HTTPStatus.NOT_FOUND:
            self._logger.warning("serve_error", **log_kwargs)
        elif status_code >= 500:
            self._logger.error("serve_error", **log_kwargs)
        else:
            self._logger.info("serve_error", **log_kwargs)

        metric_path = UNMATCHED_PATH if 400 <= status_code < 500 else key
        self._metrics.errors_total.labels(
            bucket_name=self._bucket_name, path=metric_path, error_type=error_type
        ).inc()
        self._metrics.requests_total.labels(
            bucket_name=self._bucket_name, path=metric_path, method=request.method, status=str(status_code)
        ).inc()

        if wants_html(request.headers.get("accept", "")):
            show_link = request.url.path != "/" and key != INDEX_DOCUMENT
            return HTMLResponse(
                render_error_page(status_code, user_message, show_link),
                status_code=status_code,
                headers=dict(headers or {}),
            )
        return JSONResponse(
            {"error": status_text(status_code), "message": user_message, "status": status_code},
            status_code=status_code,
            headers=dict(headers or {}),
        )
