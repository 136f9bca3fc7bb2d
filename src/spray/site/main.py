"""Command-line entrypoint for running the spray site server."""

from __future__ import annotations

import asyncio

import structlog
import uvicorn

from ..common.settings import SpraySettings
from .app import create_app

LOGGER = structlog.get_logger("spray.site.main")


async def main() -> None:
    settings = SpraySettings()
    app = create_app(settings)
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,
        log_level=settings.log_level.lower(),
        access_log=False,
        timeout_graceful_shutdown=settings.shutdown_grace_seconds,
    )
    server = uvicorn.Server(config)
    LOGGER.info("server_starting", host=settings.host, port=settings.port, bucket=settings.site_label)
    await server.serve()
    LOGGER.info("server_stopped", bucket=settings.site_label)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
