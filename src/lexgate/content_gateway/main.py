"""Command-line entrypoint for running the Lexgate content gateway."""

from __future__ import annotations

import asyncio

import structlog
import uvicorn

from ..common.settings import GatewaySettings
from .app import create_app

LOGGER = structlog.get_logger("lexgate.content_gateway")


async def serve(settings: GatewaySettings) -> None:
    app = create_app(settings)
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,
        log_level=settings.log_level.lower(),
        proxy_headers=False,
    )
    server = uvicorn.Server(config)
    LOGGER.info("content_gateway_listening", host=settings.host, port=settings.port)
    await server.serve()


def main() -> None:
    asyncio.run(serve(GatewaySettings()))


if __name__ == "__main__":
    main()
