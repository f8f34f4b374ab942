"""Starlette application wiring and a uvicorn runner for the transport."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from starlette.applications import Starlette
from starlette.routing import Route

from mcp_httpstream.transport import HttpStreamTransport
from mcp_httpstream.utilities.logging import configure_logging, get_logger

logger = get_logger(__name__)


def create_app(transport: HttpStreamTransport, *, debug: bool = False) -> Starlette:
    """Create a Starlette app serving ``transport`` at ``settings.endpoint``.

    Usage:
        transport = HttpStreamTransport(my_dispatcher)
        app = create_app(transport)
        uvicorn.run(app, host="127.0.0.1", port=8080)
    """

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with transport.run():
            yield

    return Starlette(
        debug=debug,
        lifespan=lifespan,
        routes=[Route(transport.settings.endpoint, endpoint=transport)],
    )


async def serve(transport: HttpStreamTransport) -> None:
    """Serve ``transport`` with uvicorn until the process is stopped."""
    import uvicorn

    settings = transport.settings
    configure_logging(settings.log_level)

    config = uvicorn.Config(
        create_app(transport, debug=settings.log_level == "DEBUG"),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
    server = uvicorn.Server(config)
    logger.info(f"Serving HTTP stream transport on http://{settings.host}:{settings.port}{settings.endpoint}")
    await server.serve()
