"""
Starlette application for the Bearer MCP listener.

Routes:
    - `<endpoint>` (GET/POST/DELETE): the MCP streamable-HTTP endpoint, served by `StreamableHttpBridge`.
    - `/` (GET): server info with redacted statistics.
    - `/health` (GET): liveness probe for load balancers and container orchestrators.
    - `/.well-known/oauth-authorization-server` and `/.well-known/oauth-protected-resource` (GET):
      OAuth discovery documents, only when OAuth2 settings are configured.

The bridge's task group is entered in the application lifespan, so the app must be served by an
ASGI server with lifespan support (uvicorn with `lifespan="on"`, or Starlette's `TestClient` used as
a context manager).
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from bearer_mcp._logging import redact_credential

from ._oauth import AUTHORIZATION_SERVER_PATH, PROTECTED_RESOURCE_PATH
from ._transport import StreamableHttpBridge

if TYPE_CHECKING:
    from ._server import BearerMcpServer

_LOGGER = logging.getLogger(__name__)


def build_app(server: "BearerMcpServer", bridge: StreamableHttpBridge) -> Starlette:
    """
    Build the Starlette application for a facade.

    Args:
        server: The facade whose state the info route reports.
        bridge: The MCP endpoint.

    Returns:
        Starlette: The ASGI application.
    """

    async def info(request: Request) -> JSONResponse:
        """Describe the server and its live state. Credentials are redacted."""
        endpoints = {"mcp": server.endpoint, "health": "/health", "info": "/"}
        if server.oauth2 is not None:
            endpoints["oauth_authorization_server"] = AUTHORIZATION_SERVER_PATH
            endpoints["oauth_protected_resource"] = PROTECTED_RESOURCE_PATH
        return JSONResponse(
            {
                "server": server.name,
                "status": "running" if server.is_running() else "stopped",
                **server.stats().to_dict(redact=redact_credential),
                "endpoints": endpoints,
            }
        )

    async def health_check(request: Request) -> JSONResponse:
        """
        Health check endpoint for the Bearer MCP listener.

        Returns HTTP 200 with {"status": "ok"} whenever the application can serve requests.
        It does not check backend instances.
        """
        _LOGGER.debug("[bearer_mcp:health_check] Health check requested")
        return JSONResponse({"status": "ok"})

    routes = [
        Route(server.endpoint, endpoint=bridge, methods=["GET", "POST", "DELETE"]),
        Route("/", endpoint=info, methods=["GET"]),
        Route("/health", endpoint=health_check, methods=["GET"]),
    ]

    oauth2 = server.oauth2
    if oauth2 is not None:

        async def authorization_server(request: Request) -> JSONResponse:
            return JSONResponse(oauth2.authorization_server_metadata())

        async def protected_resource(request: Request) -> JSONResponse:
            return JSONResponse(
                oauth2.protected_resource_metadata(),
                headers={"Cache-Control": "public, max-age=3600"},
            )

        routes += [
            Route(AUTHORIZATION_SERVER_PATH, endpoint=authorization_server, methods=["GET"]),
            Route(PROTECTED_RESOURCE_PATH, endpoint=protected_resource, methods=["GET"]),
        ]

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        _LOGGER.info(
            f"[bearer_mcp:lifespan] MCP listener for '{server.name}' starting up"
        )
        async with bridge.run():
            yield
        _LOGGER.info(
            f"[bearer_mcp:lifespan] MCP listener for '{server.name}' shut down"
        )

    return Starlette(routes=routes, lifespan=lifespan)
