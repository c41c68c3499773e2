"""
Bearer MCP server: the lifecycle facade and its streamable-HTTP listener.

Exports:
    - BearerMcpServer: Facade composing the lifecycle components, the event feed and the listener.
    - McpBackend / as_backend: Backend instance wrapping a FastMCP or low-level MCP server.
    - StreamableHttpBridge: ASGI MCP endpoint (authorization boundary and transport binding).
    - OAuth2Settings: External authorization server advertised through the well-known routes.
    - build_app: Starlette application factory used by the listener.
"""

from ._app import build_app
from ._backend import McpBackend, as_backend
from ._oauth import OAuth2Settings
from ._server import DEFAULT_ENDPOINT, DEFAULT_HOST, DEFAULT_PORT, BearerMcpServer
from ._transport import (
    MCP_SESSION_ID_HEADER,
    StreamableHttpBridge,
    parse_bearer,
    parse_jsonrpc_messages,
)

__all__ = [
    "BearerMcpServer",
    "McpBackend",
    "as_backend",
    "StreamableHttpBridge",
    "OAuth2Settings",
    "build_app",
    "parse_bearer",
    "parse_jsonrpc_messages",
    "MCP_SESSION_ID_HEADER",
    "DEFAULT_HOST",
    "DEFAULT_PORT",
    "DEFAULT_ENDPOINT",
]
