"""
MCP backend instances.

A credential's factory returns an MCP server: either a `FastMCP` application or a low-level
`mcp.server.lowlevel.Server`. `McpBackend` wraps it into the backend-instance shape the lifecycle
expects ({name, version, close()}) and tracks the streamable-HTTP transports bound to it, so that
closing the backend ends every session the transport layer is still running against it.
"""

import logging
from typing import Any

from mcp.server.fastmcp import FastMCP
from mcp.server.lowlevel import Server
from mcp.server.streamable_http import StreamableHTTPServerTransport

from bearer_mcp._exceptions import TransportError
from bearer_mcp.lifecycle import DEFAULT_INSTANCE_NAME, DEFAULT_INSTANCE_VERSION

_LOGGER = logging.getLogger(__name__)


class McpBackend:
    """
    Backend instance wrapping one MCP server.

    The backend never routes messages itself; `StreamableHttpBridge` runs `server.run()` against each
    attached transport. The instance cache owns the backend and is the only caller of `close()`.
    """

    def __init__(self, server: FastMCP | Server, *, version: str | None = None) -> None:
        """
        Wrap an MCP server.

        Args:
            server: A FastMCP application or a low-level MCP Server.
            version: Version to report. Defaults to the low-level server's version, then "1.0.0".

        Raises:
            TypeError: If `server` is neither a FastMCP nor a low-level Server.
        """
        if isinstance(server, FastMCP):
            self._fastmcp: FastMCP | None = server
            self._server: Server = server._mcp_server
        elif isinstance(server, Server):
            self._fastmcp = None
            self._server = server
        else:
            raise TypeError(
                f"Expected FastMCP or mcp.server.lowlevel.Server, got {type(server).__name__}"
            )
        self._version = version or self._server.version or DEFAULT_INSTANCE_VERSION
        self._transports: dict[str, StreamableHTTPServerTransport] = {}
        self._closed = False

    @property
    def name(self) -> str:
        """str: The MCP server name."""
        return self._server.name or DEFAULT_INSTANCE_NAME

    @property
    def version(self) -> str:
        """str: The MCP server version."""
        return self._version

    @property
    def server(self) -> Server:
        """Server: The low-level server that handles protocol messages."""
        return self._server

    @property
    def fastmcp(self) -> FastMCP | None:
        """FastMCP | None: The FastMCP application, when the backend was built from one."""
        return self._fastmcp

    @property
    def closed(self) -> bool:
        """bool: True once `close()` has been called."""
        return self._closed

    @property
    def session_ids(self) -> list[str]:
        """list[str]: Ids of the sessions with an attached transport."""
        return list(self._transports)

    def attach(self, session_id: str, transport: StreamableHTTPServerTransport) -> None:
        """
        Bind a session's transport to this backend.

        Raises:
            TransportError: If the backend has already been closed.
        """
        if self._closed:
            raise TransportError(f"Backend '{self.name}' is closed")
        self._transports[session_id] = transport

    def detach(self, session_id: str) -> StreamableHTTPServerTransport | None:
        """Unbind a session's transport. Returns the transport, or None if it was not attached."""
        return self._transports.pop(session_id, None)

    async def close(self) -> None:
        """Terminate every attached transport. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        transports = list(self._transports.items())
        self._transports.clear()
        _LOGGER.info(
            f"[{self.__class__.__name__}] closing '{self.name}' with {len(transports)} attached transports"
        )
        for session_id, transport in transports:
            if transport.is_terminated:
                continue
            try:
                await transport.terminate()
            except Exception as e:
                _LOGGER.warning(
                    f"[{self.__class__.__name__}] failed to terminate transport for session {session_id}: {e}"
                )

    def __repr__(self) -> str:
        return f"McpBackend(name={self.name!r}, version={self.version!r}, closed={self._closed})"


def as_backend(obj: Any) -> McpBackend:
    """
    Coerce a factory result into an `McpBackend`.

    Args:
        obj: An `McpBackend`, a FastMCP application, or a low-level Server.

    Returns:
        McpBackend: `obj` itself if it is already a backend, otherwise a new wrapper.

    Raises:
        TypeError: For any other type.
    """
    if isinstance(obj, McpBackend):
        return obj
    return McpBackend(obj)
