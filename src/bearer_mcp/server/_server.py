"""
Lifecycle facade: one addressable Bearer MCP server.

`BearerMcpServer` composes the credential registry, instance cache, session table and event bus
behind one surface, serves them over streamable HTTP with uvicorn, and is the seam at which every
externally visible event is emitted.

Event order per operation:
    - add credential: `credential_added`; if already registered, preceded by `session_destroyed`
      for each bound session, and the next build emits `instance_updated`
    - remove credential: `instance_removed` (only if an instance was live) -> `session_destroyed`
      for each bound session -> `credential_removed`
    - update credential: `session_destroyed` for each bound session -> `credential_updated`; later,
      `instance_updated` when the first instance is built from the new factory
    - first resolution of a credential: `instance_registered`
    - session created / destroyed: `session_created` / `session_destroyed`
    - listener start / stop: `started` / `stopped`
    - transport failure on a session: `transport_error`

Removal and update cascade: sessions bound to a removed or updated credential are terminated before
`credential_removed` / `credential_updated` handlers run, so statistics read inside those handlers
no longer include them. Sessions are never migrated to a new instance.

Shutdown order (`stop()`): stop accepting sessions -> destroy all sessions -> close all cached
instances -> stop the listener. `close()` additionally releases the credential registry.

Usage Example:
    ```python
    from mcp.server.fastmcp import FastMCP
    from bearer_mcp.server import BearerMcpServer

    def make_math_server() -> FastMCP:
        mcp = FastMCP("math")

        @mcp.tool()
        def add(a: int, b: int) -> int:
            return a + b

        return mcp

    async with BearerMcpServer(port=0) as server:
        await server.add_credential("math-token-0123456789", make_math_server)
        print(server.info.mcp_url)
        await server.serve_forever()
    ```
"""

import asyncio
import logging
import socket
from collections.abc import Callable
from typing import Any

import uvicorn

from bearer_mcp._exceptions import (
    ListenerAlreadyRunningError,
    ListenerError,
    ListenerNotRunningError,
    ServerConfigurationError,
)
from bearer_mcp._logging import redact_credential
from bearer_mcp.lifecycle import (
    CredentialAdded,
    CredentialRegistry,
    CredentialRemoved,
    CredentialUpdated,
    EventBus,
    EventHandler,
    EventType,
    Factory,
    InstanceCache,
    InstanceRemoved,
    ListenerInfo,
    ListenerStarted,
    ListenerStopped,
    Principal,
    SessionRecord,
    SessionTable,
    StatsSnapshot,
    describe_instance,
)

from ._app import build_app
from ._backend import McpBackend, as_backend
from ._oauth import OAuth2Settings
from ._transport import StreamableHttpBridge

_LOGGER = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 0
DEFAULT_ENDPOINT = "/mcp"


class BearerMcpServer:
    """
    Multi-tenant MCP server routing each bearer credential to its own backend instance.

    Each facade owns its own registry, cache, session table and event bus; independent facades can
    coexist in one process.
    """

    def __init__(
        self,
        *,
        name: str = "bearer-mcp",
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        endpoint: str = DEFAULT_ENDPOINT,
        oauth2: OAuth2Settings | None = None,
        default_server: Any | None = None,
        require_auth: bool = True,
        json_response: bool = False,
        graceful_shutdown_timeout: float = 5.0,
    ) -> None:
        """
        Initialize the facade. Nothing is bound until `start()`.

        Args:
            name: Name reported by the info route.
            host: Host to bind.
            port: Port to bind. 0 picks a free port.
            endpoint: MCP endpoint path. Must start with "/".
            oauth2: External authorization server to advertise through the well-known routes.
            default_server: MCP server (or `McpBackend`) for sessions created without a credential.
                It is shared by all such sessions and never closed by the facade.
            require_auth: Reject HTTP requests without a bearer credential. Set to False together
                with `default_server` to serve anonymous clients from the default backend.
            json_response: Answer POSTs with JSON bodies instead of SSE streams.
            graceful_shutdown_timeout: Seconds uvicorn waits for open connections on stop.

        Raises:
            ServerConfigurationError: If the endpoint or port is invalid.
        """
        if not endpoint.startswith("/"):
            raise ServerConfigurationError(f"Endpoint must start with '/': {endpoint!r}")
        if not 0 <= port <= 65535:
            raise ServerConfigurationError(f"Port out of range: {port}")

        self._name = name
        self._host = host
        self._port = port
        self._endpoint = endpoint
        self._oauth2 = oauth2
        self._graceful_shutdown_timeout = graceful_shutdown_timeout

        self._events = EventBus()
        self._registry = CredentialRegistry()
        self._cache = InstanceCache(self._registry, events=self._events, adapter=as_backend)
        self._default_backend: McpBackend | None = (
            as_backend(default_server) if default_server is not None else None
        )
        self._sessions = SessionTable(
            self._cache, default_instance=self._default_backend, events=self._events
        )
        self._bridge = StreamableHttpBridge(
            self._sessions,
            require_auth=require_auth,
            json_response=json_response,
            resource_metadata_url=oauth2.resource_metadata_url if oauth2 else None,
        )

        self._uvicorn: uvicorn.Server | None = None
        self._serve_task: asyncio.Task[None] | None = None
        self._info: ListenerInfo | None = None

    # --- Properties ------------------------------------------------------------------------------

    @property
    def name(self) -> str:
        """str: Server name reported by the info route."""
        return self._name

    @property
    def endpoint(self) -> str:
        """str: MCP endpoint path."""
        return self._endpoint

    @property
    def oauth2(self) -> OAuth2Settings | None:
        """OAuth2Settings | None: Advertised authorization server."""
        return self._oauth2

    @property
    def events(self) -> EventBus:
        """EventBus: The facade's event feed."""
        return self._events

    @property
    def cache(self) -> InstanceCache:
        """InstanceCache: The facade's instance cache."""
        return self._cache

    @property
    def sessions(self) -> SessionTable:
        """SessionTable: The facade's session table."""
        return self._sessions

    @property
    def bridge(self) -> StreamableHttpBridge:
        """StreamableHttpBridge: The MCP endpoint."""
        return self._bridge

    @property
    def info(self) -> ListenerInfo | None:
        """ListenerInfo | None: Listener address while running."""
        return self._info

    def on(
        self, event_type: EventType | str, handler: EventHandler
    ) -> Callable[[], None]:
        """
        Subscribe to one event type.

        Args:
            event_type: An `EventType` or its string value (e.g. "session_created").
            handler: Sync or async callable receiving the event.

        Returns:
            Callable[[], None]: Unsubscribe function.
        """
        return self._events.subscribe(handler, EventType(event_type))

    # --- Credentials -----------------------------------------------------------------------------

    async def add_credential(self, credential: str, factory: Factory) -> None:
        """
        Register a credential and emit `credential_added`.

        Re-adding a registered credential swaps its factory the way `update_credential` does (the
        live instance is closed, bound sessions are terminated, and the next resolution emits
        `instance_updated`) but still reports `credential_added`.

        Args:
            credential: The bearer credential. Must be non-empty.
            factory: Sync or async callable returning a FastMCP, low-level Server or McpBackend.

        Raises:
            ValueError: If the credential is empty.
        """
        if not credential:
            raise ValueError("Credential must be a non-empty string")
        if not await self._replace_factory(credential, factory):
            await self._cache.register(credential, factory)
            _LOGGER.info(
                f"[{self.__class__.__name__}] added credential '{redact_credential(credential)}'"
            )
        await self._events.publish(CredentialAdded(credential=credential))

    async def remove_credential(self, credential: str) -> bool:
        """
        Unregister a credential, close its instance and terminate its sessions.

        Returns:
            bool: True if the credential was registered.
        """
        if not self._registry.contains(credential):
            return False

        had_active_sessions = self._sessions.has_sessions(credential)
        instance = self._cache.get_cached(credential)
        await self._cache.unregister(credential)
        if instance is not None:
            await self._events.publish(
                InstanceRemoved(
                    credential=credential,
                    instance_name=describe_instance(instance)[0],
                    had_active_sessions=had_active_sessions,
                )
            )
        terminated = await self._sessions.destroy_for(credential)
        _LOGGER.info(
            f"[{self.__class__.__name__}] removed credential '{redact_credential(credential)}' "
            f"({terminated} sessions terminated)"
        )
        await self._events.publish(CredentialRemoved(credential=credential))
        return True

    async def update_credential(self, credential: str, factory: Factory) -> bool:
        """
        Replace a registered credential's factory.

        The live instance is closed and bound sessions are terminated; the next resolution builds
        from the new factory and emits `instance_updated`.

        Returns:
            bool: False, with no side effect, if the credential is not registered.
        """
        if not await self._replace_factory(credential, factory):
            return False
        await self._events.publish(CredentialUpdated(credential=credential))
        return True

    async def _replace_factory(self, credential: str, factory: Factory) -> bool:
        """Swap a registered credential's factory and terminate its sessions. No-op if unknown."""
        if not await self._cache.replace(credential, factory):
            return False
        terminated = await self._sessions.destroy_for(credential)
        _LOGGER.info(
            f"[{self.__class__.__name__}] replaced factory for credential '{redact_credential(credential)}' "
            f"({terminated} sessions terminated)"
        )
        return True

    def has_credential(self, credential: str) -> bool:
        """Return True if the credential is registered."""
        return self._registry.contains(credential)

    def list_credentials(self) -> list[str]:
        """Return registered credentials in registration order."""
        return self._registry.list()

    # --- Sessions --------------------------------------------------------------------------------

    async def verify(self, credential: str) -> Principal:
        """Verify a credential. See `InstanceCache.verify`."""
        return await self._cache.verify(credential)

    async def resolve(self, credential: str, principal: Principal | None = None) -> Any:
        """Resolve a credential's backend. See `InstanceCache.resolve`."""
        return await self._cache.resolve(credential, principal)

    async def create_session(self, credential: str | None = None) -> SessionRecord:
        """Create a session. See `SessionTable.create_session`."""
        return await self._sessions.create_session(credential)

    def get_session(self, session_id: str) -> SessionRecord | None:
        """Return a live session, or None."""
        return self._sessions.get(session_id)

    async def destroy_session(self, session_id: str) -> bool:
        """Destroy a session. Returns False if it did not exist."""
        return await self._sessions.destroy(session_id)

    async def destroy_all_sessions(self) -> int:
        """Destroy every live session. Returns the number destroyed."""
        return await self._sessions.destroy_all()

    async def record_activity(
        self,
        session_id: str,
        activity: str,
        *,
        tool_name: str | None = None,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        """Publish activity for a session. See `SessionTable.record_activity`."""
        await self._sessions.record_activity(
            session_id, activity, tool_name=tool_name, arguments=arguments
        )

    async def report_transport_error(self, session_id: str, error: BaseException) -> None:
        """Publish a transport failure for a session. The session is left intact."""
        await self._sessions.report_transport_error(session_id, error)

    def stats(self) -> StatsSnapshot:
        """Aggregate registry, cache and session table state."""
        cache_stats = self._cache.stats()
        return StatsSnapshot(
            registered_credentials=cache_stats.registered,
            cached_instances=cache_stats.cached,
            active_sessions=self._sessions.count(),
            credentials=cache_stats.credentials,
            cached_credentials=cache_stats.cached_credentials,
            sessions=tuple(self._sessions.list_sessions()),
        )

    # --- Listener --------------------------------------------------------------------------------

    def is_running(self) -> bool:
        """Return True while the listener is serving."""
        return self._serve_task is not None and not self._serve_task.done()

    async def start(
        self,
        host: str | None = None,
        port: int | None = None,
        endpoint: str | None = None,
    ) -> ListenerInfo:
        """
        Bind the listener and start serving.

        Args:
            host: Overrides the constructor's host.
            port: Overrides the constructor's port. 0 picks a free port.
            endpoint: Overrides the constructor's MCP endpoint path. Kept for later restarts.

        Returns:
            ListenerInfo: The bound address, with the real port.

        Raises:
            ListenerAlreadyRunningError: If already running.
            ServerConfigurationError: If the endpoint does not start with "/".
            ListenerError: If the socket cannot be bound or uvicorn exits during startup.
        """
        if self._serve_task is not None:
            raise ListenerAlreadyRunningError("Server is already running")
        if endpoint is not None:
            if not endpoint.startswith("/"):
                raise ServerConfigurationError(
                    f"Endpoint must start with '/': {endpoint!r}"
                )
            self._endpoint = endpoint

        host = host or self._host
        port = self._port if port is None else port
        sock = _bind_socket(host, port)
        bound_port = sock.getsockname()[1]

        config = uvicorn.Config(
            build_app(self, self._bridge),
            lifespan="on",
            log_config=None,
            timeout_graceful_shutdown=self._graceful_shutdown_timeout,
        )
        server = uvicorn.Server(config)
        self._sessions.start_accepting()
        task = asyncio.create_task(server.serve(sockets=[sock]))
        self._uvicorn = server
        self._serve_task = task

        while not server.started:
            if task.done():
                self._uvicorn = None
                self._serve_task = None
                sock.close()
                error = None if task.cancelled() else task.exception()
                raise ListenerError(
                    f"Listener exited during startup on {host}:{bound_port}: {error}"
                ) from error
            await asyncio.sleep(0.01)

        url_host = f"[{host}]" if ":" in host else host
        self._info = ListenerInfo(
            url=f"http://{url_host}:{bound_port}",
            host=host,
            port=bound_port,
            endpoint=self._endpoint,
        )
        _LOGGER.warning(
            f"[{self.__class__.__name__}] '{self._name}' listening on {self._info.mcp_url}"
        )
        await self._events.publish(ListenerStarted(info=self._info))
        return self._info

    async def stop(self) -> None:
        """
        Shut the listener down gracefully.

        Stops accepting sessions, destroys every session, closes every cached instance and then
        stops uvicorn. Registered credentials are kept, so `start()` may be called again.

        Raises:
            ListenerNotRunningError: If not running.
        """
        if self._serve_task is None or self._uvicorn is None:
            raise ListenerNotRunningError("Server is not running")

        server, task = self._uvicorn, self._serve_task
        _LOGGER.info(f"[{self.__class__.__name__}] stopping '{self._name}'...")
        self._sessions.stop_accepting()
        await self._sessions.destroy_all()
        await self._cache.invalidate_all()

        server.should_exit = True
        try:
            await task
        except Exception as e:
            _LOGGER.error(f"[{self.__class__.__name__}] listener exited with error: {e}")
        finally:
            self._uvicorn = None
            self._serve_task = None
            self._info = None

        _LOGGER.info(f"[{self.__class__.__name__}] '{self._name}' stopped")
        await self._events.publish(ListenerStopped())

    async def close(self) -> None:
        """
        Full shutdown: stop the listener if running, destroy sessions, close instances and release
        the credential registry. The default backend is not closed.
        """
        if self._serve_task is not None:
            await self.stop()
        else:
            self._sessions.stop_accepting()
            await self._sessions.destroy_all()
        await self._cache.close()

    async def serve_forever(self) -> None:
        """
        Serve until the listener exits (uvicorn handles SIGINT/SIGTERM), then shut down fully.
        Starts the listener first if needed.
        """
        if self._serve_task is None:
            await self.start()
        task = self._serve_task
        assert task is not None
        try:
            await asyncio.wait({task})
        finally:
            await self.close()

    async def __aenter__(self) -> "BearerMcpServer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


def _bind_socket(host: str, port: int) -> socket.socket:
    """
    Bind a listening TCP socket for uvicorn.

    Binding here instead of inside uvicorn turns bind failures into `ListenerError` (uvicorn exits the
    process on them) and reveals the real port when 0 is requested.
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        _LOGGER.error(f"[_server:_bind_socket] cannot bind {host}:{port}: {e}")
        raise ListenerError(f"Cannot bind {host}:{port}: {e}") from e
    return sock
