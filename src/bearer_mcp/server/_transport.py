"""
Streamable-HTTP transport bridge.

`StreamableHttpBridge` is the ASGI endpoint mounted at the MCP path. It is the authorization boundary
and the point where the lifecycle meets the MCP wire protocol:

- Every request's bearer credential is verified through the instance cache before it proceeds.
- An `initialize` POST without an `mcp-session-id` header creates a session (which resolves the
  credential's backend), binds a fresh `StreamableHTTPServerTransport` to it and starts
  `server.run()` for that transport in the bridge's task group.
- Later requests are routed to the session's transport, after checking that the session exists
  and belongs to the presenting credential.
- When a transport ends (DELETE, backend closed, or failure) its session is destroyed. When a
  session is destroyed elsewhere (credential removal, shutdown) its transport is terminated.

Message framing, SSE streaming and the MCP handshake are handled entirely by the `mcp` library.

HTTP errors:
    - 401 `invalid_token` for a missing or unknown bearer credential.
    - 400 for a missing session id on GET/DELETE or a non-initialize POST without one.
    - 403 when a session is presented with a different credential than it was created with.
    - 404 for an unknown session id.
    - 500 when the credential's factory fails or an internal invariant is violated.
    - 503 while the listener is not running or shutting down.
"""

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import anyio
from anyio.abc import TaskGroup, TaskStatus
from mcp.server.streamable_http import StreamableHTTPServerTransport
from mcp.types import INTERNAL_ERROR, INVALID_REQUEST, ErrorData, JSONRPCError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Receive, Scope, Send

from bearer_mcp._exceptions import (
    FactoryFailedError,
    InternalError,
    InvalidCredentialError,
    ListenerStoppedError,
    NoBackendAvailableError,
    SessionNotFoundError,
)
from bearer_mcp._logging import redact_credential
from bearer_mcp.lifecycle import (
    EventType,
    LifecycleEvent,
    SessionRecord,
    SessionTable,
)

from ._backend import McpBackend

_LOGGER = logging.getLogger(__name__)

MCP_SESSION_ID_HEADER = "mcp-session-id"
"""str: Header carrying the session id, generated by the server and echoed by clients."""


def parse_bearer(authorization: str | None) -> str | None:
    """
    Extract the credential from an `Authorization: Bearer <credential>` header value.

    Args:
        authorization: The raw header value, or None.

    Returns:
        str | None: The credential, or None if the header is missing, empty or not a bearer header.
    """
    if not authorization:
        return None
    scheme, _, credential = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credential = credential.strip()
    return credential or None


def parse_jsonrpc_messages(body: bytes) -> list[dict[str, Any]]:
    """
    Parse a POST body into a list of JSON-RPC message objects.

    Accepts a single message or a batch. Anything that does not parse as JSON, and any batch entry
    that is not an object, is ignored; the transport reports protocol errors itself.
    """
    try:
        payload = json.loads(body) if body else None
    except (ValueError, UnicodeDecodeError):
        return []
    if isinstance(payload, dict):
        return [payload]
    if isinstance(payload, list):
        return [m for m in payload if isinstance(m, dict)]
    return []


def _replay_receive(body: bytes, receive: Receive) -> Receive:
    """Return a receive callable that yields an already-read body once, then defers to `receive`."""
    replayed = False

    async def _receive() -> Any:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return _receive


def _jsonrpc_error(status_code: int, code: int, message: str) -> Response:
    error = JSONRPCError(
        jsonrpc="2.0", id="server-error", error=ErrorData(code=code, message=message)
    )
    return Response(
        content=error.model_dump_json(by_alias=True, exclude_none=True),
        status_code=status_code,
        media_type="application/json",
    )


class StreamableHttpBridge:
    """
    ASGI endpoint connecting HTTP requests to per-credential MCP backends.

    The bridge must be running (`async with bridge.run(): ...`, normally from the Starlette lifespan)
    before it can start backend tasks; requests arriving outside that window get a 503.
    """

    def __init__(
        self,
        sessions: SessionTable,
        *,
        require_auth: bool = True,
        json_response: bool = False,
        resource_metadata_url: str | None = None,
    ) -> None:
        """
        Initialize the bridge.

        Args:
            sessions: The session table. Its instance cache is used for verification.
            require_auth: Reject requests without a bearer credential. When False, such requests bind
                to the session table's default instance.
            json_response: Answer POSTs with JSON instead of SSE streams.
            resource_metadata_url: Protected-resource metadata URL advertised in `WWW-Authenticate`.
        """
        self._sessions = sessions
        self._cache = sessions.cache
        self._require_auth = require_auth
        self._json_response = json_response
        self._resource_metadata_url = resource_metadata_url
        self._transports: dict[str, StreamableHTTPServerTransport] = {}
        self._task_group: TaskGroup | None = None
        self._unsubscribe = self._cache.events.subscribe(
            self._on_session_destroyed, EventType.SESSION_DESTROYED
        )

    @property
    def running(self) -> bool:
        """bool: True while the bridge's task group is active."""
        return self._task_group is not None

    @property
    def transport_count(self) -> int:
        """int: Number of live transports."""
        return len(self._transports)

    @asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """Run the task group that hosts backend tasks. Exiting cancels every backend task."""
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            _LOGGER.info(f"[{self.__class__.__name__}] started")
            try:
                yield
            finally:
                self._task_group = None
                tg.cancel_scope.cancel()
                _LOGGER.info(f"[{self.__class__.__name__}] stopped")

    def close(self) -> None:
        """Stop following session events."""
        self._unsubscribe()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        if self._task_group is None:
            response = _jsonrpc_error(503, INTERNAL_ERROR, "Service unavailable")
            await response(scope, receive, send)
            return

        credential = parse_bearer(request.headers.get("authorization"))
        if credential is None and self._require_auth:
            await self._unauthorized("Missing bearer token")(scope, receive, send)
            return
        if credential is not None:
            try:
                await self._cache.verify(credential)
            except InvalidCredentialError as e:
                await self._unauthorized(str(e))(scope, receive, send)
                return

        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if session_id is None:
            await self._handle_new_session(request, credential, scope, receive, send)
        else:
            await self._handle_existing_session(
                request, credential, session_id, scope, receive, send
            )

    async def _handle_new_session(
        self,
        request: Request,
        credential: str | None,
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        if request.method != "POST":
            response = _jsonrpc_error(
                400, INVALID_REQUEST, "Bad Request: Missing session ID"
            )
            await response(scope, receive, send)
            return

        body = await request.body()
        messages = parse_jsonrpc_messages(body)
        if not any(m.get("method") == "initialize" for m in messages):
            response = _jsonrpc_error(
                400, INVALID_REQUEST, "Bad Request: Missing session ID"
            )
            await response(scope, receive, send)
            return

        try:
            record = await self._sessions.create_session(credential)
        except (InvalidCredentialError, NoBackendAvailableError) as e:
            await self._unauthorized(str(e))(scope, receive, send)
            return
        except ListenerStoppedError as e:
            await _jsonrpc_error(503, INTERNAL_ERROR, str(e))(scope, receive, send)
            return
        except FactoryFailedError as e:
            _LOGGER.error(
                f"[{self.__class__.__name__}] cannot create session for credential '{redact_credential(credential)}': {e}"
            )
            response = _jsonrpc_error(
                500, INTERNAL_ERROR, "Failed to create server instance"
            )
            await response(scope, receive, send)
            return
        except InternalError as e:
            _LOGGER.error(
                f"[{self.__class__.__name__}] internal error creating session for credential '{redact_credential(credential)}': {e}"
            )
            await _jsonrpc_error(500, INTERNAL_ERROR, "Internal server error")(
                scope, receive, send
            )
            return

        backend: McpBackend = record.instance
        transport = StreamableHTTPServerTransport(
            mcp_session_id=record.session_id,
            is_json_response_enabled=self._json_response,
        )
        try:
            backend.attach(record.session_id, transport)
        except Exception as e:
            _LOGGER.warning(
                f"[{self.__class__.__name__}] backend '{backend.name}' closed before session {record.session_id} started: {e}"
            )
            await self._sessions.destroy(record.session_id)
            await _jsonrpc_error(503, INTERNAL_ERROR, str(e))(scope, receive, send)
            return
        self._transports[record.session_id] = transport

        assert self._task_group is not None
        await self._task_group.start(self._run_backend, record, transport)
        await transport.handle_request(scope, _replay_receive(body, receive), send)

    async def _handle_existing_session(
        self,
        request: Request,
        credential: str | None,
        session_id: str,
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        record = self._sessions.get(session_id)
        transport = self._transports.get(session_id)
        if record is None or transport is None:
            response = _jsonrpc_error(404, INVALID_REQUEST, "Session not found")
            await response(scope, receive, send)
            return
        if record.credential != credential:
            _LOGGER.warning(
                f"[{self.__class__.__name__}] session {session_id} presented with a different credential"
            )
            response = _jsonrpc_error(
                403, INVALID_REQUEST, "Session belongs to a different token"
            )
            await response(scope, receive, send)
            return

        if request.method == "POST":
            body = await request.body()
            try:
                await self._record_activity(record, parse_jsonrpc_messages(body))
            except SessionNotFoundError:
                # Destroyed while the body was being read
                response = _jsonrpc_error(404, INVALID_REQUEST, "Session not found")
                await response(scope, receive, send)
                return
            receive = _replay_receive(body, receive)

        await transport.handle_request(scope, receive, send)

        if request.method == "DELETE" or transport.is_terminated:
            await self._sessions.destroy(session_id)

    async def _record_activity(
        self, record: SessionRecord, messages: list[dict[str, Any]]
    ) -> None:
        for message in messages:
            method = message.get("method")
            if not isinstance(method, str):
                continue
            tool_name = None
            arguments: dict[str, Any] = {}
            if method == "tools/call":
                params = message.get("params") or {}
                tool_name = params.get("name")
                arguments = params.get("arguments") or {}
            await self._sessions.record_activity(
                record.session_id, method, tool_name=tool_name, arguments=arguments
            )

    async def _run_backend(
        self,
        record: SessionRecord,
        transport: StreamableHTTPServerTransport,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        """Run the backend's MCP server against one session's transport until the transport ends."""
        server = record.instance.server
        try:
            async with transport.connect() as (read_stream, write_stream):
                task_status.started()
                await server.run(
                    read_stream,
                    write_stream,
                    server.create_initialization_options(),
                    stateless=False,
                )
        except Exception as e:
            _LOGGER.error(
                f"[{self.__class__.__name__}] session {record.session_id} transport failed: {e}"
            )
            await self._sessions.report_transport_error(record.session_id, e)
        finally:
            with anyio.CancelScope(shield=True):
                self._transports.pop(record.session_id, None)
                record.instance.detach(record.session_id)
                await self._sessions.destroy(record.session_id)

    async def _on_session_destroyed(self, event: LifecycleEvent) -> None:
        session_id = event.session_id  # type: ignore[attr-defined]
        transport = self._transports.pop(session_id, None)
        if transport is None or transport.is_terminated:
            return
        try:
            await transport.terminate()
        except Exception as e:
            _LOGGER.warning(
                f"[{self.__class__.__name__}] failed to terminate transport for session {session_id}: {e}"
            )

    def _unauthorized(self, description: str) -> Response:
        challenge = f'Bearer error="invalid_token", error_description="{description}"'
        if self._resource_metadata_url:
            challenge += f', resource_metadata="{self._resource_metadata_url}"'
        return JSONResponse(
            {"error": InvalidCredentialError.reason, "error_description": description},
            status_code=401,
            headers={"WWW-Authenticate": challenge},
        )
