"""
Tests for the BearerMcpServer facade: credential management, event ordering, statistics and the
uvicorn-backed listener.
"""

import socket

import httpx
import pytest
from mcp.server.fastmcp import FastMCP

from bearer_mcp._exceptions import (
    InvalidCredentialError,
    ListenerAlreadyRunningError,
    ListenerError,
    ListenerNotRunningError,
    ServerConfigurationError,
)
from bearer_mcp.lifecycle import EventType
from bearer_mcp.server import BearerMcpServer, McpBackend

MATH = "math-token-0123456789"
TEXT = "text-token-0123456789"


def make_math_server():
    return FastMCP("math")


def make_math_v2_server():
    return FastMCP("math-v2")


async def make_text_server():
    return FastMCP("text")


def record_events(server):
    events = []
    server.events.subscribe(events.append)
    return events


def test_rejects_invalid_endpoint_and_port():
    with pytest.raises(ServerConfigurationError):
        BearerMcpServer(endpoint="mcp")
    with pytest.raises(ServerConfigurationError):
        BearerMcpServer(port=70000)


@pytest.mark.asyncio
async def test_add_credential_emits_credential_added():
    server = BearerMcpServer()
    events = record_events(server)
    await server.add_credential(MATH, make_math_server)

    assert server.has_credential(MATH)
    assert server.list_credentials() == [MATH]
    assert [e.type for e in events] == [EventType.CREDENTIAL_ADDED]
    assert events[0].credential == MATH


@pytest.mark.asyncio
async def test_add_credential_rejects_empty():
    server = BearerMcpServer()
    with pytest.raises(ValueError):
        await server.add_credential("", make_math_server)


@pytest.mark.asyncio
async def test_resolve_wraps_factory_result_in_backend():
    server = BearerMcpServer()
    await server.add_credential(TEXT, make_text_server)
    principal = await server.verify(TEXT)
    backend = await server.resolve(TEXT, principal)
    assert isinstance(backend, McpBackend)
    assert backend.name == "text"
    assert await server.resolve(TEXT) is backend


@pytest.mark.asyncio
async def test_remove_credential_event_order():
    """Removing a credential with a live session closes the instance, then the session, then reports."""
    server = BearerMcpServer()
    await server.add_credential(MATH, make_math_server)
    record = await server.create_session(MATH)
    backend = record.instance
    events = record_events(server)

    assert await server.remove_credential(MATH) is True

    assert [e.type for e in events] == [
        EventType.INSTANCE_REMOVED,
        EventType.SESSION_DESTROYED,
        EventType.CREDENTIAL_REMOVED,
    ]
    assert events[0].had_active_sessions is True
    assert events[0].instance_name == "math"
    assert events[1].session_id == record.session_id
    assert backend.closed
    assert server.stats().active_sessions == 0
    assert not server.has_credential(MATH)
    with pytest.raises(InvalidCredentialError):
        await server.verify(MATH)


@pytest.mark.asyncio
async def test_remove_credential_without_instance():
    server = BearerMcpServer()
    await server.add_credential(MATH, make_math_server)
    events = record_events(server)

    assert await server.remove_credential(MATH) is True
    assert await server.remove_credential(MATH) is False
    assert [e.type for e in events] == [EventType.CREDENTIAL_REMOVED]


@pytest.mark.asyncio
async def test_stats_read_inside_credential_removed_handler():
    server = BearerMcpServer()
    await server.add_credential(MATH, make_math_server)
    await server.create_session(MATH)
    seen = []
    server.on("credential_removed", lambda e: seen.append(server.stats()))

    await server.remove_credential(MATH)

    assert seen[0].active_sessions == 0
    assert seen[0].registered_credentials == 0


@pytest.mark.asyncio
async def test_remove_credential_with_idle_instance_reports_no_active_sessions():
    server = BearerMcpServer()
    await server.add_credential(MATH, make_math_server)
    backend = await server.resolve(MATH)
    events = record_events(server)

    assert await server.remove_credential(MATH) is True

    assert [e.type for e in events] == [
        EventType.INSTANCE_REMOVED,
        EventType.CREDENTIAL_REMOVED,
    ]
    assert events[0].had_active_sessions is False
    assert events[0].instance_name == "math"
    assert backend.closed


@pytest.mark.asyncio
async def test_re_adding_credential_reports_credential_added():
    server = BearerMcpServer()
    events = record_events(server)
    await server.add_credential(MATH, make_math_server)
    record = await server.create_session(MATH)
    old = record.instance

    await server.add_credential(MATH, make_math_v2_server)

    assert old.closed
    assert server.get_session(record.session_id) is None
    assert server.list_credentials() == [MATH]
    assert [e.type for e in events if e.type.value.startswith("credential")] == [
        EventType.CREDENTIAL_ADDED,
        EventType.CREDENTIAL_ADDED,
    ]
    assert events[-2].type is EventType.SESSION_DESTROYED

    new = await server.create_session(MATH)
    assert new.instance_name == "math-v2"
    updated = [e for e in events if e.type is EventType.INSTANCE_UPDATED]
    assert [(e.old_instance_name, e.new_instance_name) for e in updated] == [("math", "math-v2")]


@pytest.mark.asyncio
async def test_update_credential_sequence():
    server = BearerMcpServer()
    await server.add_credential(MATH, make_math_server)
    record = await server.create_session(MATH)
    old = record.instance
    events = record_events(server)

    assert await server.update_credential(MATH, make_math_v2_server) is True

    assert old.closed
    assert server.get_session(record.session_id) is None
    assert [e.type for e in events] == [
        EventType.SESSION_DESTROYED,
        EventType.CREDENTIAL_UPDATED,
    ]

    new = await server.create_session(MATH)
    assert new.instance_name == "math-v2"
    updated = [e for e in events if e.type is EventType.INSTANCE_UPDATED]
    assert len(updated) == 1
    assert updated[0].old_instance_name == "math"
    assert updated[0].new_instance_name == "math-v2"


@pytest.mark.asyncio
async def test_update_unknown_credential_is_a_no_op():
    server = BearerMcpServer()
    events = record_events(server)
    assert await server.update_credential(MATH, make_math_server) is False
    assert not server.has_credential(MATH)
    assert events == []


@pytest.mark.asyncio
async def test_stats_snapshot():
    server = BearerMcpServer()
    await server.add_credential(MATH, make_math_server)
    await server.add_credential(TEXT, make_text_server)
    a = await server.create_session(MATH)
    await server.create_session(MATH)

    stats = server.stats()
    assert stats.registered_credentials == 2
    assert stats.cached_instances == 1
    assert stats.active_sessions == 2
    assert stats.credentials == (MATH, TEXT)
    assert stats.cached_credentials == (MATH,)
    assert [s.session_id for s in stats.sessions][0] == a.session_id

    assert await server.destroy_all_sessions() == 2
    assert server.stats().cached_instances == 0


@pytest.mark.asyncio
async def test_activity_and_transport_errors_are_published():
    server = BearerMcpServer()
    await server.add_credential(MATH, make_math_server)
    record = await server.create_session(MATH)
    activity, errors = [], []
    server.on(EventType.ACTIVITY_RECORDED, activity.append)
    server.on("transport_error", errors.append)

    await server.record_activity(record.session_id, "tools/list")
    await server.report_transport_error(record.session_id, OSError("reset"))

    assert activity[0].activity == "tools/list"
    assert errors[0].session_id == record.session_id
    assert server.get_session(record.session_id) is record
    assert await server.destroy_session(record.session_id) is True
    assert await server.destroy_session(record.session_id) is False


@pytest.mark.asyncio
async def test_on_rejects_unknown_event_name():
    server = BearerMcpServer()
    with pytest.raises(ValueError):
        server.on("no_such_event", print)


@pytest.mark.asyncio
async def test_close_keeps_default_server_open():
    server = BearerMcpServer(default_server=FastMCP("public"))
    await server.add_credential(MATH, make_math_server)
    anonymous = await server.create_session()
    tenant = await server.create_session(MATH)

    await server.close()

    assert server.stats().active_sessions == 0
    assert server.list_credentials() == []
    assert tenant.instance.closed
    assert not anonymous.instance.closed


@pytest.mark.asyncio
async def test_stop_when_not_running():
    server = BearerMcpServer()
    assert not server.is_running()
    with pytest.raises(ListenerNotRunningError):
        await server.stop()


@pytest.mark.asyncio
async def test_start_and_stop_listener():
    server = BearerMcpServer(name="listener-test")
    await server.add_credential(MATH, make_math_server)
    events = record_events(server)

    info = await server.start()
    try:
        assert server.is_running()
        assert info.port > 0
        assert info.mcp_url == f"http://127.0.0.1:{info.port}/mcp"
        assert server.info == info

        async with httpx.AsyncClient(base_url=info.url) as client:
            health = await client.get("/health")
            assert health.json() == {"status": "ok"}
            body = (await client.get("/")).json()
            assert body["status"] == "running"
            assert body["server"] == "listener-test"

        with pytest.raises(ListenerAlreadyRunningError):
            await server.start()
    finally:
        await server.stop()

    assert not server.is_running()
    assert server.info is None
    assert [e.type for e in events] == [EventType.STARTED, EventType.STOPPED]
    assert events[0].info == info
    # Credentials survive a stop
    assert server.has_credential(MATH)


@pytest.mark.asyncio
async def test_start_with_endpoint_override():
    server = BearerMcpServer()
    with pytest.raises(ServerConfigurationError):
        await server.start(endpoint="tenants")
    assert not server.is_running()

    info = await server.start(endpoint="/tenants")
    try:
        assert info.endpoint == "/tenants"
        assert server.endpoint == "/tenants"
        async with httpx.AsyncClient(base_url=info.url) as client:
            body = (await client.get("/")).json()
            assert body["endpoints"]["mcp"] == "/tenants"
            # The MCP route is mounted at the new path and requires a bearer
            assert (await client.post("/tenants", json={})).status_code == 401
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_start_reports_bind_failure():
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen()
    port = blocker.getsockname()[1]
    try:
        server = BearerMcpServer()
        with pytest.raises(ListenerError):
            await server.start(port=port)
        assert not server.is_running()
    finally:
        blocker.close()


@pytest.mark.asyncio
async def test_async_context_manager():
    async with BearerMcpServer() as server:
        assert server.is_running()
        await server.add_credential(MATH, make_math_server)
    assert not server.is_running()
    assert server.list_credentials() == []
