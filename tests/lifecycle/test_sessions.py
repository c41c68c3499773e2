"""
Unit tests for SessionTable: creation, lookup, destruction and instance release.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from bearer_mcp._exceptions import (
    FactoryFailedError,
    InvalidCredentialError,
    ListenerStoppedError,
    NoBackendAvailableError,
    SessionNotFoundError,
    TransportError,
)
from bearer_mcp.lifecycle import (
    ActivityRecorded,
    EventBus,
    EventType,
    InstanceCache,
    SessionCreated,
    SessionDestroyed,
    SessionTable,
    TransportErrorEvent,
)

CRED = "math-token-0123456789"
OTHER = "text-token-0123456789"


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def events(bus):
    received = []
    bus.subscribe(received.append)
    return received


@pytest.fixture
def cache(bus):
    return InstanceCache(events=bus)


@pytest.fixture
def table(cache):
    return SessionTable(cache)


@pytest.mark.asyncio
async def test_create_session_binds_current_instance(cache, table, events, make_factory):
    await cache.register(CRED, make_factory(name="math"))
    record = await table.create_session(CRED)

    assert table.get(record.session_id) is record
    assert record.credential == CRED
    assert record.instance is cache.get_cached(CRED)
    assert record.instance_name == "math"
    assert record.session_id in table
    assert len(table) == 1

    created = [e for e in events if isinstance(e, SessionCreated)]
    assert len(created) == 1
    assert created[0].session_id == record.session_id
    assert created[0].credential == CRED
    assert created[0].instance_name == "math"


@pytest.mark.asyncio
async def test_sessions_for_one_credential_share_an_instance(cache, table, make_factory):
    factory = make_factory()
    await cache.register(CRED, factory)
    a = await table.create_session(CRED)
    b = await table.create_session(CRED)

    assert a.session_id != b.session_id
    assert a.instance is b.instance
    assert factory.calls == 1
    assert table.count() == 2
    assert [r.session_id for r in table.sessions_for(CRED)] == [a.session_id, b.session_id]
    assert table.has_sessions(CRED)
    assert not table.has_sessions(OTHER)


@pytest.mark.asyncio
async def test_create_session_rejects_unknown_credential(table):
    with pytest.raises(InvalidCredentialError):
        await table.create_session("unknown-token-000000")
    assert table.count() == 0


@pytest.mark.asyncio
async def test_create_session_propagates_factory_failure(cache, table, events, make_factory):
    await cache.register(CRED, make_factory(error=RuntimeError("boom")))
    with pytest.raises(FactoryFailedError):
        await table.create_session(CRED)
    assert table.count() == 0
    assert not any(isinstance(e, SessionCreated) for e in events)


@pytest.mark.asyncio
async def test_create_session_fails_auth_when_credential_removed_mid_construction(
    cache, table, events, make_factory, caplog
):
    gate = asyncio.Event()
    factory = make_factory(gate=gate)
    await cache.register(CRED, factory)

    task = asyncio.create_task(table.create_session(CRED))
    await factory.started.wait()
    assert await cache.unregister(CRED) is True
    gate.set()

    with pytest.raises(InvalidCredentialError) as exc_info:
        await task
    assert exc_info.value.reason == "invalid_token"
    assert table.count() == 0
    assert not cache.is_cached(CRED)
    factory.instances[0].close.assert_awaited_once()
    assert not any(isinstance(e, SessionCreated) for e in events)
    assert not any("no factory registered" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_create_session_without_credential_needs_default(cache, make_instance):
    with pytest.raises(NoBackendAvailableError):
        await SessionTable(cache).create_session()

    default = make_instance("default")
    table = SessionTable(cache, default_instance=default)
    record = await table.create_session()
    assert record.credential is None
    assert record.instance is default
    assert table.default_instance is default


@pytest.mark.asyncio
async def test_create_session_refused_while_stopped(cache, table, make_factory):
    await cache.register(CRED, make_factory())
    table.stop_accepting()
    assert not table.accepting
    with pytest.raises(ListenerStoppedError):
        await table.create_session(CRED)

    table.start_accepting()
    assert (await table.create_session(CRED)).credential == CRED


@pytest.mark.asyncio
async def test_create_session_re_resolves_replaced_instance(bus, cache, table, make_factory):
    """A replacement that lands while a session is being created is picked up."""
    replacement = make_factory(name="replacement")
    replaced = False

    async def swap_factory(event):
        nonlocal replaced
        if not replaced:
            replaced = True
            await cache.register(CRED, replacement)

    bus.subscribe(swap_factory, EventType.INSTANCE_REGISTERED)
    original = make_factory(name="original")
    await cache.register(CRED, original)

    record = await table.create_session(CRED)

    assert record.instance_name == "replacement"
    assert cache.is_current(CRED, record.instance)
    original.instances[0].close.assert_awaited_once()


@pytest.mark.asyncio
async def test_destroy_is_idempotent(table, cache, events, make_factory):
    await cache.register(CRED, make_factory())
    record = await table.create_session(CRED)

    assert await table.destroy(record.session_id) is True
    assert await table.destroy(record.session_id) is False
    assert table.get(record.session_id) is None

    destroyed = [e for e in events if isinstance(e, SessionDestroyed)]
    assert [(e.session_id, e.credential) for e in destroyed] == [
        (record.session_id, CRED)
    ]


@pytest.mark.asyncio
async def test_last_session_releases_instance(cache, table, make_factory):
    await cache.register(CRED, make_factory())
    a = await table.create_session(CRED)
    b = await table.create_session(CRED)
    instance = a.instance

    await table.destroy(a.session_id)
    instance.close.assert_not_awaited()
    assert cache.is_cached(CRED)

    await table.destroy(b.session_id)
    instance.close.assert_awaited_once()
    assert not cache.is_cached(CRED)
    # Credential stays registered
    assert cache.registry.contains(CRED)


@pytest.mark.asyncio
async def test_default_instance_is_never_released(cache, make_instance):
    default = make_instance("default")
    table = SessionTable(cache, default_instance=default)
    record = await table.create_session()
    with patch.object(cache, "release", new=AsyncMock()) as release:
        await table.destroy(record.session_id)
    release.assert_not_awaited()
    default.close.assert_not_awaited()


@pytest.mark.asyncio
async def test_destroy_all(cache, table, make_factory):
    await cache.register(CRED, make_factory())
    await cache.register(OTHER, make_factory())
    for credential in (CRED, CRED, OTHER):
        await table.create_session(credential)

    assert await table.destroy_all() == 3
    assert table.count() == 0
    assert await table.destroy_all() == 0


@pytest.mark.asyncio
async def test_destroy_all_continues_past_failures(cache, table, make_factory):
    await cache.register(CRED, make_factory())
    await cache.register(OTHER, make_factory())
    await table.create_session(CRED)
    await table.create_session(OTHER)

    calls = 0

    async def flaky_release(credential, instance):
        nonlocal calls
        calls += 1
        if credential == CRED:
            raise RuntimeError("release failed")
        return True

    with patch.object(cache, "release", side_effect=flaky_release):
        assert await table.destroy_all() == 1
    assert calls == 2
    assert table.count() == 0


@pytest.mark.asyncio
async def test_destroy_for_only_touches_one_credential(cache, table, make_factory):
    await cache.register(CRED, make_factory())
    await cache.register(OTHER, make_factory())
    await table.create_session(CRED)
    await table.create_session(CRED)
    keep = await table.create_session(OTHER)

    assert await table.destroy_for(CRED) == 2
    assert [r.session_id for r in table.sessions_for(OTHER)] == [keep.session_id]
    assert await table.destroy_for(CRED) == 0


@pytest.mark.asyncio
async def test_require_raises_for_unknown_session(table):
    with pytest.raises(SessionNotFoundError) as exc_info:
        table.require("nope")
    assert str(exc_info.value) == "Session not found: nope"
    assert isinstance(exc_info.value, KeyError)


@pytest.mark.asyncio
async def test_record_activity_publishes_event(cache, table, events, make_factory):
    await cache.register(CRED, make_factory())
    record = await table.create_session(CRED)

    await table.record_activity(
        record.session_id, "tools/call", tool_name="add", arguments={"a": 1, "b": 2}
    )

    activity = [e for e in events if isinstance(e, ActivityRecorded)]
    assert len(activity) == 1
    assert activity[0].session_id == record.session_id
    assert activity[0].credential == CRED
    assert activity[0].activity == "tools/call"
    assert activity[0].tool_name == "add"
    assert activity[0].arguments == {"a": 1, "b": 2}

    with pytest.raises(SessionNotFoundError):
        await table.record_activity("missing", "ping")


@pytest.mark.asyncio
async def test_report_transport_error_keeps_session(cache, table, events, make_factory):
    await cache.register(CRED, make_factory())
    record = await table.create_session(CRED)
    cause = ConnectionResetError("peer went away")

    await table.report_transport_error(record.session_id, cause)

    errors = [e for e in events if isinstance(e, TransportErrorEvent)]
    assert len(errors) == 1
    assert isinstance(errors[0].error, TransportError)
    assert errors[0].error.__cause__ is cause
    assert record.session_id in table

    direct = TransportError("stream closed")
    await table.report_transport_error(record.session_id, direct)
    assert events[-1].error is direct


@pytest.mark.asyncio
async def test_list_sessions(cache, table, make_factory):
    await cache.register(CRED, make_factory(name="math"))
    record = await table.create_session(CRED)

    infos = table.list_sessions()
    assert len(infos) == 1
    assert infos[0].session_id == record.session_id
    assert infos[0].credential == CRED
    assert infos[0].instance_name == "math"
    assert infos[0].created_at == record.created_at
