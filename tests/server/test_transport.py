"""Tests for the streamable-HTTP bridge helpers and its behaviour outside a running app."""

import json

import pytest
from starlette.testclient import TestClient

from bearer_mcp.lifecycle import InstanceCache, SessionTable
from bearer_mcp.server import StreamableHttpBridge, parse_bearer, parse_jsonrpc_messages


@pytest.mark.parametrize(
    "header, expected",
    [
        (None, None),
        ("", None),
        ("Bearer abc123", "abc123"),
        ("bearer abc123", "abc123"),
        ("BEARER   abc123  ", "abc123"),
        ("Basic dXNlcjpwYXNz", None),
        ("Bearer", None),
        ("Bearer    ", None),
    ],
)
def test_parse_bearer(header, expected):
    assert parse_bearer(header) == expected


def test_parse_jsonrpc_messages():
    single = {"jsonrpc": "2.0", "id": 1, "method": "ping"}
    assert parse_jsonrpc_messages(json.dumps(single).encode()) == [single]
    assert parse_jsonrpc_messages(json.dumps([single, 3, "x"]).encode()) == [single]
    assert parse_jsonrpc_messages(b"") == []
    assert parse_jsonrpc_messages(b"{not json") == []
    assert parse_jsonrpc_messages(b"\xff\xfe") == []
    assert parse_jsonrpc_messages(b"42") == []


def test_bridge_subscribes_and_unsubscribes():
    cache = InstanceCache()
    bridge = StreamableHttpBridge(SessionTable(cache))
    assert cache.events.subscriber_count == 1
    assert not bridge.running
    assert bridge.transport_count == 0
    bridge.close()
    assert cache.events.subscriber_count == 0


def test_bridge_outside_lifespan_is_unavailable():
    bridge = StreamableHttpBridge(SessionTable(InstanceCache()))
    client = TestClient(bridge)
    response = client.post("/", json={"jsonrpc": "2.0", "id": 1, "method": "initialize"})
    assert response.status_code == 503
    assert response.json()["error"]["message"] == "Service unavailable"
