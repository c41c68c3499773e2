"""
Token-to-instance lifecycle for Bearer MCP.

This package decides which backend instance handles a bearer credential and when that instance is
created or destroyed. It has no knowledge of HTTP or of the MCP wire protocol.

Components (leaves first):
    - CredentialRegistry: credential -> factory. Pure, synchronous storage.
    - InstanceCache: credential -> live instance. Lazy construction with at most one live instance
      per credential, credential verification, and sole ownership of instance teardown. Also the
      invalidating registration surface (`register`, `unregister`, `replace`).
    - SessionTable: session id -> (credential, instance, creation time).
    - EventBus and the event dataclasses: the ordered event feed consumed by observers.

Usage Example:
    ```python
    from bearer_mcp.lifecycle import EventBus, InstanceCache, SessionTable

    events = EventBus()
    cache = InstanceCache(events=events)
    await cache.register("tenant-a-credential", make_tenant_a_server)

    sessions = SessionTable(cache)
    record = await sessions.create_session("tenant-a-credential")
    ...
    await sessions.destroy_all()
    await cache.close()
    ```
"""

from ._events import (
    ActivityRecorded,
    CredentialAdded,
    CredentialEvent,
    CredentialRemoved,
    CredentialUpdated,
    EventBus,
    EventHandler,
    EventType,
    InstanceRegistered,
    InstanceRemoved,
    InstanceUpdated,
    LifecycleEvent,
    ListenerStarted,
    ListenerStopped,
    SessionCreated,
    SessionDestroyed,
    TransportErrorEvent,
)
from ._instance_cache import InstanceCache
from ._registry import CredentialRegistry
from ._sessions import SessionTable
from ._types import (
    DEFAULT_INSTANCE_NAME,
    DEFAULT_INSTANCE_VERSION,
    BackendInstance,
    CacheStats,
    Factory,
    ListenerInfo,
    Principal,
    SessionInfo,
    SessionRecord,
    StatsSnapshot,
    derive_client_id,
    describe_instance,
)
from ._utils import generate_session_id

__all__ = [
    # Components
    "CredentialRegistry",
    "InstanceCache",
    "SessionTable",
    "EventBus",
    # Types
    "BackendInstance",
    "Factory",
    "Principal",
    "SessionRecord",
    "SessionInfo",
    "CacheStats",
    "StatsSnapshot",
    "ListenerInfo",
    "DEFAULT_INSTANCE_NAME",
    "DEFAULT_INSTANCE_VERSION",
    "derive_client_id",
    "describe_instance",
    "generate_session_id",
    # Events
    "EventType",
    "EventHandler",
    "LifecycleEvent",
    "CredentialEvent",
    "CredentialAdded",
    "CredentialRemoved",
    "CredentialUpdated",
    "InstanceRegistered",
    "InstanceRemoved",
    "InstanceUpdated",
    "SessionCreated",
    "SessionDestroyed",
    "ActivityRecorded",
    "ListenerStarted",
    "ListenerStopped",
    "TransportErrorEvent",
]
