"""
Lifecycle events and the event bus that dispatches them.

Every externally visible state change in the lifecycle (credentials added or removed, instances
built or torn down, sessions created or destroyed, activity, listener start/stop, transport errors)
is described by a frozen event dataclass and published on an `EventBus`. Events are first-class
values so the emission contract can be asserted directly in tests.

Ordering:
    `EventBus.publish` awaits every handler (sync or async) in subscription order before it
    returns. Components publish from inside the operation that caused the event, so events for a
    single operation are observed in the order the operation emits them.

Error Handling:
    A handler that raises is logged and skipped; it never aborts dispatch or the operation
    that published the event.
"""

import enum
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from ._types import ListenerInfo, utc_now

_LOGGER = logging.getLogger(__name__)


class EventType(str, enum.Enum):
    """Names of all lifecycle events."""

    CREDENTIAL_ADDED = "credential_added"
    CREDENTIAL_REMOVED = "credential_removed"
    CREDENTIAL_UPDATED = "credential_updated"
    INSTANCE_REGISTERED = "instance_registered"
    INSTANCE_REMOVED = "instance_removed"
    INSTANCE_UPDATED = "instance_updated"
    SESSION_CREATED = "session_created"
    SESSION_DESTROYED = "session_destroyed"
    ACTIVITY_RECORDED = "activity_recorded"
    STARTED = "started"
    STOPPED = "stopped"
    TRANSPORT_ERROR = "transport_error"


@dataclass(frozen=True)
class LifecycleEvent:
    """Base class for all lifecycle events."""

    type: ClassVar[EventType]


@dataclass(frozen=True)
class CredentialEvent(LifecycleEvent):
    """Base for credential registry changes."""

    credential: str
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class CredentialAdded(CredentialEvent):
    """A credential was registered."""

    type: ClassVar[EventType] = EventType.CREDENTIAL_ADDED


@dataclass(frozen=True)
class CredentialRemoved(CredentialEvent):
    """A credential was unregistered."""

    type: ClassVar[EventType] = EventType.CREDENTIAL_REMOVED


@dataclass(frozen=True)
class CredentialUpdated(CredentialEvent):
    """A registered credential's factory was replaced."""

    type: ClassVar[EventType] = EventType.CREDENTIAL_UPDATED


@dataclass(frozen=True)
class InstanceRegistered(LifecycleEvent):
    """A new backend instance was constructed for a credential."""

    type: ClassVar[EventType] = EventType.INSTANCE_REGISTERED

    credential: str
    instance_name: str
    instance_version: str
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class InstanceRemoved(LifecycleEvent):
    """A live backend instance was torn down because its credential was removed."""

    type: ClassVar[EventType] = EventType.INSTANCE_REMOVED

    credential: str
    instance_name: str
    had_active_sessions: bool
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class InstanceUpdated(LifecycleEvent):
    """The first instance built from an updated factory was constructed."""

    type: ClassVar[EventType] = EventType.INSTANCE_UPDATED

    credential: str
    old_instance_name: str | None
    new_instance_name: str
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class SessionCreated(LifecycleEvent):
    """A session was added to the session table."""

    type: ClassVar[EventType] = EventType.SESSION_CREATED

    session_id: str
    credential: str | None
    instance_name: str
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class SessionDestroyed(LifecycleEvent):
    """A session was removed from the session table."""

    type: ClassVar[EventType] = EventType.SESSION_DESTROYED

    session_id: str
    credential: str | None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ActivityRecorded(LifecycleEvent):
    """A request was observed on an established session.

    Attributes:
        activity: JSON-RPC method of the request (e.g. ``tools/call``).
        tool_name: Tool name for ``tools/call`` requests, otherwise None.
        arguments: Tool arguments for ``tools/call`` requests, otherwise empty.
    """

    type: ClassVar[EventType] = EventType.ACTIVITY_RECORDED

    session_id: str
    credential: str | None
    activity: str
    tool_name: str | None = None
    arguments: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ListenerStarted(LifecycleEvent):
    """The HTTP listener started accepting connections."""

    type: ClassVar[EventType] = EventType.STARTED

    info: ListenerInfo
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ListenerStopped(LifecycleEvent):
    """The HTTP listener stopped."""

    type: ClassVar[EventType] = EventType.STOPPED

    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class TransportErrorEvent(LifecycleEvent):
    """A transport-level error occurred on an established session."""

    type: ClassVar[EventType] = EventType.TRANSPORT_ERROR

    session_id: str
    error: BaseException
    timestamp: datetime = field(default_factory=utc_now)


EventHandler = Callable[[LifecycleEvent], "Awaitable[None] | None"]
"""A subscriber callback. May be a plain function or a coroutine function."""


class EventBus:
    """
    Ordered publish/subscribe dispatcher for lifecycle events.

    Each lifecycle facade owns its own bus; there is no process-wide state, so independent
    facades can coexist in one process.
    """

    def __init__(self) -> None:
        """Initialize an EventBus with no subscribers."""
        self._subscribers: list[tuple[EventHandler, frozenset[EventType]]] = []

    def subscribe(
        self, handler: EventHandler, *event_types: EventType
    ) -> Callable[[], None]:
        """
        Register a handler.

        Args:
            handler: Called with each matching event. Coroutine functions are awaited.
            *event_types: Event types to receive. Receives every event when omitted.

        Returns:
            Callable[[], None]: A function that removes this subscription. Calling it twice is harmless.
        """
        entry = (handler, frozenset(event_types))
        self._subscribers.append(entry)

        def _unsubscribe() -> None:
            try:
                self._subscribers.remove(entry)
            except ValueError:
                pass

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        """int: Number of active subscriptions."""
        return len(self._subscribers)

    async def publish(self, event: LifecycleEvent) -> None:
        """
        Dispatch an event to every matching subscriber, in subscription order.

        Args:
            event: The event to publish.
        """
        _LOGGER.debug(f"[{self.__class__.__name__}] publishing {event.type.value}")
        for handler, event_types in list(self._subscribers):
            if event_types and event.type not in event_types:
                continue
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                _LOGGER.error(
                    f"[{self.__class__.__name__}] handler {handler!r} failed for {event.type.value}: {e}",
                    exc_info=True,
                )
