"""
Shared types for the token-to-instance lifecycle.

Key Types:
    BackendInstance: Protocol for a tenant's isolated service context ({name, version, close()}).
    Factory: Deferred, possibly asynchronous constructor of a BackendInstance.
    Principal: Minimal identity descriptor returned by credential verification.
    SessionRecord: Session table entry binding a session id to a credential and an instance.
    SessionInfo: Read-only, observability-friendly view of a SessionRecord.
    CacheStats / StatsSnapshot: Derived aggregate statistics, recomputed on demand.
    ListenerInfo: Address information for a running HTTP listener.
"""

import hashlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

DEFAULT_INSTANCE_NAME = "unnamed-server"
"""str: Name reported for instances that do not expose one."""

DEFAULT_INSTANCE_VERSION = "1.0.0"
"""str: Version reported for instances that do not expose one."""


@runtime_checkable
class BackendInstance(Protocol):
    """Protocol for a backend instance owned by the instance cache.

    Instances carry a name and version for observability and must provide an async
    close(). The instance cache is the only component that ever calls close().
    """

    name: str
    version: str

    async def close(self) -> None:
        """Release every resource held by the instance."""
        ...  # pragma: no cover


Factory = Callable[[], "BackendInstance | Awaitable[BackendInstance] | Any"]
"""Deferred constructor for a backend instance. May be sync or async; re-invocable."""


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def describe_instance(instance: Any) -> tuple[str, str]:
    """Return the (name, version) pair an instance reports, with defaults for missing values.

    Args:
        instance: Any backend instance.

    Returns:
        tuple[str, str]: The instance name and version.
    """
    name = getattr(instance, "name", None) or DEFAULT_INSTANCE_NAME
    version = getattr(instance, "version", None) or DEFAULT_INSTANCE_VERSION
    return str(name), str(version)


def derive_client_id(credential: str) -> str:
    """Derive a stable client identifier from a credential without exposing it.

    Args:
        credential (str): The bearer credential.

    Returns:
        str: ``"client-"`` followed by the first 16 hex digits of the credential's SHA-256.
    """
    digest = hashlib.sha256(credential.encode("utf-8")).hexdigest()
    return f"client-{digest[:16]}"


@dataclass(frozen=True)
class Principal:
    """Identity descriptor returned by a successful verification.

    Attributes:
        credential: The verified bearer credential.
        client_id: Identifier derived from the credential.
        scopes: Granted scopes. Empty by default; scope-based authorization is not performed.
    """

    credential: str
    client_id: str
    scopes: tuple[str, ...] = ()

    def __repr__(self) -> str:
        return f"Principal(client_id={self.client_id!r}, scopes={self.scopes!r})"


@dataclass(frozen=True)
class SessionRecord:
    """A live session table entry.

    The instance is the cache entry that was current for the credential when the session
    was created. The session table only associates it; it never closes it.

    Attributes:
        session_id: Unique session identifier.
        credential: The credential the session was created with, or None for the default backend.
        instance: The bound backend instance.
        created_at: UTC creation time.
    """

    session_id: str
    credential: str | None
    instance: Any = field(compare=False)
    created_at: datetime

    @property
    def instance_name(self) -> str:
        """str: Name reported by the bound instance."""
        return describe_instance(self.instance)[0]

    def info(self) -> "SessionInfo":
        """Return a read-only view of this record suitable for statistics and events."""
        return SessionInfo(
            session_id=self.session_id,
            credential=self.credential,
            instance_name=self.instance_name,
            created_at=self.created_at,
        )


@dataclass(frozen=True)
class SessionInfo:
    """Read-only description of a live session."""

    session_id: str
    credential: str | None
    instance_name: str
    created_at: datetime


@dataclass(frozen=True)
class CacheStats:
    """Counts reported by the instance cache.

    Attributes:
        registered: Number of registered credentials.
        cached: Number of live cached instances.
        credentials: Registered credentials in insertion order.
        cached_credentials: Credentials that currently have a live instance.
    """

    registered: int
    cached: int
    credentials: tuple[str, ...]
    cached_credentials: tuple[str, ...]


@dataclass(frozen=True)
class StatsSnapshot:
    """Aggregate statistics across registry, instance cache and session table.

    Never persisted; recomputed on every call to `BearerMcpServer.stats()`.
    """

    registered_credentials: int
    cached_instances: int
    active_sessions: int
    credentials: tuple[str, ...]
    cached_credentials: tuple[str, ...]
    sessions: tuple[SessionInfo, ...]

    def to_dict(self, redact: Callable[[str | None], str] | None = None) -> dict[str, Any]:
        """Render the snapshot as JSON-friendly data.

        Args:
            redact: Optional function applied to every credential before rendering.

        Returns:
            dict[str, Any]: The snapshot as plain data.
        """
        show: Callable[[str | None], Any] = redact if redact is not None else (lambda c: c)
        return {
            "registered_credentials": self.registered_credentials,
            "cached_instances": self.cached_instances,
            "active_sessions": self.active_sessions,
            "credentials": [show(c) for c in self.credentials],
            "cached_credentials": [show(c) for c in self.cached_credentials],
            "sessions": [
                {
                    "session_id": s.session_id,
                    "credential": show(s.credential),
                    "instance_name": s.instance_name,
                    "created_at": s.created_at.isoformat(),
                }
                for s in self.sessions
            ],
        }


@dataclass(frozen=True)
class ListenerInfo:
    """Address information for a running listener.

    Attributes:
        url: Base URL, e.g. ``http://127.0.0.1:53211``.
        host: Bound host.
        port: Bound port (the real port when 0 was requested).
        endpoint: MCP endpoint path.
    """

    url: str
    host: str
    port: int
    endpoint: str

    @property
    def mcp_url(self) -> str:
        """str: Full URL of the MCP endpoint."""
        return f"{self.url}{self.endpoint}"
