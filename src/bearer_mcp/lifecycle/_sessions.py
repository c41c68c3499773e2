"""
Session table: bookkeeping for live client sessions.

Each session binds a generated session id to the credential it was created with and to the backend
instance that was current for that credential at creation time. The table owns only these records;
binding a transport to the instance is the transport's job.

Ownership:
    The table never closes an instance itself. Destroying the last session bound to a non-default
    instance asks the `InstanceCache` to `release()` it; the cache closes it only if it is still the
    credential's live entry. The default instance is shared and is never released.

States:
    A session is either present in the table or not. `destroy()` is idempotent: the record is popped
    before any suspension point, so concurrent or repeated destroys remove it exactly once.
"""

import asyncio
import logging
from typing import Any

from bearer_mcp._exceptions import (
    ListenerStoppedError,
    NoBackendAvailableError,
    SessionNotFoundError,
    TransportError,
)
from bearer_mcp._logging import redact_credential

from ._events import (
    ActivityRecorded,
    EventBus,
    SessionCreated,
    SessionDestroyed,
    TransportErrorEvent,
)
from ._instance_cache import InstanceCache
from ._types import SessionInfo, SessionRecord, utc_now
from ._utils import generate_session_id

_LOGGER = logging.getLogger(__name__)


class SessionTable:
    """
    Coroutine-safe table of live sessions.

    Example:
        ```python
        table = SessionTable(cache)
        record = await table.create_session("tenant-credential")
        assert table.get(record.session_id) is record
        await table.destroy(record.session_id)   # True
        await table.destroy(record.session_id)   # False, already gone
        ```
    """

    def __init__(
        self,
        cache: InstanceCache,
        *,
        default_instance: Any | None = None,
        events: EventBus | None = None,
    ) -> None:
        """
        Initialize the table.

        Args:
            cache: The instance cache sessions resolve their instances from.
            default_instance: Shared instance for sessions created without a credential.
            events: Event bus for session events. Defaults to the cache's bus.
        """
        self._cache = cache
        self._default_instance = default_instance
        self._events = events if events is not None else cache.events
        self._sessions: dict[str, SessionRecord] = {}
        self._accepting = True

    @property
    def cache(self) -> InstanceCache:
        """InstanceCache: The cache sessions resolve their instances from."""
        return self._cache

    @property
    def default_instance(self) -> Any | None:
        """The shared default instance, or None."""
        return self._default_instance

    @property
    def accepting(self) -> bool:
        """bool: False while shutdown is in progress."""
        return self._accepting

    def stop_accepting(self) -> None:
        """Reject every later `create_session()` with `ListenerStoppedError`."""
        self._accepting = False

    def start_accepting(self) -> None:
        """Accept new sessions again."""
        self._accepting = True

    def _check_accepting(self) -> None:
        if not self._accepting:
            raise ListenerStoppedError("Shutdown in progress; not accepting new sessions")

    async def create_session(self, credential: str | None = None) -> SessionRecord:
        """
        Create a session bound to the credential's current instance.

        With a credential, the credential is verified and resolved through the instance cache. If the
        entry is invalidated while this call is suspended, the credential is verified and resolved
        again, so the stored record always names the instance that is current when it is inserted.
        Without a credential, the session binds to the default instance.

        Args:
            credential: The bearer credential, or None for the default instance.

        Returns:
            SessionRecord: The new record.

        Raises:
            ListenerStoppedError: If shutdown is in progress.
            InvalidCredentialError: If the credential is not (or no longer) registered.
            NoBackendAvailableError: If no credential was given and there is no default instance.
            FactoryFailedError: If the credential's factory failed.
        """
        self._check_accepting()

        if credential is None:
            if self._default_instance is None:
                raise NoBackendAvailableError(
                    "No credential supplied and no default backend configured"
                )
            instance = self._default_instance
        else:
            while True:
                principal = await self._cache.verify(credential)
                instance = await self._cache.resolve(credential, principal)
                if self._cache.is_current(credential, instance):
                    break
                _LOGGER.info(
                    f"[{self.__class__.__name__}] instance for credential '{redact_credential(credential)}' "
                    "was replaced during session creation, re-resolving"
                )
            self._check_accepting()

        session_id = generate_session_id()
        while session_id in self._sessions:
            session_id = generate_session_id()

        record = SessionRecord(
            session_id=session_id,
            credential=credential,
            instance=instance,
            created_at=utc_now(),
        )
        self._sessions[session_id] = record
        _LOGGER.info(
            f"[{self.__class__.__name__}] created session {session_id} for credential "
            f"'{redact_credential(credential)}' on instance '{record.instance_name}'"
        )
        await self._events.publish(
            SessionCreated(
                session_id=session_id,
                credential=credential,
                instance_name=record.instance_name,
            )
        )
        return record

    def get(self, session_id: str) -> SessionRecord | None:
        """Return the record for a session id, or None."""
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> SessionRecord:
        """
        Return the record for a session id.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        record = self._sessions.get(session_id)
        if record is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return record

    async def destroy(self, session_id: str) -> bool:
        """
        Remove a session.

        If this was the last session bound to a non-default instance, the instance cache is asked to
        release (close) that instance.

        Args:
            session_id: The session to remove.

        Returns:
            bool: True if the session existed, False if it was already gone.
        """
        record = self._sessions.pop(session_id, None)
        if record is None:
            return False

        _LOGGER.info(
            f"[{self.__class__.__name__}] destroying session {session_id} for credential "
            f"'{redact_credential(record.credential)}'"
        )
        if (
            record.credential is not None
            and record.instance is not self._default_instance
            and not self._is_bound(record.instance)
        ):
            await self._cache.release(record.credential, record.instance)

        await self._events.publish(
            SessionDestroyed(session_id=session_id, credential=record.credential)
        )
        return True

    async def destroy_all(self) -> int:
        """
        Concurrently destroy every live session.

        Individual failures are logged and do not abort the sweep.

        Returns:
            int: Number of sessions destroyed.
        """
        session_ids = list(self._sessions)
        if not session_ids:
            return 0
        _LOGGER.info(
            f"[{self.__class__.__name__}] destroying {len(session_ids)} sessions..."
        )
        results = await asyncio.gather(
            *(self.destroy(sid) for sid in session_ids), return_exceptions=True
        )
        destroyed = 0
        for sid, result in zip(session_ids, results):
            if isinstance(result, BaseException):
                _LOGGER.error(
                    f"[{self.__class__.__name__}] failed to destroy session {sid}: {result}"
                )
            elif result:
                destroyed += 1
        return destroyed

    async def destroy_for(self, credential: str) -> int:
        """
        Destroy every session created with a credential.

        Returns:
            int: Number of sessions destroyed.
        """
        session_ids = [r.session_id for r in self.sessions_for(credential)]
        results = await asyncio.gather(
            *(self.destroy(sid) for sid in session_ids), return_exceptions=True
        )
        for sid, result in zip(session_ids, results):
            if isinstance(result, BaseException):
                _LOGGER.error(
                    f"[{self.__class__.__name__}] failed to destroy session {sid}: {result}"
                )
        return sum(1 for r in results if r is True)

    async def record_activity(
        self,
        session_id: str,
        activity: str,
        *,
        tool_name: str | None = None,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        """
        Publish an `ActivityRecorded` event for a request observed on a session.

        Args:
            session_id: The session the request arrived on.
            activity: JSON-RPC method of the request.
            tool_name: Tool name for `tools/call` requests.
            arguments: Tool arguments for `tools/call` requests.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        record = self.require(session_id)
        _LOGGER.debug(
            f"[{self.__class__.__name__}] session {session_id} activity {activity}"
            + (f" ({tool_name})" if tool_name else "")
        )
        await self._events.publish(
            ActivityRecorded(
                session_id=session_id,
                credential=record.credential,
                activity=activity,
                tool_name=tool_name,
                arguments=dict(arguments or {}),
            )
        )

    async def report_transport_error(
        self, session_id: str, error: BaseException
    ) -> None:
        """
        Record a transport-level failure on an established session.

        The session is left in the table; only the transport decides whether it is over.

        Args:
            session_id: The affected session.
            error: The failure. Non-`TransportError` exceptions are wrapped, with the original as `__cause__`.
        """
        if not isinstance(error, TransportError):
            wrapped = TransportError(str(error) or type(error).__name__)
            wrapped.__cause__ = error
            error = wrapped
        _LOGGER.warning(
            f"[{self.__class__.__name__}] transport error on session {session_id}: {error}"
        )
        await self._events.publish(
            TransportErrorEvent(session_id=session_id, error=error)
        )

    def count(self) -> int:
        """Return the number of live sessions."""
        return len(self._sessions)

    def sessions_for(self, credential: str) -> list[SessionRecord]:
        """Return the live sessions created with a credential."""
        return [r for r in self._sessions.values() if r.credential == credential]

    def has_sessions(self, credential: str) -> bool:
        """Return True if any live session was created with a credential."""
        return any(r.credential == credential for r in self._sessions.values())

    def list_sessions(self) -> list[SessionInfo]:
        """Return a read-only view of every live session, oldest first."""
        return [r.info() for r in self._sessions.values()]

    def _is_bound(self, instance: Any) -> bool:
        return any(r.instance is instance for r in self._sessions.values())

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
