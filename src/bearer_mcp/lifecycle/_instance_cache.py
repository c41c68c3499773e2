"""
Instance cache and credential verifier.

`InstanceCache` owns every backend instance in the system. It lazily constructs one instance per
credential from the factory held in the `CredentialRegistry`, hands the same instance to every
caller until the entry is invalidated, and is the only component that ever closes an instance.

Key Guarantees:
    - At most one live instance per credential. Concurrent `resolve()` calls for a credential that
      is not cached share a single in-flight construction; the factory is invoked once and every
      caller observes the same instance (or the same failure).
    - Per-credential, not global: a slow factory only stalls resolution of its own credential.
    - No cache poisoning: when a factory fails, nothing is stored and the failure propagates as
      `FactoryFailedError`.
    - Invalidation wins over in-flight construction: an instance whose construction started before
      `register`/`unregister`/`invalidate` is closed instead of cached, and waiters re-resolve.
    - A credential's slot is free only once the previous instance's close() has completed.

Events:
    - `InstanceRegistered` when a construction stores a new instance.
    - `InstanceUpdated` instead, for the first construction after the credential's factory was replaced.

Error Handling:
    - Close failures are logged and swallowed so teardown always completes.
    - `NoFactoryError` is logged at ERROR: callers are expected to verify before resolving.
    - A credential unregistered while `resolve()` waits raises `InvalidCredentialError`.
"""

import asyncio
import functools
import inspect
import logging
from collections.abc import Callable
from typing import Any

from bearer_mcp._exceptions import (
    FactoryFailedError,
    InvalidCredentialError,
    NoFactoryError,
)
from bearer_mcp._logging import redact_credential

from ._events import EventBus, InstanceRegistered, InstanceUpdated
from ._registry import CredentialRegistry
from ._types import CacheStats, Factory, Principal, derive_client_id, describe_instance

_LOGGER = logging.getLogger(__name__)


class InstanceCache:
    """
    Coroutine-safe cache of backend instances keyed by credential.

    The cache is also the registration surface: `register`, `unregister` and `replace` update the
    underlying `CredentialRegistry` and invalidate the credential's live instance as a side effect,
    so the next resolution always uses the current factory.

    All dictionary mutations happen between suspension points, so each check-then-act sequence is
    atomic on the event loop without a global lock.
    """

    def __init__(
        self,
        registry: CredentialRegistry | None = None,
        *,
        events: EventBus | None = None,
        adapter: Callable[[Any], Any] | None = None,
    ) -> None:
        """
        Initialize the cache.

        Args:
            registry: Credential registry to read factories from. A new empty one is created when omitted.
            events: Event bus for instance events. A private bus is created when omitted.
            adapter: Optional callable applied to each factory result to obtain the backend instance
                (e.g. wrapping an MCP server). Adapter failures count as factory failures.
        """
        self._registry = registry if registry is not None else CredentialRegistry()
        self._events = events if events is not None else EventBus()
        self._adapter = adapter
        self._instances: dict[str, Any] = {}
        self._constructions: dict[str, asyncio.Future[Any]] = {}
        self._closing: dict[str, asyncio.Future[None]] = {}
        self._generations: dict[str, int] = {}
        self._last_names: dict[str, str] = {}
        self._pending_updates: dict[str, str | None] = {}

    @property
    def registry(self) -> CredentialRegistry:
        """CredentialRegistry: The registry this cache reads factories from."""
        return self._registry

    @property
    def events(self) -> EventBus:
        """EventBus: The bus instance events are published on."""
        return self._events

    # --- Registration -------------------------------------------------------------------------

    async def register(self, credential: str, factory: Factory) -> bool:
        """
        Insert or replace the factory for a credential and invalidate its live instance.

        Args:
            credential: The bearer credential.
            factory: Factory for new instances.

        Returns:
            bool: True if the credential was already registered (this was an update).
        """
        existed = self._registry.contains(credential)
        self._registry.register(credential, factory)
        if existed:
            self._pending_updates.setdefault(
                credential, self._last_names.get(credential)
            )
        await self.invalidate(credential)
        return existed

    async def unregister(self, credential: str) -> bool:
        """
        Remove a credential and tear down its live instance.

        Args:
            credential: The bearer credential.

        Returns:
            bool: True if the credential existed. False (no-op) otherwise.
        """
        if not self._registry.unregister(credential):
            return False
        self._pending_updates.pop(credential, None)
        await self.invalidate(credential)
        self._last_names.pop(credential, None)
        return True

    async def replace(self, credential: str, factory: Factory) -> bool:
        """
        Replace the factory of an already registered credential.

        Args:
            credential: The bearer credential.
            factory: The new factory.

        Returns:
            bool: False, with no side effect, if the credential is not registered.
        """
        if not self._registry.contains(credential):
            return False
        await self.register(credential, factory)
        return True

    # --- Verification and resolution -------------------------------------------------------------

    async def verify(self, credential: str) -> Principal:
        """
        Confirm a credential is registered.

        Args:
            credential: The bearer credential.

        Returns:
            Principal: The credential plus a derived client id, with no scopes.

        Raises:
            InvalidCredentialError: If the credential is empty or not registered.
        """
        if not credential or not self._registry.contains(credential):
            _LOGGER.warning(
                f"[{self.__class__.__name__}] rejected credential '{redact_credential(credential)}'"
            )
            raise InvalidCredentialError()
        return Principal(credential=credential, client_id=derive_client_id(credential))

    async def resolve(self, credential: str, principal: Principal | None = None) -> Any:
        """
        Return the live instance for a credential, constructing it if needed.

        A cached instance is returned without invoking the factory. Otherwise exactly one
        construction is started and shared by every concurrent caller.

        Args:
            credential: The bearer credential.
            principal: The principal returned by `verify`, if available. Must match the credential.

        Returns:
            The backend instance.

        Raises:
            InvalidCredentialError: If the principal was issued for a different credential, or the
                credential was unregistered while this call waited on a construction or close.
            NoFactoryError: If no factory is registered for the credential.
            FactoryFailedError: If the factory raised. Nothing is cached.
        """
        if principal is not None and principal.credential != credential:
            raise InvalidCredentialError("Principal does not match credential")

        waited = False
        while True:
            closing = self._closing.get(credential)
            if closing is not None:
                await asyncio.shield(closing)
                waited = True
                continue

            instance = self._instances.get(credential)
            if instance is not None:
                return instance

            construction = self._constructions.get(credential)
            if construction is None:
                factory = self._registry.get(credential)
                if factory is None and waited:
                    _LOGGER.info(
                        f"[{self.__class__.__name__}] credential '{redact_credential(credential)}' was removed while resolving"
                    )
                    raise InvalidCredentialError()
                if factory is None:
                    _LOGGER.error(
                        f"[{self.__class__.__name__}] no factory registered for credential '{redact_credential(credential)}'"
                    )
                    raise NoFactoryError(
                        f"No server factory found for credential '{redact_credential(credential)}'"
                    )
                construction = asyncio.ensure_future(
                    self._construct(
                        credential, factory, self._generations.get(credential, 0)
                    )
                )
                self._constructions[credential] = construction
                construction.add_done_callback(
                    functools.partial(self._construction_done, credential)
                )

            instance = await asyncio.shield(construction)
            if instance is not None:
                return instance
            # Superseded by an invalidation; pick up the current factory.
            waited = True

    async def _construct(
        self, credential: str, factory: Factory, generation: int
    ) -> Any | None:
        """Invoke a factory once and store the result if it is still current."""
        _LOGGER.info(
            f"[{self.__class__.__name__}] creating instance for credential '{redact_credential(credential)}'..."
        )
        try:
            result = factory()
            if inspect.isawaitable(result):
                result = await result
            instance = self._adapter(result) if self._adapter is not None else result
        except Exception as e:
            _LOGGER.error(
                f"[{self.__class__.__name__}] factory failed for credential '{redact_credential(credential)}': {e}"
            )
            raise FactoryFailedError(
                f"Factory for credential '{redact_credential(credential)}' failed: {e}"
            ) from e

        if self._generations.get(credential, 0) != generation:
            _LOGGER.info(
                f"[{self.__class__.__name__}] discarding superseded instance for credential '{redact_credential(credential)}'"
            )
            await self._close_instance(credential, instance)
            return None

        self._instances[credential] = instance
        name, version = describe_instance(instance)
        self._last_names[credential] = name
        _LOGGER.info(
            f"[{self.__class__.__name__}] created instance '{name}' v{version} for credential '{redact_credential(credential)}'"
        )

        if credential in self._pending_updates:
            old_name = self._pending_updates.pop(credential)
            await self._events.publish(
                InstanceUpdated(
                    credential=credential,
                    old_instance_name=old_name,
                    new_instance_name=name,
                )
            )
        else:
            await self._events.publish(
                InstanceRegistered(
                    credential=credential,
                    instance_name=name,
                    instance_version=version,
                )
            )
        return instance

    def _construction_done(self, credential: str, task: "asyncio.Future[Any]") -> None:
        if self._constructions.get(credential) is task:
            del self._constructions[credential]
        if not task.cancelled():
            # Mark the exception retrieved; every waiter receives it through shield().
            task.exception()

    # --- Invalidation ----------------------------------------------------------------------------

    async def invalidate(self, credential: str) -> bool:
        """
        Close and remove the live instance for a credential.

        Any in-flight construction for the credential is superseded: its result will be closed
        rather than cached. Close failures are logged, never raised.

        Args:
            credential: The bearer credential.

        Returns:
            bool: True if a live entry existed.
        """
        self._generations[credential] = self._generations.get(credential, 0) + 1
        self._constructions.pop(credential, None)
        instance = self._instances.pop(credential, None)
        if instance is None:
            pending = self._closing.get(credential)
            if pending is not None:
                await asyncio.shield(pending)
            return False

        closing = asyncio.ensure_future(self._close_instance(credential, instance))
        self._closing[credential] = closing
        closing.add_done_callback(functools.partial(self._closing_done, credential))
        await asyncio.shield(closing)
        return True

    async def release(self, credential: str, instance: Any) -> bool:
        """
        Invalidate a credential only if `instance` is still its live entry.

        Used by the session table when the last session bound to an instance goes away. An
        instance that has already been replaced was closed when it was invalidated.

        Args:
            credential: The bearer credential.
            instance: The instance the caller holds.

        Returns:
            bool: True if the instance was current and has been closed.
        """
        if self._instances.get(credential) is not instance:
            return False
        return await self.invalidate(credential)

    async def invalidate_all(self) -> int:
        """
        Invalidate every live instance and in-flight construction concurrently.

        Returns:
            int: Number of live instances that were closed.
        """
        targets = list(dict.fromkeys([*self._instances, *self._constructions]))
        if not targets:
            return 0
        results = await asyncio.gather(*(self.invalidate(c) for c in targets))
        closed = sum(1 for r in results if r)
        _LOGGER.info(f"[{self.__class__.__name__}] invalidated {closed} instances")
        return closed

    async def close(self) -> None:
        """
        Shut the cache down: close every instance, then release the registry.

        The cache can be reused afterwards by registering credentials again.
        """
        await self.invalidate_all()
        self._registry.clear()
        self._last_names.clear()
        self._pending_updates.clear()

    def _closing_done(self, credential: str, task: "asyncio.Future[None]") -> None:
        if self._closing.get(credential) is task:
            del self._closing[credential]

    async def _close_instance(self, credential: str, instance: Any) -> None:
        """Close an instance, logging (never raising) any failure."""
        name = describe_instance(instance)[0]
        try:
            result = instance.close()
            if inspect.isawaitable(result):
                await result
            _LOGGER.info(
                f"[{self.__class__.__name__}] closed instance '{name}' for credential '{redact_credential(credential)}'"
            )
        except Exception as e:
            _LOGGER.warning(
                f"[{self.__class__.__name__}] error closing instance '{name}' for credential '{redact_credential(credential)}': {e}"
            )

    # --- Queries ---------------------------------------------------------------------------------

    def get_cached(self, credential: str) -> Any | None:
        """Return the live instance for a credential without constructing one."""
        return self._instances.get(credential)

    def is_cached(self, credential: str) -> bool:
        """Return True if the credential has a live instance."""
        return credential in self._instances

    def is_current(self, credential: str, instance: Any) -> bool:
        """Return True if `instance` is the live entry for `credential`."""
        return self._instances.get(credential) is instance

    def stats(self) -> CacheStats:
        """Return registered and cached counts."""
        return CacheStats(
            registered=self._registry.count(),
            cached=len(self._instances),
            credentials=tuple(self._registry.list()),
            cached_credentials=tuple(self._instances),
        )
