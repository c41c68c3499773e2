"""
Credential registry: the mapping from bearer credential to backend-instance factory.

The registry is pure storage. It knows nothing about live instances; the invalidating forms of
`register`, `unregister` and `replace` live on `InstanceCache`, which is the only component that
writes to the registry at runtime. Keeping "registered" (has a factory) separate from "cached"
(has a live instance) lets many credentials be registered while instances are only built for the
credentials actually in use.

Features:
    - Insertion-ordered storage (`list()` returns credentials in registration order).
    - Idempotent key semantics: registering an existing credential replaces its factory.
    - Update-only semantics via `replace()`.
    - Credentials are never logged in full.
"""

import logging
from collections.abc import Iterator, Mapping

from bearer_mcp._logging import redact_credential

from ._types import Factory

_LOGGER = logging.getLogger(__name__)


class CredentialRegistry:
    """
    Insertion-ordered mapping from credential to factory.

    All methods are synchronous and never suspend, so each call is atomic with respect to
    other coroutines on the same event loop.
    """

    def __init__(self, initial: Mapping[str, Factory] | None = None) -> None:
        """
        Initialize the registry.

        Args:
            initial: Optional credential-to-factory mapping to preload, in iteration order.
        """
        self._factories: dict[str, Factory] = dict(initial or {})
        _LOGGER.debug(
            f"[{self.__class__.__name__}] created with {len(self._factories)} credentials"
        )

    def register(self, credential: str, factory: Factory) -> bool:
        """
        Insert or replace the factory for a credential.

        Replacing keeps the credential's original position in `list()`.

        Args:
            credential: The bearer credential.
            factory: The factory to use for new instances.

        Returns:
            bool: True if the credential was already registered (this was an update).
        """
        existed = credential in self._factories
        self._factories[credential] = factory
        _LOGGER.info(
            f"[{self.__class__.__name__}] {'updated' if existed else 'registered'} credential '{redact_credential(credential)}'"
        )
        return existed

    def unregister(self, credential: str) -> bool:
        """
        Remove a credential's factory.

        Args:
            credential: The bearer credential.

        Returns:
            bool: True if the credential existed. False (no-op) otherwise.
        """
        if credential not in self._factories:
            return False
        del self._factories[credential]
        _LOGGER.info(
            f"[{self.__class__.__name__}] unregistered credential '{redact_credential(credential)}'"
        )
        return True

    def replace(self, credential: str, factory: Factory) -> bool:
        """
        Replace the factory of an already registered credential.

        Args:
            credential: The bearer credential.
            factory: The new factory.

        Returns:
            bool: False, with no side effect, if the credential is not registered.
        """
        if credential not in self._factories:
            return False
        self.register(credential, factory)
        return True

    def get(self, credential: str) -> Factory | None:
        """Return the factory registered for a credential, or None."""
        return self._factories.get(credential)

    def contains(self, credential: str) -> bool:
        """Return True if the credential is registered."""
        return credential in self._factories

    def count(self) -> int:
        """Return the number of registered credentials."""
        return len(self._factories)

    def clear(self) -> list[str]:
        """
        Remove every credential.

        Returns:
            list[str]: The credentials that were registered, in insertion order.
        """
        removed = list(self._factories)
        self._factories.clear()
        _LOGGER.info(
            f"[{self.__class__.__name__}] cleared {len(removed)} credentials"
        )
        return removed

    def __contains__(self, credential: object) -> bool:
        return credential in self._factories

    def __len__(self) -> int:
        return len(self._factories)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._factories))

    # Defined last: the method name shadows the builtin in later class-level annotations.
    def list(self) -> list[str]:
        """Return registered credentials in insertion order."""
        return list(self._factories)
