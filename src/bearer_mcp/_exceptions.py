"""Custom exception types for Bearer MCP.

Defines the exception hierarchy used across credential verification, backend instance
construction, session bookkeeping, the HTTP listener and configuration loading. Callers
can catch `McpError` to handle every Bearer MCP failure, or one of the narrower family
bases to implement a specific recovery strategy.

Exception Hierarchy:
    - Base exceptions: McpError, InternalError (extends McpError and RuntimeError)
    - Internal invariant violations: NoFactoryError, NoBackendAvailableError (extend InternalError)
    - Authentication exceptions: AuthenticationError, InvalidCredentialError (extends AuthenticationError)
    - Session exceptions: SessionError, SessionCreationError, FactoryFailedError (extends SessionCreationError),
      SessionNotFoundError (extends SessionError and KeyError)
    - Transport exceptions: TransportError
    - Listener exceptions: ListenerError, ListenerAlreadyRunningError, ListenerNotRunningError, ListenerStoppedError
    - Configuration exceptions: ConfigurationError, ServerConfigurationError, TokenConfigurationError

Usage Example:
    ```python
    from bearer_mcp._exceptions import FactoryFailedError, InvalidCredentialError

    try:
        record = await sessions.create_session(credential)
    except InvalidCredentialError as e:
        # Reject the request before any session exists
        return unauthorized(e.reason)
    except FactoryFailedError as e:
        # The tenant's backend could not be built; the cache is untouched
        logger.error(f"Backend construction failed: {e.__cause__}")
        raise
    ```
"""

__all__ = [
    # Base exceptions
    "McpError",
    "InternalError",
    "NoFactoryError",
    "NoBackendAvailableError",
    # Authentication exceptions
    "AuthenticationError",
    "InvalidCredentialError",
    # Session exceptions
    "SessionError",
    "SessionCreationError",
    "FactoryFailedError",
    "SessionNotFoundError",
    # Transport exceptions
    "TransportError",
    # Listener exceptions
    "ListenerError",
    "ListenerAlreadyRunningError",
    "ListenerNotRunningError",
    "ListenerStoppedError",
    # Configuration exceptions
    "ConfigurationError",
    "ServerConfigurationError",
    "TokenConfigurationError",
]


# Base Exceptions


class McpError(Exception):
    """Base exception for all Bearer MCP errors.

    All Bearer MCP exceptions inherit from this class either directly or through one of
    the family base classes (AuthenticationError, SessionError, ListenerError, ...), so
    callers can handle every MCP error with a single except clause.
    """

    pass


class InternalError(McpError, RuntimeError):
    """Internal errors indicating a broken invariant in the MCP implementation.

    Inherits from both McpError and RuntimeError to emphasize that this represents a
    programming or wiring error rather than bad client input.
    """

    pass


class NoFactoryError(InternalError):
    """Raised when a credential has no constructible backend.

    The registry and the instance cache are kept consistent, so hitting this error means
    a caller resolved a credential that was never registered (or was removed without
    going through verification first).
    """

    pass


class NoBackendAvailableError(InternalError):
    """Raised when a session is requested without a credential and no default backend exists."""

    pass


# Authentication Exceptions


class AuthenticationError(McpError):
    """Base exception for authentication failures at the authorization boundary."""

    pass


class InvalidCredentialError(AuthenticationError):
    """Raised when a bearer credential is not registered.

    The `reason` attribute is a stable, machine-checkable code that the HTTP layer reports
    in the `WWW-Authenticate` header and the JSON error body. Clients should not retry.
    """

    reason = "invalid_token"

    def __init__(self, message: str = "Invalid token"):
        """Initialize the exception.

        Args:
            message (str): Human readable description. Never contains the credential.
        """
        super().__init__(message)


# Session Exceptions


class SessionError(McpError):
    """Base exception for session bookkeeping errors."""

    pass


class SessionCreationError(SessionError):
    """Raised when a session cannot be created."""

    pass


class FactoryFailedError(SessionCreationError):
    """Raised when a credential's factory fails while constructing a backend instance.

    The original exception is chained as `__cause__`. No cache entry is stored when this
    error is raised, so a later attempt can retry cleanly. The core never retries on its own.
    """

    pass


class SessionNotFoundError(SessionError, KeyError):
    """Raised when an operation references a session id absent from the session table.

    Inherits from KeyError so it can be handled like a failed mapping lookup.
    """

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message instead.
        return str(self.args[0]) if self.args else ""


# Transport Exceptions


class TransportError(McpError):
    """An error that occurred on an already-established session's transport.

    Transport errors are recorded and emitted as events; they never tear down the
    session table entry on their own.
    """

    pass


# Listener Exceptions


class ListenerError(McpError):
    """Base exception for HTTP listener lifecycle errors."""

    pass


class ListenerAlreadyRunningError(ListenerError):
    """Raised when starting a listener that is already running."""

    pass


class ListenerNotRunningError(ListenerError):
    """Raised when stopping a listener that is not running."""

    pass


class ListenerStoppedError(ListenerError):
    """Raised when a new session is requested while shutdown is in progress."""

    pass


# Configuration Exceptions


class ConfigurationError(McpError):
    """Base exception for configuration errors."""

    pass


class ServerConfigurationError(ConfigurationError):
    """Raised when the `server` or `oauth2` configuration section is invalid."""

    pass


class TokenConfigurationError(ConfigurationError):
    """Raised when a `tokens` configuration entry is invalid or cannot be resolved."""

    pass
