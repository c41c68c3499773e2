"""
Configuration handling for the listener (`server`) and OAuth discovery (`oauth2`) sections.

`server` fields (all optional):
    - `host` (str): Host to bind. Default "127.0.0.1".
    - `port` (int): Port to bind, 0-65535. 0 picks a free port.
    - `endpoint` (str): MCP endpoint path. Must start with "/".
    - `json_response` (bool): Answer POSTs with JSON instead of SSE streams.

`oauth2` fields:
    - `issuer`, `authorization_endpoint`, `token_endpoint` (str, required): Authorization server URLs.
    - `registration_endpoint` (str, optional): Dynamic client registration URL.

Neither section holds secrets, so there is no redaction helper for them.
All validation errors raise `ServerConfigurationError`.
"""

__all__ = [
    "validate_server_config",
    "validate_oauth2_config",
]

import logging
from typing import Any

from bearer_mcp._exceptions import ServerConfigurationError

_LOGGER = logging.getLogger(__name__)

_ALLOWED_SERVER_FIELDS: dict[str, type | tuple[type, ...]] = {
    "host": str,
    "port": int,
    "endpoint": str,
    "json_response": bool,
}
"""Allowed `server` fields and their expected types."""

_ALLOWED_OAUTH2_FIELDS: dict[str, type | tuple[type, ...]] = {
    "issuer": str,
    "authorization_endpoint": str,
    "token_endpoint": str,
    "registration_endpoint": str,
}
"""Allowed `oauth2` fields and their expected types."""

_REQUIRED_OAUTH2_FIELDS: list[str] = ["issuer", "authorization_endpoint", "token_endpoint"]


def _check_fields(
    section: str,
    config: Any,
    allowed: dict[str, type | tuple[type, ...]],
) -> dict[str, Any]:
    if not isinstance(config, dict):
        _LOGGER.error(f"'{section}' must be a dictionary, got {type(config).__name__}")
        raise ServerConfigurationError(
            f"'{section}' must be a dictionary, got {type(config).__name__}"
        )
    for field_name, value in config.items():
        if field_name not in allowed:
            _LOGGER.error(f"Unknown field '{field_name}' in '{section}' config")
            raise ServerConfigurationError(
                f"Unknown field '{field_name}' in '{section}' config"
            )
        expected = allowed[field_name]
        # bool is an int subclass; never accept it where an int is expected
        if not isinstance(value, expected) or (
            expected is int and isinstance(value, bool)
        ):
            _LOGGER.error(
                f"Field '{field_name}' in '{section}' config must be of type {expected}, got {type(value).__name__}"
            )
            raise ServerConfigurationError(
                f"Field '{field_name}' in '{section}' config must be of type {expected}, got {type(value).__name__}"
            )
    return config


def validate_server_config(server_config: Any) -> dict[str, Any]:
    """
    Validate the `server` section.

    Args:
        server_config (Any): The value of the `server` key.

    Returns:
        dict[str, Any]: The validated section.

    Raises:
        ServerConfigurationError: On unknown fields, wrong types, an out-of-range port or an
            endpoint that does not start with "/".
    """
    config = _check_fields("server", server_config, _ALLOWED_SERVER_FIELDS)
    port = config.get("port")
    if port is not None and not 0 <= port <= 65535:
        _LOGGER.error(f"'server.port' out of range: {port}")
        raise ServerConfigurationError(f"'server.port' must be 0-65535, got {port}")
    endpoint = config.get("endpoint")
    if endpoint is not None and not endpoint.startswith("/"):
        _LOGGER.error(f"'server.endpoint' must start with '/': {endpoint!r}")
        raise ServerConfigurationError(
            f"'server.endpoint' must start with '/', got {endpoint!r}"
        )
    return config


def validate_oauth2_config(oauth2_config: Any) -> dict[str, Any]:
    """
    Validate the `oauth2` section.

    Only structure is checked here; URL syntax is validated when `OAuth2Settings` builds the
    discovery documents.

    Args:
        oauth2_config (Any): The value of the `oauth2` key.

    Returns:
        dict[str, Any]: The validated section.

    Raises:
        ServerConfigurationError: On unknown fields, wrong types or missing required fields.
    """
    config = _check_fields("oauth2", oauth2_config, _ALLOWED_OAUTH2_FIELDS)
    missing = [f for f in _REQUIRED_OAUTH2_FIELDS if f not in config]
    if missing:
        _LOGGER.error(f"Missing required fields in 'oauth2' config: {missing}")
        raise ServerConfigurationError(
            f"Missing required fields in 'oauth2' config: {missing}"
        )
    return config
