"""
Configuration handling for the `tokens` section.

Each entry maps a descriptive name to a bearer credential and the factory that builds the MCP server
for it:

```json
{
    "tokens": {
        "math": {"factory": "my_servers.math:create_server", "token_env_var": "MATH_TOKEN"},
        "demo": {"factory": "my_servers.demo:create_server", "token": "demo-token-0123456789"}
    }
}
```

Fields:
    - `factory` (str, required): "module:attribute" path of a callable taking no arguments and
      returning (or resolving to) a FastMCP, low-level Server or McpBackend.
    - `token` (str): The credential itself. Use this OR `token_env_var`, not both.
    - `token_env_var` (str): Environment variable holding the credential.

Credentials are secrets: `redact_token_config` must be applied before a config entry is logged.
All validation errors raise `TokenConfigurationError`.
"""

__all__ = [
    "validate_tokens_config",
    "validate_single_token_config",
    "redact_token_config",
    "resolve_token",
    "load_factory",
    "resolve_token_factories",
]

import importlib
import logging
import os
from typing import Any

from bearer_mcp._exceptions import TokenConfigurationError
from bearer_mcp.lifecycle import Factory

_LOGGER = logging.getLogger(__name__)

_ALLOWED_TOKEN_FIELDS: dict[str, type] = {
    "factory": str,
    "token": str,
    "token_env_var": str,
}
"""Allowed fields of a `tokens` entry and their expected types."""


def redact_token_config(token_config: dict[str, Any]) -> dict[str, Any]:
    """
    Return a copy of a `tokens` entry with the credential redacted.

    Args:
        token_config (dict[str, Any]): The entry.

    Returns:
        dict[str, Any]: A new dictionary; `token` is replaced with "[REDACTED]". The environment
            variable name is not secret and is kept.
    """
    config_copy = dict(token_config)
    if config_copy.get("token"):
        config_copy["token"] = "[REDACTED]"  # noqa: S105
    return config_copy


def validate_single_token_config(name: str, token_config: Any) -> None:
    """
    Validate one `tokens` entry.

    Args:
        name (str): The entry name, used in error messages.
        token_config (Any): The entry.

    Raises:
        TokenConfigurationError: On unknown fields, wrong types, a missing or malformed `factory`,
            or when not exactly one of `token`/`token_env_var` is given.
    """
    if not isinstance(token_config, dict):
        raise TokenConfigurationError(
            f"Token config for '{name}' must be a dictionary, got {type(token_config).__name__}"
        )
    for field_name, value in token_config.items():
        if field_name not in _ALLOWED_TOKEN_FIELDS:
            raise TokenConfigurationError(
                f"Unknown field '{field_name}' in token config for '{name}'"
            )
        if not isinstance(value, _ALLOWED_TOKEN_FIELDS[field_name]):
            raise TokenConfigurationError(
                f"Field '{field_name}' in token config for '{name}' must be of type str, got {type(value).__name__}"
            )

    factory = token_config.get("factory")
    if factory is None:
        raise TokenConfigurationError(
            f"Missing required field 'factory' in token config for '{name}'"
        )
    module_name, sep, attr = factory.partition(":")
    if not sep or not module_name or not attr:
        raise TokenConfigurationError(
            f"Field 'factory' in token config for '{name}' must look like 'module:attribute', got {factory!r}"
        )

    has_token = "token" in token_config
    has_env_var = "token_env_var" in token_config
    if has_token == has_env_var:
        raise TokenConfigurationError(
            f"Token config for '{name}' must set exactly one of 'token' or 'token_env_var'"
        )
    if has_token and not token_config["token"]:
        raise TokenConfigurationError(f"Field 'token' in token config for '{name}' is empty")


def validate_tokens_config(tokens_config: Any) -> None:
    """
    Validate the `tokens` section.

    Args:
        tokens_config (Any): The value of the `tokens` key. An empty dictionary is valid.

    Raises:
        TokenConfigurationError: If the section is not a dictionary or any entry is invalid.
    """
    if not isinstance(tokens_config, dict):
        _LOGGER.error(
            f"'tokens' must be a dictionary, got {type(tokens_config).__name__}"
        )
        raise TokenConfigurationError(
            f"'tokens' must be a dictionary, got {type(tokens_config).__name__}"
        )
    for name, token_config in tokens_config.items():
        try:
            validate_single_token_config(name, token_config)
        except TokenConfigurationError as e:
            _LOGGER.error(f"Invalid token config for '{name}': {e}")
            raise


def resolve_token(name: str, token_config: dict[str, Any]) -> str:
    """
    Return the credential of a validated `tokens` entry.

    Raises:
        TokenConfigurationError: If `token_env_var` names an unset or empty environment variable.
    """
    if "token" in token_config:
        return str(token_config["token"])
    env_var = token_config["token_env_var"]
    value = os.environ.get(env_var)
    if not value:
        _LOGGER.error(
            f"Environment variable '{env_var}' for token '{name}' is not set or empty"
        )
        raise TokenConfigurationError(
            f"Environment variable '{env_var}' for token '{name}' is not set or empty"
        )
    _LOGGER.debug(f"Resolved token '{name}' from environment variable '{env_var}'")
    return value


def load_factory(spec: str) -> Factory:
    """
    Import a factory from a "module:attribute" path.

    The attribute may be dotted (e.g. "pkg.mod:Servers.create").

    Raises:
        TokenConfigurationError: If the module cannot be imported, the attribute does not exist or
            is not callable.
    """
    module_name, _, attr_path = spec.partition(":")
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as e:
        raise TokenConfigurationError(
            f"Cannot import factory module '{module_name}': {e}"
        ) from e
    for attr in attr_path.split("."):
        try:
            target = getattr(target, attr)
        except AttributeError as e:
            raise TokenConfigurationError(
                f"Factory '{spec}' not found: {e}"
            ) from e
    if not callable(target):
        raise TokenConfigurationError(f"Factory '{spec}' is not callable")
    return target  # type: ignore[no-any-return]


def resolve_token_factories(tokens_config: dict[str, Any]) -> dict[str, Factory]:
    """
    Resolve every validated `tokens` entry into a credential -> factory mapping.

    Args:
        tokens_config (dict[str, Any]): The validated `tokens` section.

    Returns:
        dict[str, Factory]: Credentials mapped to factories, in configuration order.

    Raises:
        TokenConfigurationError: If a credential or factory cannot be resolved, or two entries use
            the same credential.
    """
    factories: dict[str, Factory] = {}
    owners: dict[str, str] = {}
    for name, token_config in tokens_config.items():
        credential = resolve_token(name, token_config)
        if credential in factories:
            raise TokenConfigurationError(
                f"Token entries '{owners[credential]}' and '{name}' use the same credential"
            )
        factories[credential] = load_factory(token_config["factory"])
        owners[credential] = name
        _LOGGER.info(f"Loaded token '{name}': {redact_token_config(token_config)}")
    return factories
