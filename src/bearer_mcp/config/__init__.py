"""
Async Bearer MCP configuration management.

This module provides an async manager to load, validate, and cache configuration for Bearer MCP from a JSON file.
Configuration is loaded from a file specified by the BEARER_MCP_CONFIG_FILE environment variable using native
async file I/O (aiofiles).

Features:
    - Coroutine-safe, cached loading of configuration using asyncio.Lock.
    - Strict validation of configuration structure and values.
    - Helpers to build listener settings, OAuth settings and credential factories from the config.
    - Credentials are redacted before any config entry is logged.

Configuration Schema:
---------------------
The configuration file must be a JSON object. It may contain the following top-level keys (all optional):

  - `server` (dict): Listener settings: `host` (str), `port` (int, 0-65535), `endpoint` (str, starts
    with "/"), `json_response` (bool). See `bearer_mcp.config._server`.
  - `oauth2` (dict): External authorization server to advertise: `issuer`, `authorization_endpoint`,
    `token_endpoint` (required), `registration_endpoint` (optional).
  - `tokens` (dict): Entry name -> `{"factory": "module:attr", "token" | "token_env_var": ...}`.
    See `bearer_mcp.config._tokens`.

Unknown top-level keys fail validation.

Example Valid Configuration:
---------------------------
```json
{
    "server": {"host": "0.0.0.0", "port": 8080, "endpoint": "/mcp"},
    "oauth2": {
        "issuer": "https://auth.example.com",
        "authorization_endpoint": "https://auth.example.com/authorize",
        "token_endpoint": "https://auth.example.com/token"
    },
    "tokens": {
        "math": {"factory": "my_servers.math:create_server", "token_env_var": "MATH_TOKEN"}
    }
}
```

Environment Variables:
---------------------
- `BEARER_MCP_CONFIG_FILE`: Path to the Bearer MCP configuration JSON file.
"""

__all__ = [
    # Errors and core config
    "ConfigurationError",
    "ServerConfigurationError",
    "TokenConfigurationError",
    "ConfigManager",
    "CONFIG_ENV_VAR",
    "validate_config",
    "get_config_path",
    "load_and_validate_config",
    # Section API
    "validate_server_config",
    "validate_oauth2_config",
    "validate_tokens_config",
    "validate_single_token_config",
    "redact_token_config",
    "redact_config",
    "resolve_token",
    "load_factory",
    "resolve_token_factories",
]

import asyncio
import json
import logging
import os
from typing import Any, cast

import aiofiles

from ._server import validate_oauth2_config, validate_server_config
from ._tokens import (
    load_factory,
    redact_token_config,
    resolve_token,
    resolve_token_factories,
    validate_single_token_config,
    validate_tokens_config,
)
from .errors import (
    ConfigurationError,
    ServerConfigurationError,
    TokenConfigurationError,
)

_LOGGER = logging.getLogger(__name__)

CONFIG_ENV_VAR = "BEARER_MCP_CONFIG_FILE"
"""
str: Name of the environment variable specifying the path to the Bearer MCP config file.
"""

_ALLOWED_TOP_LEVEL_KEYS: set[str] = {"server", "oauth2", "tokens"}
"""Set of all allowed top-level keys in the configuration file."""


class ConfigManager:
    """
    Async configuration manager for Bearer MCP configuration.

    This class encapsulates all logic for loading, validating, and caching the configuration for Bearer MCP.
    """

    def __init__(self) -> None:
        """
        Initialize a new ConfigManager instance.

        Sets up the internal configuration cache and an asyncio.Lock for coroutine safety.
        """
        self._cache: dict[str, Any] | None = None
        self._lock = asyncio.Lock()

    async def clear_config_cache(self) -> None:
        """
        Clear the cached configuration (coroutine-safe).

        This will force the next configuration access to reload from disk.
        """
        _LOGGER.debug("Clearing Bearer MCP configuration cache...")
        async with self._lock:
            self._cache = None

        _LOGGER.debug("Configuration cache cleared.")

    async def _set_config_cache(self, config: dict[str, Any]) -> None:
        """
        PRIVATE: Set the in-memory configuration cache (coroutine-safe, for testing/internal use only).

        The configuration is validated before caching.

        Args:
            config (dict[str, Any]): The configuration dictionary to cache.

        Raises:
            ConfigurationError: If the provided configuration is invalid.
        """
        async with self._lock:
            self._cache = validate_config(config)

    async def get_config(self) -> dict[str, Any]:
        """
        Load and validate the Bearer MCP configuration from disk (coroutine-safe).

        The file path comes from the BEARER_MCP_CONFIG_FILE environment variable. The result is cached
        for subsequent calls.

        Returns:
            dict[str, Any]: The loaded and validated configuration dictionary.

        Raises:
            RuntimeError: If the BEARER_MCP_CONFIG_FILE environment variable is not set.
            ConfigurationError: If the config file is unreadable, not JSON, or fails validation.
        """
        _LOGGER.debug("Loading Bearer MCP configuration...")
        async with self._lock:
            if self._cache is not None:
                _LOGGER.debug("Using cached Bearer MCP configuration.")
                return self._cache

            config_path = get_config_path()
            validated = await load_and_validate_config(config_path)
            self._cache = validated
            _log_config_summary(validated)
            return validated

    async def get_server_config(self) -> dict[str, Any]:
        """Return the `server` section, or an empty dictionary."""
        config = await self.get_config()
        return cast(dict[str, Any], config.get("server", {}))

    async def get_oauth2_config(self) -> dict[str, Any] | None:
        """Return the `oauth2` section, or None if OAuth discovery is not configured."""
        config = await self.get_config()
        return cast(dict[str, Any] | None, config.get("oauth2"))

    async def get_token_factories(self) -> dict[str, Any]:
        """
        Resolve the `tokens` section into a credential -> factory mapping.

        Raises:
            TokenConfigurationError: If a credential or factory cannot be resolved.
        """
        config = await self.get_config()
        return resolve_token_factories(config.get("tokens", {}))


async def _load_config_from_file(config_path: str) -> dict[str, Any]:
    """
    Load and parse the Bearer MCP configuration from a JSON file asynchronously.

    Args:
        config_path (str): The file path to the configuration JSON file.

    Returns:
        dict[str, Any]: The parsed configuration.

    Raises:
        ConfigurationError: If the file is not found, cannot be read, or is not valid JSON.
    """
    try:
        async with aiofiles.open(config_path) as f:
            content = await f.read()
        return cast(dict[str, Any], json.loads(content))
    except FileNotFoundError:
        _LOGGER.error(f"Configuration file not found: {config_path}")
        raise ConfigurationError(
            f"Configuration file not found: {config_path}"
        ) from None
    except PermissionError:
        _LOGGER.error(
            f"Permission denied when trying to read configuration file: {config_path}"
        )
        raise ConfigurationError(
            f"Permission denied when trying to read configuration file: {config_path}"
        ) from None
    except json.JSONDecodeError as e:
        _LOGGER.error(f"Invalid JSON in configuration file {config_path}: {e}")
        raise ConfigurationError(
            f"Invalid JSON in configuration file {config_path}: {e}"
        ) from e


def get_config_path() -> str:
    """
    Retrieve the configuration file path from the environment variable.

    Returns:
        str: The value of BEARER_MCP_CONFIG_FILE.

    Raises:
        RuntimeError: If the BEARER_MCP_CONFIG_FILE environment variable is not set.
    """
    if CONFIG_ENV_VAR not in os.environ:
        _LOGGER.error(f"Environment variable {CONFIG_ENV_VAR} is not set.")
        raise RuntimeError(f"Environment variable {CONFIG_ENV_VAR} is not set.")
    config_path = os.environ[CONFIG_ENV_VAR]
    _LOGGER.info(f"Environment variable {CONFIG_ENV_VAR} is set to: {config_path}")
    return config_path


async def load_and_validate_config(config_path: str) -> dict[str, Any]:
    """
    Load and validate the Bearer MCP configuration from a JSON file.

    Args:
        config_path (str): The path to the configuration JSON file.

    Returns:
        dict[str, Any]: The loaded and validated configuration dictionary.

    Raises:
        ConfigurationError: If the file cannot be read, is not valid JSON, or fails validation.
            Section-specific failures keep their subclass (ServerConfigurationError,
            TokenConfigurationError).
    """
    data = await _load_config_from_file(config_path)
    try:
        return validate_config(data)
    except ConfigurationError as e:
        _LOGGER.error(f"Configuration validation failed for {config_path}: {e}")
        raise


def validate_config(config: Any) -> dict[str, Any]:
    """
    Validate the Bearer MCP configuration dictionary.

    Args:
        config (Any): The parsed configuration.

    Returns:
        dict[str, Any]: The validated configuration dictionary.

    Raises:
        ConfigurationError: If the configuration is not an object or has unknown top-level keys.
        ServerConfigurationError: If the `server` or `oauth2` section is invalid.
        TokenConfigurationError: If the `tokens` section is invalid.
    """
    if not isinstance(config, dict):
        _LOGGER.error("Bearer MCP config must be a JSON object")
        raise ConfigurationError("Bearer MCP config must be a JSON object")

    unknown_keys = set(config.keys()) - _ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        _LOGGER.error(f"Unknown top-level keys in Bearer MCP config: {unknown_keys}")
        raise ConfigurationError(
            f"Unknown top-level keys in Bearer MCP config: {unknown_keys}"
        )
    if "server" in config:
        validate_server_config(config["server"])
    if "oauth2" in config:
        validate_oauth2_config(config["oauth2"])
    if "tokens" in config:
        validate_tokens_config(config["tokens"])

    _LOGGER.info("Configuration validation passed.")
    return config


def redact_config(config: dict[str, Any]) -> dict[str, Any]:
    """
    Return a copy of a validated configuration with every credential redacted.

    Args:
        config (dict[str, Any]): The configuration.

    Returns:
        dict[str, Any]: A new dictionary safe to log.
    """
    redacted = dict(config)
    if "tokens" in redacted:
        redacted["tokens"] = {
            name: redact_token_config(entry) for name, entry in config["tokens"].items()
        }
    return redacted


def _log_config_summary(config: dict[str, Any]) -> None:
    """Log the loaded configuration with credentials redacted."""
    _LOGGER.info(f"Server settings: {config.get('server', {})}")
    if "oauth2" in config:
        _LOGGER.info(f"OAuth2 discovery: issuer {config['oauth2']['issuer']}")
    tokens = config.get("tokens", {})
    if tokens:
        _LOGGER.info("Configured tokens:")
        for name, details in tokens.items():
            _LOGGER.info(f"  Token '{name}': {redact_token_config(details)}")
    else:
        _LOGGER.info("No tokens configured.")
