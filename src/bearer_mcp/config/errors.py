"""
Custom exceptions for Bearer MCP configuration.
"""

from bearer_mcp._exceptions import (
    ConfigurationError,
    ServerConfigurationError,
    TokenConfigurationError,
)

__all__ = [
    "ConfigurationError",
    "ServerConfigurationError",
    "TokenConfigurationError",
]
