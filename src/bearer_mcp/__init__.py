"""
Bearer MCP: one MCP listener, many tenants.

Bearer MCP multiplexes a single streamable-HTTP MCP endpoint across tenants identified by opaque
bearer tokens. Each token is registered with a factory; the first request carrying the token builds
the tenant's MCP server, later requests reuse it, and removing or replacing the token tears it down.

Subpackages:
    - `bearer_mcp.lifecycle`: credential registry, instance cache, session table and event feed.
    - `bearer_mcp.server`: the `BearerMcpServer` facade, its Starlette app and the CLI.
    - `bearer_mcp.config`: JSON configuration loading and validation.

Logging:
    The library only attaches a NullHandler. Applications configure logging themselves, or call
    `bearer_mcp._logging.setup_logging()` as the CLI does.
"""

import logging

from ._version import version as __version__

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = ["__version__"]
