"""
CLI entrypoint for the Bearer MCP server.

This module sets up logging, global exception handling, and Uvicorn exception patching before starting the server.
It loads the configuration named by BEARER_MCP_CONFIG_FILE, registers every configured token, and serves
streamable HTTP until interrupted. Command-line options override the `server` section of the configuration.
"""

from .._logging import setup_global_exception_logging, setup_logging  # noqa: E402

# Ensure logging is set up before any other imports
setup_logging()
# Ensure global exception logging is set up before any server code runs
setup_global_exception_logging()

from .._monkeypatch import monkeypatch_uvicorn_exception_handling  # noqa: E402

# Ensure Uvicorn's exception handling is patched before any server code runs
monkeypatch_uvicorn_exception_handling()

import asyncio  # noqa: E402
import logging  # noqa: E402
import os  # noqa: E402
from typing import Any  # noqa: E402

from ..config import CONFIG_ENV_VAR, ConfigManager  # noqa: E402
from ._oauth import OAuth2Settings  # noqa: E402
from ._server import (  # noqa: E402
    DEFAULT_ENDPOINT,
    DEFAULT_HOST,
    DEFAULT_PORT,
    BearerMcpServer,
)

_LOGGER = logging.getLogger(__name__)


async def run_server(
    host: str | None = None,
    port: int | None = None,
    endpoint: str | None = None,
    json_response: bool | None = None,
) -> None:
    """
    Build the server from configuration and serve until interrupted.

    Args:
        host: Overrides `server.host`.
        port: Overrides `server.port`.
        endpoint: Overrides `server.endpoint`.
        json_response: Overrides `server.json_response`.
    """
    config: dict[str, Any] = {}
    factories: dict[str, Any] = {}
    if CONFIG_ENV_VAR in os.environ:
        config_manager = ConfigManager()
        config = await config_manager.get_config()
        factories = await config_manager.get_token_factories()
    else:
        _LOGGER.warning(
            f"[server.main:run_server] {CONFIG_ENV_VAR} is not set; starting with no tokens"
        )

    server_config = config.get("server", {})
    oauth2_config = config.get("oauth2")
    server = BearerMcpServer(
        host=host or server_config.get("host", DEFAULT_HOST),
        port=port if port is not None else server_config.get("port", DEFAULT_PORT),
        endpoint=endpoint or server_config.get("endpoint", DEFAULT_ENDPOINT),
        oauth2=OAuth2Settings.from_dict(oauth2_config) if oauth2_config else None,
        json_response=(
            json_response
            if json_response is not None
            else server_config.get("json_response", False)
        ),
    )
    for credential, factory in factories.items():
        await server.add_credential(credential, factory)

    try:
        info = await server.start()
        _LOGGER.warning(
            f"[server.main:run_server] serving {len(factories)} tokens at {info.mcp_url}"
        )
        await server.serve_forever()
    finally:
        _LOGGER.info("[server.main:run_server] Bearer MCP server stopped.")


def main() -> None:
    """
    Command-line entry point for the Bearer MCP server.

    Arguments:
        --host: Host to bind. Default: config value or 127.0.0.1.
        --port: Port to bind. Default: config value or 0 (dynamic).
        --endpoint: MCP endpoint path. Default: config value or /mcp.
        --json-response: Answer POSTs with JSON instead of SSE streams.
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="Start the Bearer MCP server (one MCP backend per bearer token)."
    )
    parser.add_argument("--host", default=None, help="Host to bind.")
    parser.add_argument("--port", type=int, default=None, help="Port to bind (0 = dynamic).")
    parser.add_argument("--endpoint", default=None, help="MCP endpoint path.")
    parser.add_argument(
        "--json-response",
        action="store_true",
        default=None,
        help="Answer POSTs with JSON instead of SSE streams.",
    )
    args = parser.parse_args()
    _LOGGER.info(f"CLI args: {vars(args)}")
    try:
        asyncio.run(
            run_server(
                host=args.host,
                port=args.port,
                endpoint=args.endpoint,
                json_response=args.json_response,
            )
        )
    except KeyboardInterrupt:
        _LOGGER.info("[server.main:main] interrupted")


if __name__ == "__main__":
    main()
