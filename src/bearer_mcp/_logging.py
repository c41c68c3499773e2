"""
Logging and global exception handling utilities for Bearer MCP servers.

This module provides functions to:
- Set up root logger configuration early in process startup (`setup_logging`).
- Ensure all unhandled synchronous and asynchronous exceptions are logged (`setup_global_exception_logging`).
- Redact bearer credentials before they reach any log record (`redact_credential`).

Call `setup_logging()` before any other imports in your main entrypoint to ensure all loggers are configured correctly.
Call `setup_global_exception_logging()` once at process startup to guarantee robust error visibility.

Environment Variables:
    PYTHONLOGLEVEL: Root log level (default: INFO).
    BEARER_MCP_LOG_FORMAT: Set to "json" to emit structured JSON records via python-json-logger.
"""

import asyncio
import logging
import os
import sys
from types import TracebackType
from typing import Any

from pythonjsonlogger import json as jsonlogger

LOG_FORMAT_ENV_VAR = "BEARER_MCP_LOG_FORMAT"
"""str: Name of the environment variable selecting the log record format ("text" or "json")."""

_TEXT_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
_JSON_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


def setup_logging() -> None:
    """
    Set up logging configuration for the application.

    This function configures the root logger using the PYTHONLOGLEVEL environment variable to set the log level.
    When BEARER_MCP_LOG_FORMAT is "json", records are rendered by python-json-logger's JsonFormatter so that
    container log collectors can parse them; otherwise a plain text format is used.
    It should be called before any other imports in your main entrypoint to ensure that all loggers are set up correctly
    and that no other modules configure logging before this setup takes effect.
    """
    handler = logging.StreamHandler(sys.stderr)
    if os.getenv(LOG_FORMAT_ENV_VAR, "text").lower() == "json":
        handler.setFormatter(
            jsonlogger.JsonFormatter(
                fmt=_JSON_FORMAT,
                datefmt="%Y-%m-%dT%H:%M:%S%z",
            )
        )
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))

    logging.basicConfig(
        level=os.getenv("PYTHONLOGLEVEL", "INFO"),
        handlers=[handler],
        force=True,  # Ensure we override any existing logging configuration
    )


def redact_credential(credential: str | None) -> str:
    """
    Return a log-safe rendering of a bearer credential.

    At most the first four characters are kept, and only when the credential is long enough
    that the prefix does not give most of it away.

    Args:
        credential (str | None): The credential to redact.

    Returns:
        str: The redacted form, e.g. ``"abcd****"``, ``"****"`` for short credentials,
            or ``"<none>"`` when no credential was supplied.
    """
    if credential is None:
        return "<none>"
    if len(credential) < 12:
        return "****"
    return f"{credential[:4]}****"


# Idempotency guard for global exception logging setup
_EXC_LOGGING_INSTALLED = False


def setup_global_exception_logging() -> None:
    """
    Set up global logging for all unhandled exceptions (synchronous and asynchronous) in the process.

    This function ensures that:
        - All uncaught exceptions in synchronous code are logged using the root logger.
        - All uncaught exceptions in asynchronous code (asyncio event loops) are logged, regardless of which event loop is used.
        - `asyncio.new_event_loop` is patched so that every new event loop gets the async exception handler.
        - The handler is also set on the current event loop, if one exists.

    Usage:
        Call this function once at process startup (e.g., at the top of your main() entrypoint) before any event loops are created or server code is run.
    """
    global _EXC_LOGGING_INSTALLED
    if _EXC_LOGGING_INSTALLED:
        return
    _EXC_LOGGING_INSTALLED = True

    def _log_unhandled_exception(
        exc_type: type[BaseException],
        exc_value: BaseException,
        exc_traceback: TracebackType | None,
    ) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            return
        logging.error(
            "UNHANDLED EXCEPTION", exc_info=(exc_type, exc_value, exc_traceback)
        )

    sys.excepthook = _log_unhandled_exception

    def _asyncio_exception_handler(
        loop: asyncio.AbstractEventLoop, context: dict[str, Any]
    ) -> None:
        exception = context.get("exception")
        logging.error(
            f"UNHANDLED ASYNC EXCEPTION: {context.get('message')}",
            exc_info=(
                (type(exception), exception, exception.__traceback__)
                if exception
                else None
            ),
        )

    _orig_new_event_loop = asyncio.new_event_loop

    def _patched_new_event_loop(*args: Any, **kwargs: Any) -> asyncio.AbstractEventLoop:
        loop = _orig_new_event_loop(*args, **kwargs)
        loop.set_exception_handler(_asyncio_exception_handler)
        return loop

    asyncio.new_event_loop = _patched_new_event_loop

    try:
        asyncio.get_event_loop().set_exception_handler(_asyncio_exception_handler)
    except RuntimeError:
        # No event loop yet; the patched constructor covers it
        pass
