"""
Monkeypatch utilities for Bearer MCP servers.

Uvicorn does not reliably log exceptions that escape an ASGI application. This module wraps
Uvicorn's RequestResponseCycle so that every unhandled ASGI exception is recorded twice:

1. Direct stderr JSON: bypasses Python logging entirely so the record survives a broken logging setup.
2. Python JSON Logger: a dedicated `json_asgi_errors` logger with structured exception fields.

Usage:
    Call `monkeypatch_uvicorn_exception_handling()` once at process startup, before the listener starts.
"""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import json as jsonlogger
from uvicorn.protocols.http.httptools_impl import RequestResponseCycle

_LOGGER = logging.getLogger(__name__)

_json_logger: logging.Logger | None = None


def _get_json_logger() -> logging.Logger:
    """
    Get or create the structured ASGI error logger.

    The logger writes to stderr through python-json-logger's JsonFormatter and does not
    propagate, so each error is emitted once by this logger.

    Returns:
        logging.Logger: The `json_asgi_errors` logger.
    """
    global _json_logger
    if _json_logger is None:
        json_logger = logging.getLogger("json_asgi_errors")
        if not json_logger.handlers:
            json_handler = logging.StreamHandler(sys.stderr)
            json_handler.setFormatter(
                jsonlogger.JsonFormatter(
                    fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
                    datefmt="%Y-%m-%dT%H:%M:%S.%fZ",
                )
            )
            json_logger.addHandler(json_handler)
            json_logger.setLevel(logging.ERROR)
        json_logger.propagate = False
        _json_logger = json_logger
    return _json_logger


def monkeypatch_uvicorn_exception_handling() -> None:
    """
    Monkey-patch Uvicorn's RequestResponseCycle so unhandled ASGI exceptions are logged.

    The original exception is always re-raised after logging, so Uvicorn's own error
    response handling is unchanged.

    Note:
        Call exactly once at process startup.
    """
    _LOGGER.warning(
        "Monkey-patching Uvicorn's RequestResponseCycle to log unhandled ASGI exceptions."
    )
    orig_run_asgi = RequestResponseCycle.run_asgi

    async def my_run_asgi(self: RequestResponseCycle, app: Any) -> None:
        async def wrapped_app(*args: Any) -> Any:
            try:
                return await app(*args)
            except Exception as e:
                exc_type = type(e)
                full_traceback = "".join(
                    traceback.format_exception(exc_type, e, e.__traceback__)
                )

                stderr_log = {
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "severity": "ERROR",
                    "message": f"Unhandled exception in ASGI application: {exc_type.__name__}: {e}",
                    "exception": {
                        "type": exc_type.__name__,
                        "module": exc_type.__module__,
                        "args": str(getattr(e, "args", None)),
                        "traceback": full_traceback,
                    },
                }
                print(json.dumps(stderr_log), file=sys.stderr, flush=True)

                try:
                    _get_json_logger().error(
                        f"Unhandled exception in ASGI application: {exc_type.__name__}: {e}",
                        extra={
                            "exception_type": exc_type.__name__,
                            "exception_module": exc_type.__module__,
                            "exception_message": str(e),
                            "stack_trace": full_traceback,
                        },
                        exc_info=(exc_type, e, e.__traceback__),
                    )
                except Exception as json_err:
                    print(f"Python JSON Logger failed: {json_err}", file=sys.stderr)

                raise

        await orig_run_asgi(self, wrapped_app)

    RequestResponseCycle.run_asgi = my_run_asgi  # type: ignore[method-assign]
