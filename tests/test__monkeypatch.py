import asyncio
import json
import logging
from unittest.mock import MagicMock, patch

import pytest


def test_monkeypatch_uvicorn_exception_handling_warns_and_patches(caplog):
    with patch("bearer_mcp._monkeypatch.RequestResponseCycle") as MockCycle:
        import bearer_mcp._monkeypatch as monkeypatch_mod

        dummy_orig_run_asgi = MagicMock()
        MockCycle.run_asgi = dummy_orig_run_asgi
        with caplog.at_level("WARNING"):
            monkeypatch_mod.monkeypatch_uvicorn_exception_handling()
        assert any(
            "Monkey-patching Uvicorn's RequestResponseCycle" in r.message
            for r in caplog.records
        )
        assert MockCycle.run_asgi != dummy_orig_run_asgi


def test_wrapped_app_logs_and_raises(caplog, capsys):
    with (
        patch("bearer_mcp._monkeypatch.RequestResponseCycle") as MockCycle,
        patch("bearer_mcp._monkeypatch._get_json_logger") as MockGetJsonLogger,
    ):
        import bearer_mcp._monkeypatch as monkeypatch_mod

        async def dummy_orig_run_asgi(self, app):
            await app("scope", "receive", "send")

        MockCycle.run_asgi = dummy_orig_run_asgi
        mock_json_logger = MagicMock()
        MockGetJsonLogger.return_value = mock_json_logger

        monkeypatch_mod.monkeypatch_uvicorn_exception_handling()
        run_asgi = MockCycle.run_asgi

        async def bad_app(*args):
            raise ValueError("fail!")

        with pytest.raises(ValueError):
            asyncio.run(run_asgi(MagicMock(), bad_app))

        # Structured logger call
        mock_json_logger.error.assert_called_once()
        error_call = mock_json_logger.error.call_args
        assert "Unhandled exception in ASGI application" in error_call[0][0]
        assert "ValueError" in error_call[0][0]
        assert error_call[1]["extra"]["exception_type"] == "ValueError"
        assert error_call[1]["extra"]["exception_message"] == "fail!"
        assert "stack_trace" in error_call[1]["extra"]

        # Direct stderr JSON record
        stderr_line = capsys.readouterr().err.strip().splitlines()[-1]
        record = json.loads(stderr_line)
        assert record["severity"] == "ERROR"
        assert record["exception"]["type"] == "ValueError"
        assert "fail!" in record["exception"]["traceback"]


def test_wrapped_app_passes_through_success():
    with patch("bearer_mcp._monkeypatch.RequestResponseCycle") as MockCycle:
        import bearer_mcp._monkeypatch as monkeypatch_mod

        seen = []

        async def dummy_orig_run_asgi(self, app):
            seen.append(await app("scope"))

        MockCycle.run_asgi = dummy_orig_run_asgi
        monkeypatch_mod.monkeypatch_uvicorn_exception_handling()

        async def good_app(*args):
            return "ok"

        asyncio.run(MockCycle.run_asgi(MagicMock(), good_app))
        assert seen == ["ok"]


def test_json_logger_failure_is_reported_on_stderr(capsys):
    with (
        patch("bearer_mcp._monkeypatch.RequestResponseCycle") as MockCycle,
        patch("bearer_mcp._monkeypatch._get_json_logger") as MockGetJsonLogger,
    ):
        import bearer_mcp._monkeypatch as monkeypatch_mod

        async def dummy_orig_run_asgi(self, app):
            await app("scope")

        MockCycle.run_asgi = dummy_orig_run_asgi
        mock_json_logger = MagicMock()
        mock_json_logger.error.side_effect = Exception("formatter broken")
        MockGetJsonLogger.return_value = mock_json_logger

        monkeypatch_mod.monkeypatch_uvicorn_exception_handling()

        async def bad_app(*args):
            raise ValueError("test exception")

        with pytest.raises(ValueError):
            asyncio.run(MockCycle.run_asgi(MagicMock(), bad_app))

        assert "Python JSON Logger failed: formatter broken" in capsys.readouterr().err


def test_get_json_logger_is_cached_and_isolated():
    import bearer_mcp._monkeypatch as monkeypatch_mod

    monkeypatch_mod._json_logger = None
    first = monkeypatch_mod._get_json_logger()
    second = monkeypatch_mod._get_json_logger()
    assert first is second
    assert first.name == "json_asgi_errors"
    assert first.propagate is False
    assert first.level == logging.ERROR
    assert first.handlers
