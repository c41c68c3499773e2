"""
Tests for bearer_mcp.__init__ (package docstring, version, logging).
"""

import logging


def test_imports_and_version():
    import bearer_mcp as mod

    assert isinstance(mod.__version__, str)
    assert "__version__" in mod.__all__
    assert mod.__doc__


def test_logger_null_handler():
    import bearer_mcp  # noqa: F401

    logger = logging.getLogger("bearer_mcp")
    assert any(isinstance(h, logging.NullHandler) for h in logger.handlers)


def test_subpackages_export_public_api():
    from bearer_mcp import config, lifecycle, server

    assert "InstanceCache" in lifecycle.__all__
    assert "ConfigManager" in config.__all__
    assert hasattr(server, "BearerMcpServer")


def test_installed_mcp_is_a_supported_major_version():
    from importlib.metadata import version

    from mcp.server.fastmcp import FastMCP  # noqa: F401

    assert int(version("mcp").split(".")[0]) == 1
