"""Tests for OAuth2 discovery settings."""

import pytest

from bearer_mcp._exceptions import ServerConfigurationError
from bearer_mcp.server import OAuth2Settings

ISSUER = "https://auth.example.com"


def _settings(**overrides):
    values = {
        "issuer": ISSUER,
        "authorization_endpoint": f"{ISSUER}/authorize",
        "token_endpoint": f"{ISSUER}/token",
    }
    values.update(overrides)
    return OAuth2Settings(**values)


def test_authorization_server_metadata():
    document = _settings().authorization_server_metadata()
    assert document["issuer"].rstrip("/") == ISSUER
    assert document["authorization_endpoint"] == f"{ISSUER}/authorize"
    assert document["token_endpoint"] == f"{ISSUER}/token"
    assert document["response_types_supported"] == ["code"]
    assert "registration_endpoint" not in document


def test_registration_endpoint_is_optional():
    document = _settings(
        registration_endpoint=f"{ISSUER}/register"
    ).authorization_server_metadata()
    assert document["registration_endpoint"] == f"{ISSUER}/register"


def test_protected_resource_metadata():
    settings = _settings()
    assert settings.resource_metadata_url == f"{ISSUER}/.well-known/oauth-protected-resource"
    document = settings.protected_resource_metadata()
    assert document["resource"] == settings.resource_metadata_url
    assert [s.rstrip("/") for s in document["authorization_servers"]] == [ISSUER]


def test_resource_metadata_url_ignores_trailing_slash():
    assert (
        _settings(issuer=f"{ISSUER}/").resource_metadata_url
        == f"{ISSUER}/.well-known/oauth-protected-resource"
    )


def test_invalid_url_is_a_configuration_error():
    with pytest.raises(ServerConfigurationError, match="Invalid oauth2 settings"):
        _settings(token_endpoint="not a url")


def test_from_dict():
    settings = OAuth2Settings.from_dict(
        {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/authorize",
            "token_endpoint": f"{ISSUER}/token",
        }
    )
    assert settings == _settings()
    assert settings.registration_endpoint is None
