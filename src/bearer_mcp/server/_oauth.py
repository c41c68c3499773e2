"""
OAuth 2.0 discovery metadata.

Bearer MCP does not issue tokens. When an external authorization server is configured, the listener
advertises it through the two well-known documents MCP clients use for discovery:

- `/.well-known/oauth-authorization-server` (RFC 8414)
- `/.well-known/oauth-protected-resource` (RFC 9728)

Both documents are built and validated with the `mcp` library's pydantic models, so an invalid URL
is rejected when the settings are created rather than when a client first asks for them.
"""

from dataclasses import dataclass, field
from typing import Any

from mcp.shared.auth import OAuthMetadata, ProtectedResourceMetadata
from pydantic import ValidationError

from bearer_mcp._exceptions import ServerConfigurationError

AUTHORIZATION_SERVER_PATH = "/.well-known/oauth-authorization-server"
PROTECTED_RESOURCE_PATH = "/.well-known/oauth-protected-resource"


@dataclass(frozen=True)
class OAuth2Settings:
    """
    Location of the external authorization server.

    Attributes:
        issuer: Authorization server issuer URL.
        authorization_endpoint: Authorization endpoint URL.
        token_endpoint: Token endpoint URL.
        registration_endpoint: Optional dynamic client registration endpoint URL.
    """

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str | None = None
    _documents: tuple[OAuthMetadata, ProtectedResourceMetadata] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        try:
            authorization_server = OAuthMetadata(
                issuer=self.issuer,
                authorization_endpoint=self.authorization_endpoint,
                token_endpoint=self.token_endpoint,
                registration_endpoint=self.registration_endpoint,
                response_types_supported=["code"],
            )
            protected_resource = ProtectedResourceMetadata(
                resource=self.resource_metadata_url,
                authorization_servers=[self.issuer],
            )
        except ValidationError as e:
            raise ServerConfigurationError(f"Invalid oauth2 settings: {e}") from e
        object.__setattr__(self, "_documents", (authorization_server, protected_resource))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OAuth2Settings":
        """Build settings from a validated `oauth2` configuration section."""
        return cls(
            issuer=data["issuer"],
            authorization_endpoint=data["authorization_endpoint"],
            token_endpoint=data["token_endpoint"],
            registration_endpoint=data.get("registration_endpoint"),
        )

    @property
    def resource_metadata_url(self) -> str:
        """str: URL of the protected-resource document, relative to the issuer."""
        return f"{self.issuer.rstrip('/')}{PROTECTED_RESOURCE_PATH}"

    def authorization_server_metadata(self) -> dict[str, Any]:
        """Return the RFC 8414 authorization server metadata document."""
        return self._documents[0].model_dump(mode="json", exclude_none=True)

    def protected_resource_metadata(self) -> dict[str, Any]:
        """Return the RFC 9728 protected resource metadata document."""
        return self._documents[1].model_dump(mode="json", exclude_none=True)
