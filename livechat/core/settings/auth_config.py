"""Agent bearer-token configuration."""

from pydantic import BaseModel, SecretStr


class AuthConfig(BaseModel, frozen=True):
    """Identity provider settings for agent API calls."""

    keycloak_url: str | None
    realm: str
    client_id: str
    client_secret: SecretStr
    static_token: SecretStr | None
    refresh_margin_seconds: int

    @property
    def token_endpoint(self) -> str | None:
        """OpenID Connect token endpoint, or None when Keycloak is not set."""
        if not self.keycloak_url:
            return None
        base = self.keycloak_url.rstrip("/")
        return f"{base}/realms/{self.realm}/protocol/openid-connect/token"

    @property
    def is_enabled(self) -> bool:
        """Whether agent calls should carry a bearer token."""
        return self.static_token is not None or self.keycloak_url is not None
