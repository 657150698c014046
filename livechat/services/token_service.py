"""Bearer tokens for agent API calls."""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import Protocol

import httpx
import jwt
import structlog

from livechat.core.exceptions import TokenRequestError
from livechat.core.settings import AuthConfig

logger = structlog.get_logger()


class TokenProvider(Protocol):
    """Supplies the current access token, or None to send no header."""

    async def get_token(self) -> str | None: ...


class StaticTokenProvider:
    """Always returns the same token."""

    def __init__(self, token: str | None) -> None:
        self._token = token

    async def get_token(self) -> str | None:
        return self._token


class KeycloakTokenProvider:
    """Client-credentials token from Keycloak, cached until shortly before expiry."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        token_endpoint: str,
        client_id: str,
        client_secret: str,
        refresh_margin_seconds: int = 30,
    ) -> None:
        self._client = client
        self._token_endpoint = token_endpoint
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_margin = timedelta(seconds=refresh_margin_seconds)
        self._token: str | None = None
        self._expires_at: datetime | None = None

    @property
    def token_endpoint(self) -> str:
        return self._token_endpoint

    def _is_fresh(self) -> bool:
        if self._token is None or self._expires_at is None:
            return False
        return datetime.now(UTC) + self._refresh_margin < self._expires_at

    @staticmethod
    def _token_expiry(token: str, expires_in: int | None) -> datetime:
        """Expiry from the JWT ``exp`` claim, else from ``expires_in``."""
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            claims = {}
        exp = claims.get("exp")
        if isinstance(exp, int | float):
            return datetime.fromtimestamp(exp, tz=UTC)
        return datetime.now(UTC) + timedelta(seconds=expires_in or 60)

    async def get_token(self) -> str | None:
        if self._is_fresh():
            return self._token

        try:
            response = await self._client.post(
                self._token_endpoint,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
            )
        except httpx.HTTPError as e:
            logger.warning("Token request failed", error=str(e))
            raise TokenRequestError() from e

        if response.is_error:
            logger.warning(
                "Token endpoint rejected request", status=response.status_code
            )
            raise TokenRequestError(
                message=f"Token endpoint returned {response.status_code}"
            )

        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise TokenRequestError(message="Token response has no access_token")

        self._token = token
        self._expires_at = self._token_expiry(token, payload.get("expires_in"))
        logger.info("Agent access token refreshed", expires_at=self._expires_at)
        return token

    def invalidate(self) -> None:
        """Drop the cached token so the next call fetches a new one."""
        self._token = None
        self._expires_at = None


class BearerAuth(httpx.Auth):
    """Adds ``Authorization: Bearer`` from a TokenProvider to each request."""

    def __init__(self, provider: TokenProvider) -> None:
        self._provider = provider

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        token = await self._provider.get_token()
        if token:
            request.headers["Authorization"] = f"Bearer {token}"
        yield request


def build_token_provider(
    config: AuthConfig, client: httpx.AsyncClient
) -> TokenProvider | None:
    """Pick the token source configured for agent calls, if any."""
    if config.static_token is not None:
        return StaticTokenProvider(config.static_token.get_secret_value())
    endpoint = config.token_endpoint
    if endpoint is None:
        return None
    return KeycloakTokenProvider(
        client=client,
        token_endpoint=endpoint,
        client_id=config.client_id,
        client_secret=config.client_secret.get_secret_value(),
        refresh_margin_seconds=config.refresh_margin_seconds,
    )
