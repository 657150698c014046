"""Tests for agent token providers and BearerAuth."""

import time

import httpx
import jwt
import pytest
from pydantic import SecretStr

from livechat.core.exceptions import TokenRequestError
from livechat.core.settings import AuthConfig
from livechat.services.token_service import (
    BearerAuth,
    KeycloakTokenProvider,
    StaticTokenProvider,
    build_token_provider,
)

TOKEN_URL = "http://keycloak.test/realms/Team33Casino/protocol/openid-connect/token"
SIGNING_KEY = "test-signing-key-for-agent-tokens-0001"


def _jwt(expires_in: int) -> str:
    claims = {"sub": "agent", "exp": int(time.time()) + expires_in}
    return jwt.encode(claims, SIGNING_KEY, algorithm="HS256")


class TokenEndpoint:
    def __init__(self, *tokens: str, status: int = 200) -> None:
        self.tokens = list(tokens)
        self.status = status
        self.requests: list[httpx.Request] = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status != 200:
            return httpx.Response(self.status, json={"error": "invalid_client"})
        token = self.tokens.pop(0) if self.tokens else None
        return httpx.Response(200, json={"access_token": token, "expires_in": 300})


def _provider(endpoint: TokenEndpoint) -> KeycloakTokenProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint.handle))
    return KeycloakTokenProvider(
        client=client,
        token_endpoint=TOKEN_URL,
        client_id="Team33admin",
        client_secret="s3cret",
        refresh_margin_seconds=30,
    )


def _auth_config(**overrides: object) -> AuthConfig:
    values: dict[str, object] = {
        "keycloak_url": None,
        "realm": "Team33Casino",
        "client_id": "Team33admin",
        "client_secret": SecretStr("s3cret"),
        "static_token": None,
        "refresh_margin_seconds": 30,
    }
    values.update(overrides)
    return AuthConfig(**values)  # type: ignore[arg-type]


class TestKeycloakTokenProvider:
    """Client-credentials token caching."""

    async def test_requests_client_credentials(self) -> None:
        endpoint = TokenEndpoint(_jwt(600))
        provider = _provider(endpoint)

        token = await provider.get_token()

        assert token is not None
        form = endpoint.requests[0].content.decode()
        assert "grant_type=client_credentials" in form
        assert "client_id=Team33admin" in form

    async def test_token_cached_until_expiry(self) -> None:
        endpoint = TokenEndpoint(_jwt(600), _jwt(600))
        provider = _provider(endpoint)

        first = await provider.get_token()
        second = await provider.get_token()

        assert first == second
        assert len(endpoint.requests) == 1

    async def test_token_inside_margin_is_refreshed(self) -> None:
        endpoint = TokenEndpoint(_jwt(10), _jwt(600))
        provider = _provider(endpoint)

        first = await provider.get_token()
        second = await provider.get_token()

        assert first != second
        assert len(endpoint.requests) == 2

    async def test_opaque_token_uses_expires_in(self) -> None:
        endpoint = TokenEndpoint("opaque-token")
        provider = _provider(endpoint)

        assert await provider.get_token() == "opaque-token"
        assert await provider.get_token() == "opaque-token"
        assert len(endpoint.requests) == 1

    async def test_invalidate_forces_refresh(self) -> None:
        endpoint = TokenEndpoint(_jwt(600), _jwt(900))
        provider = _provider(endpoint)

        await provider.get_token()
        provider.invalidate()
        await provider.get_token()

        assert len(endpoint.requests) == 2

    async def test_rejected_request_raises(self) -> None:
        provider = _provider(TokenEndpoint(status=401))
        with pytest.raises(TokenRequestError):
            await provider.get_token()

    async def test_missing_access_token_raises(self) -> None:
        provider = _provider(TokenEndpoint())
        with pytest.raises(TokenRequestError):
            await provider.get_token()


class TestBearerAuth:
    """Authorization header injection."""

    async def test_adds_header(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler),
            auth=BearerAuth(StaticTokenProvider("abc")),
        ) as client:
            await client.get("http://chat.test/api/chat/queue")

        assert seen[0].headers["Authorization"] == "Bearer abc"

    async def test_no_token_no_header(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler),
            auth=BearerAuth(StaticTokenProvider(None)),
        ) as client:
            await client.get("http://chat.test/api/chat/queue")

        assert "Authorization" not in seen[0].headers


class TestBuildTokenProvider:
    """Token source selection."""

    def test_static_token_wins(self) -> None:
        config = _auth_config(
            static_token=SecretStr("tok"), keycloak_url="http://keycloak.test"
        )
        provider = build_token_provider(config, httpx.AsyncClient())
        assert isinstance(provider, StaticTokenProvider)

    def test_keycloak_endpoint(self) -> None:
        config = _auth_config(keycloak_url="http://keycloak.test/")
        provider = build_token_provider(config, httpx.AsyncClient())
        assert isinstance(provider, KeycloakTokenProvider)
        assert provider.token_endpoint == TOKEN_URL

    def test_nothing_configured(self) -> None:
        assert build_token_provider(_auth_config(), httpx.AsyncClient()) is None
