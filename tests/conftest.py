"""Pytest configuration and fixtures."""

from collections.abc import AsyncGenerator

import fakeredis.aioredis
import httpx
import pytest

from livechat.core.settings import CacheConfig, ChatApiConfig, TransportConfig
from livechat.repositories.chat_api import ChatApi, build_http_client
from livechat.repositories.session_cache import SessionCache
from livechat.services.agent_client import AgentChatClient
from livechat.services.chat_client import UserChatClient
from tests.fakes import BASE_URL, FakeChatBackend

# --- Fake chat backend ---


@pytest.fixture
def backend() -> FakeChatBackend:
    return FakeChatBackend()


@pytest.fixture
async def chat_api(backend: FakeChatBackend) -> AsyncGenerator[ChatApi, None]:
    """ChatApi wired to the fake backend."""
    client = build_http_client(
        ChatApiConfig(base_url=BASE_URL, timeout_seconds=5),
        transport=httpx.MockTransport(backend.handle),
    )
    api = ChatApi(client)
    yield api
    await api.aclose()


# --- Test Redis (fakeredis) ---


@pytest.fixture
def fake_redis() -> fakeredis.aioredis.FakeRedis:
    """Create a fresh fake Redis client."""
    return fakeredis.aioredis.FakeRedis(decode_responses=True)


@pytest.fixture
def cache_config() -> CacheConfig:
    return CacheConfig(
        retention_minutes=60, cleanup_interval_minutes=10, key_prefix="test:"
    )


@pytest.fixture
def user_cache(
    fake_redis: fakeredis.aioredis.FakeRedis, cache_config: CacheConfig
) -> SessionCache:
    return SessionCache(fake_redis, cache_config, owner="USER")


@pytest.fixture
def agent_cache(
    fake_redis: fakeredis.aioredis.FakeRedis, cache_config: CacheConfig
) -> SessionCache:
    return SessionCache(fake_redis, cache_config, owner="AGENT")


# --- Clients ---


@pytest.fixture
def transport_config() -> TransportConfig:
    """Polling-only transport with fast ticks."""
    return TransportConfig(
        ws_base_url=None,
        secure_context=False,
        connect_timeout_seconds=1,
        max_reconnect_attempts=2,
        reconnect_base_delay_seconds=0.01,
        reconnect_max_delay_seconds=0.05,
        user_poll_interval_seconds=0.05,
        agent_poll_interval_seconds=0.05,
        sessions_poll_interval_seconds=0.05,
    )


@pytest.fixture
async def user_client(
    chat_api: ChatApi, user_cache: SessionCache, transport_config: TransportConfig
) -> AsyncGenerator[UserChatClient, None]:
    client = UserChatClient(chat_api, user_cache, transport_config)
    yield client
    await client.aclose()


@pytest.fixture
async def agent_client(
    chat_api: ChatApi, agent_cache: SessionCache, transport_config: TransportConfig
) -> AsyncGenerator[AgentChatClient, None]:
    client = AgentChatClient(chat_api, agent_cache, transport_config)
    yield client
    await client.aclose()
