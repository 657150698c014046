"""Explicit wiring of the chat stack: Redis, HTTP clients and chat clients."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as redis
import structlog

from livechat.core.config import Settings
from livechat.core.redis import close_redis, init_redis
from livechat.repositories.chat_api import ChatApi, build_http_client
from livechat.repositories.session_cache import SessionCache
from livechat.services.agent_client import AgentChatClient
from livechat.services.chat_client import UserChatClient
from livechat.services.event_bus import EventBus
from livechat.services.token_service import (
    BearerAuth,
    TokenProvider,
    build_token_provider,
)

logger = structlog.get_logger()


class ChatContext:
    """Shared resources and the factories for user and agent clients.

    Both clients share one Redis store, so a display name cached by the user
    widget is visible to the agent console.
    """

    def __init__(
        self,
        settings: Settings,
        redis_client: redis.Redis,  # type: ignore[type-arg]
        user_api: ChatApi,
        agent_api: ChatApi,
        owns_redis: bool = False,
        token_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.redis = redis_client
        self.user_api = user_api
        self.agent_api = agent_api
        self._owns_redis = owns_redis
        self._token_client = token_client

    async def user_client(self, events: EventBus | None = None) -> UserChatClient:
        cache = await SessionCache.create(self.redis, self.settings.cache, "USER")
        return UserChatClient(self.user_api, cache, self.settings.transport, events)

    async def agent_client(self, events: EventBus | None = None) -> AgentChatClient:
        cache = await SessionCache.create(self.redis, self.settings.cache, "AGENT")
        return AgentChatClient(self.agent_api, cache, self.settings.transport, events)

    async def aclose(self) -> None:
        await self.user_api.aclose()
        await self.agent_api.aclose()
        if self._token_client is not None:
            await self._token_client.aclose()
        if self._owns_redis:
            await close_redis(self.redis)


async def create_context(
    settings: Settings,
    redis_client: redis.Redis | None = None,  # type: ignore[type-arg]
    token_provider: TokenProvider | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ChatContext:
    """Build a ChatContext from settings.

    ``redis_client``, ``token_provider`` and ``transport`` override the
    configured Redis connection, agent token source and HTTP transport.
    """
    owns_redis = redis_client is None
    if redis_client is None:
        redis_client = await init_redis(settings.redis)

    token_client: httpx.AsyncClient | None = None
    if token_provider is None and settings.auth.is_enabled:
        token_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.chat_api.timeout_seconds)
        )
        token_provider = build_token_provider(settings.auth, token_client)

    auth = BearerAuth(token_provider) if token_provider is not None else None
    user_http = build_http_client(settings.chat_api, transport=transport)
    agent_http = build_http_client(settings.chat_api, auth=auth, transport=transport)

    logger.info(
        "Chat context ready",
        chat_api=settings.chat_api.base_url,
        sockets=settings.transport.socket_enabled,
        agent_auth=auth is not None,
    )
    return ChatContext(
        settings=settings,
        redis_client=redis_client,
        user_api=ChatApi(user_http),
        agent_api=ChatApi(agent_http),
        owns_redis=owns_redis,
        token_client=token_client,
    )


@asynccontextmanager
async def chat_context(
    settings: Settings,
    redis_client: redis.Redis | None = None,  # type: ignore[type-arg]
) -> AsyncGenerator[ChatContext, None]:
    """Context-managed ChatContext for scripts and embedding applications."""
    context = await create_context(settings, redis_client=redis_client)
    try:
        yield context
    finally:
        await context.aclose()
