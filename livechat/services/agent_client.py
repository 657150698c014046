"""Agent console client: session lists, joining and replying."""

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from livechat.core.exceptions import ChatApiError
from livechat.core.settings import TransportConfig
from livechat.repositories.chat_api import ChatApi
from livechat.repositories.session_cache import SessionCache
from livechat.schemas.chat_schema import ChatSession, SessionStatus
from livechat.schemas.response_schema import SessionConnection, SessionListResult
from livechat.services.chat_client import ChatSessionClient
from livechat.services.event_bus import EventBus

logger = structlog.get_logger()

SessionsCallback = Callable[[SessionListResult], Awaitable[None] | None]


class AgentChatClient(ChatSessionClient):
    """Chat client for support agents.

    Session lists come from the remote API, enriched with the display names
    only the local cache knows, and fall back to the cache when the API is
    unreachable.
    """

    def __init__(
        self,
        api: ChatApi,
        cache: SessionCache,
        config: TransportConfig,
        events: EventBus | None = None,
    ) -> None:
        super().__init__(
            role="AGENT",
            api=api,
            cache=cache,
            config=config,
            poll_interval_seconds=config.agent_poll_interval_seconds,
            events=events,
        )
        self._sessions_poll_interval = config.sessions_poll_interval_seconds
        self._sessions_task: asyncio.Task[None] | None = None

    @property
    def agent_id(self) -> str | None:
        return self._party_id

    # --- Session lists ---

    async def _enrich(self, sessions: list[ChatSession]) -> list[ChatSession]:
        """Attach cached display names and write the result back to the cache."""
        enriched: list[ChatSession] = []
        for session in sessions:
            cached = await self._cache.get_session(session.session_id)
            if session.display_name is None and cached is not None:
                session = session.model_copy(
                    update={"display_name": cached.display_name}
                )
            enriched.append(await self._cache.save_session(session))
        return enriched

    async def _list_with_fallback(
        self,
        fetch: Callable[[], Awaitable[list[ChatSession]]],
        status: SessionStatus | None,
    ) -> SessionListResult:
        try:
            sessions = await fetch()
        except ChatApiError as e:
            cached = await self._cache.get_sessions_by_status(status)
            logger.warning(
                "Using cached sessions",
                status=status,
                count=len(cached),
                error=e.message,
            )
            return SessionListResult(
                sessions=cached,
                source="cache",
                error=None if cached else e.message,
            )
        return SessionListResult(sessions=await self._enrich(sessions), source="api")

    async def get_all_sessions(
        self, status: SessionStatus | None = None
    ) -> SessionListResult:
        return await self._list_with_fallback(
            lambda: self._api.list_sessions(status), status
        )

    async def get_waiting_sessions(self) -> SessionListResult:
        return await self.get_all_sessions("WAITING")

    async def get_active_sessions(self) -> SessionListResult:
        return await self.get_all_sessions("ACTIVE")

    async def get_queue(self) -> SessionListResult:
        """Sessions waiting for an agent, from the queue endpoint."""
        return await self._list_with_fallback(self._api.get_queue, "WAITING")

    # --- Joining and replying ---

    async def join_session(self, session_id: str, agent_id: str) -> SessionConnection:
        """Assign this agent (best effort) and attach a transport."""
        self._party_id = agent_id
        session: ChatSession | None = None
        try:
            session = await self._api.assign_agent(session_id, agent_id)
        except ChatApiError as e:
            logger.warning(
                "Agent assignment failed",
                session_id=session_id,
                agent_id=agent_id,
                error=e.message,
            )

        if session is not None:
            session = await self._cache.save_session(session)
        else:
            session = await self._cache.update_agent(session_id, agent_id)
        if session is None:
            remote = await self.get_session(session_id)
            session = await self._cache.save_session(
                remote.model_copy(update={"agent_id": agent_id})
            )

        self._session_id = session_id
        mode = await self._attach_transport(session_id)
        logger.info(
            "Agent joined session", session_id=session_id, agent_id=agent_id, mode=mode
        )
        return SessionConnection(session=session, mode=mode)

    async def _after_local_send(self, session_id: str) -> None:
        # An agent reply implicitly activates the session.
        await self._cache.update_session_status(session_id, "ACTIVE")

    # --- Session list polling ---

    async def start_sessions_polling(
        self,
        callback: SessionsCallback,
        interval: float | None = None,
        status: SessionStatus | None = None,
    ) -> None:
        """Deliver ``get_all_sessions`` to ``callback`` now and on every interval."""
        await self.stop_sessions_polling()
        period = interval or self._sessions_poll_interval
        self._sessions_task = asyncio.create_task(
            self._poll_sessions(callback, period, status)
        )

    async def _poll_sessions(
        self,
        callback: SessionsCallback,
        interval: float,
        status: SessionStatus | None,
    ) -> None:
        while True:
            try:
                result = await self.get_all_sessions(status)
                outcome = callback(result)
                if outcome is not None:
                    await outcome
            except Exception:
                logger.exception("Session list polling failed")
            await asyncio.sleep(interval)

    async def stop_sessions_polling(self) -> None:
        task, self._sessions_task = self._sessions_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    @property
    def is_polling_sessions(self) -> bool:
        return self._sessions_task is not None and not self._sessions_task.done()

    async def aclose(self) -> None:
        """Stop all background work."""
        await self.stop_sessions_polling()
        await super().aclose()
