"""Periodic-pull transport used when a socket is not available."""

import asyncio
from collections.abc import Awaitable, Callable, Collection
from datetime import datetime
from typing import Any

import structlog

from livechat.core.exceptions import ChatApiError, TransportError
from livechat.schemas.chat_schema import (
    AgentInfo,
    ChatEvent,
    ChatMessage,
    ChatSession,
    SenderType,
)
from livechat.transports.base import EventHandler, Transport

logger = structlog.get_logger()

FetchMessages = Callable[[str], Awaitable[list[ChatMessage]]]
FetchSession = Callable[[str], Awaitable[ChatSession]]


class PollTransport(Transport):
    """Polls messages and session status on a fixed interval.

    Each tick emits a ``message`` event for every message newer than the last
    one observed, limited to ``visible_sender_types`` so the polling party
    never receives its own messages back. Session status is checked
    separately to detect closure and, when ``watch_agent_join`` is set, agent
    assignment.
    """

    mode = "polling"

    def __init__(
        self,
        session_id: str,
        on_event: EventHandler,
        fetch_messages: FetchMessages,
        fetch_session: FetchSession,
        visible_sender_types: Collection[SenderType],
        interval_seconds: float,
        watch_agent_join: bool = False,
    ) -> None:
        super().__init__(session_id, on_event)
        self._fetch_messages = fetch_messages
        self._fetch_session = fetch_session
        self._visible = frozenset(visible_sender_types)
        self._interval = interval_seconds
        self._watch_agent_join = watch_agent_join
        self._last_seen: datetime | None = None
        self._announced_agent: str | None = None
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_seen(self) -> datetime | None:
        return self._last_seen

    async def start(self) -> None:
        if self.is_running:
            return
        logger.info(
            "Starting message polling",
            session_id=self.session_id,
            interval=self._interval,
        )
        self._closed = False
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._interval)
            try:
                await self.tick()
            except ChatApiError as e:
                logger.warning(
                    "Poll tick failed", session_id=self.session_id, error=e.message
                )
            except Exception:
                logger.exception("Poll tick crashed", session_id=self.session_id)

    async def tick(self) -> None:
        """One poll cycle: new messages first, then session status."""
        await self._poll_messages()
        if not self._closed:
            await self._poll_session()

    async def _poll_messages(self) -> None:
        messages = await self._fetch_messages(self.session_id)
        timestamped = [(m.created_at, m) for m in messages if m.created_at is not None]
        timestamped.sort(key=lambda pair: pair[0])
        for created_at, message in timestamped:
            if self._last_seen is not None and created_at <= self._last_seen:
                continue
            self._last_seen = created_at
            if message.sender_type not in self._visible:
                continue
            await self._on_event(
                ChatEvent(type="message", session_id=self.session_id, message=message)
            )

    async def _poll_session(self) -> None:
        session = await self._fetch_session(self.session_id)
        if session.status == "CLOSED":
            self._closed = True
            logger.info("Session closed, stopping polling", session_id=self.session_id)
            await self._on_event(
                ChatEvent(type="session_closed", session_id=self.session_id)
            )
            return
        if (
            self._watch_agent_join
            and session.status == "ACTIVE"
            and session.agent_id
            and session.agent_id != self._announced_agent
        ):
            self._announced_agent = session.agent_id
            await self._on_event(
                ChatEvent(
                    type="agent_join",
                    session_id=self.session_id,
                    agent=AgentInfo(id=session.agent_id),
                )
            )

    async def send(self, payload: dict[str, Any]) -> None:
        raise TransportError("Polling transport cannot send frames")

    async def stop(self) -> None:
        self._closed = True
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
