"""Live-chat session client shared by the user widget and the agent console.

One ChatSessionClient is parameterized by role. The role decides how local
messages are tagged, which side's messages count as unread, and which
messages the poller surfaces. Real-time delivery tries a socket first and
falls back to polling for the rest of the session; the client, not the
transport, owns reconnection.
"""

import asyncio
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from livechat.core.exceptions import (
    ChatApiError,
    ChatValidationError,
    InvalidRatingError,
    MessageDeliveryError,
    NoActiveSessionError,
    SessionClosedError,
    SessionNotFoundError,
    TransportError,
)
from livechat.core.settings import TransportConfig
from livechat.repositories.chat_api import ChatApi
from livechat.repositories.session_cache import SessionCache
from livechat.schemas.chat_schema import (
    COUNTERPART,
    TEMP_MESSAGE_PREFIX,
    ChatEvent,
    ChatMessage,
    ChatRole,
    ChatSession,
    ClientState,
    SenderType,
    TransportMode,
)
from livechat.schemas.response_schema import (
    CloseResult,
    MessageListResult,
    SendResult,
    SessionConnection,
    SessionListResult,
)
from livechat.services.event_bus import EventBus, Listener
from livechat.transports.base import Transport
from livechat.transports.poll_transport import PollTransport
from livechat.transports.socket_transport import SocketTransport

logger = structlog.get_logger()

# Sender types each role sees through the poller; never its own.
POLL_VISIBLE_SENDERS: dict[ChatRole, frozenset[SenderType]] = {
    "USER": frozenset({"AGENT", "SYSTEM"}),
    "AGENT": frozenset({"USER"}),
}


class ChatSessionClient:
    """Session lifecycle, message delivery and event fan-out for one party."""

    def __init__(
        self,
        role: ChatRole,
        api: ChatApi,
        cache: SessionCache,
        config: TransportConfig,
        poll_interval_seconds: float,
        events: EventBus | None = None,
    ) -> None:
        self.role = role
        self._api = api
        self._cache = cache
        self._config = config
        self._poll_interval = poll_interval_seconds
        self._events = events or EventBus()

        self._state: ClientState = "UNINITIALIZED"
        self._session_id: str | None = None
        self._last_session_id: str | None = None
        self._unsynced_closes: set[str] = set()
        self._party_id: str | None = None
        self._transport: Transport | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._reconnect_attempts = 0
        self._pending: dict[str, str] = {}

    # --- Observation ---

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; call the returned function to unsubscribe."""
        return self._events.subscribe(listener)

    def _notify(self, event: ChatEvent) -> None:
        self._events.emit(event)

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def party_id(self) -> str | None:
        return self._party_id

    @property
    def mode(self) -> TransportMode | None:
        return self._transport.mode if self._transport is not None else None

    @property
    def is_connected(self) -> bool:
        return self._state == "CONNECTED"

    @property
    def cache(self) -> SessionCache:
        return self._cache

    def _require_session(
        self, session_id: str | None = None, include_last: bool = False
    ) -> str:
        resolved = session_id or self._session_id
        if not resolved and include_last:
            resolved = self._last_session_id
        if not resolved:
            raise NoActiveSessionError()
        return resolved

    # --- Transport selection ---

    async def _attach_transport(self, session_id: str) -> TransportMode:
        """Connect by socket, falling back to polling for the rest of the session."""
        await self._teardown_transport()
        self._reconnect_attempts = 0
        transport: Transport
        try:
            transport = await self._open_socket(session_id)
        except TransportError as e:
            logger.warning(
                "Socket unavailable, falling back to polling",
                session_id=session_id,
                role=self.role,
                reason=e.message,
            )
            transport = await self._start_polling(session_id)
        self._state = "CONNECTED"
        return transport.mode

    async def _open_socket(self, session_id: str) -> SocketTransport:
        transport = SocketTransport(
            session_id=session_id,
            config=self._config,
            on_event=self._handle_event,
            on_closed=self._on_socket_closed,
        )
        await transport.start()
        self._transport = transport
        self._reconnect_attempts = 0
        self._notify(ChatEvent(type="connected", session_id=session_id, mode="socket"))
        return transport

    async def _start_polling(self, session_id: str) -> PollTransport:
        transport = PollTransport(
            session_id=session_id,
            on_event=self._handle_event,
            fetch_messages=self._api.get_messages,
            fetch_session=self._api.get_session,
            visible_sender_types=POLL_VISIBLE_SENDERS[self.role],
            interval_seconds=self._poll_interval,
            watch_agent_join=self.role == "USER",
        )
        await transport.start()
        self._transport = transport
        self._notify(ChatEvent(type="connected", session_id=session_id, mode="polling"))
        return transport

    def _on_socket_closed(
        self, transport: SocketTransport, error: Exception | None
    ) -> None:
        if transport is not self._transport:
            return
        self._transport = None
        self._notify(ChatEvent(type="disconnected", session_id=transport.session_id))
        self._reconnect_task = asyncio.create_task(
            self._reconnect(transport.session_id)
        )

    async def _reconnect(self, session_id: str) -> None:
        """Exponential-backoff reconnection, capped at max_reconnect_attempts."""
        while self._reconnect_attempts < self._config.max_reconnect_attempts:
            self._reconnect_attempts += 1
            delay = self._config.reconnect_delay(self._reconnect_attempts)
            logger.info(
                "Reconnecting socket",
                session_id=session_id,
                attempt=self._reconnect_attempts,
                delay=delay,
            )
            await asyncio.sleep(delay)
            if self._session_id != session_id:
                return
            try:
                await self._open_socket(session_id)
                return
            except TransportError as e:
                logger.warning(
                    "Reconnect attempt failed",
                    session_id=session_id,
                    attempt=self._reconnect_attempts,
                    reason=e.message,
                )

        logger.error("Socket reconnection exhausted", session_id=session_id)
        self._notify(ChatEvent(type="connection_failed", session_id=session_id))

    async def _teardown_transport(self) -> None:
        reconnect, self._reconnect_task = self._reconnect_task, None
        if reconnect is not None and reconnect is not asyncio.current_task():
            reconnect.cancel()
            try:
                await reconnect
            except asyncio.CancelledError:
                pass
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.stop()

    # --- Inbound events ---

    async def _handle_event(self, event: ChatEvent) -> None:
        """Normalize an inbound event, update the cache, then notify listeners."""
        session_id = event.session_id or self._session_id
        if session_id is None:
            return

        if event.type == "message" and event.message is not None:
            message = event.message
            if message.sender_type == self.role:
                await self._absorb_self_echo(session_id, message)
                return
            await self._cache.save_message(session_id, message)
        elif event.type == "session_closed":
            await self._cache.update_session_status(session_id, "CLOSED")
            if session_id == self._session_id:
                transport, self._transport = self._transport, None
                if transport is not None:
                    await transport.stop()
                self._state = "CLOSED"
        elif event.type == "agent_join" and event.agent is not None:
            await self._cache.update_agent(session_id, event.agent.id)

        self._notify(event)

    async def _absorb_self_echo(self, session_id: str, message: ChatMessage) -> None:
        temp_id = next(
            (tid for tid, text in self._pending.items() if text == message.content),
            None,
        )
        if temp_id is not None:
            del self._pending[temp_id]
            await self._cache.confirm_message(session_id, temp_id, message)
        else:
            await self._cache.save_message(session_id, message)

    # --- Session lifecycle ---

    async def resume_session(
        self, session_id: str, party_id: str
    ) -> SessionConnection:
        """Re-attach to an existing session; closed sessions cannot be resumed."""
        session = await self.get_session(session_id)
        if session.status == "CLOSED":
            raise SessionClosedError()
        session = await self._cache.save_session(session)

        self._session_id = session_id
        self._party_id = party_id
        mode = await self._attach_transport(session_id)
        return SessionConnection(session=session, mode=mode)

    async def disconnect(self) -> None:
        """Tear down transport and reconnection; reset session pointers."""
        await self._teardown_transport()
        if self._session_id is not None:
            self._last_session_id = self._session_id
        self._session_id = None
        self._pending.clear()
        if self._state != "CLOSED":
            self._state = "UNINITIALIZED"

    async def aclose(self) -> None:
        """Stop all background work."""
        await self.disconnect()

    async def close_session(self, session_id: str | None = None) -> CloseResult:
        """Close locally first, then best-effort remotely.

        Always succeeds once the cache is updated. ``synced`` reports whether
        the backend acknowledged the close. Without an id, the current or most
        recently disconnected session is closed. Closing an already closed
        session calls the backend again only if its earlier close failed.
        """
        sid = self._require_session(session_id, include_last=True)
        cached = await self._cache.get_session(sid)
        already_closed = cached is not None and cached.status == "CLOSED"
        if not already_closed:
            cached = await self._cache.update_session_status(sid, "CLOSED")

        synced = True
        if not already_closed or sid in self._unsynced_closes:
            try:
                await self._api.close_session(sid)
                self._unsynced_closes.discard(sid)
            except ChatApiError as e:
                synced = False
                self._unsynced_closes.add(sid)
                logger.warning(
                    "Remote close failed, closed locally",
                    session_id=sid,
                    error=e.message,
                )

        if sid == self._session_id:
            await self.disconnect()
            self._state = "CLOSED"
        return CloseResult(session_id=sid, synced=synced, session=cached)

    # --- Messages ---

    async def _after_local_send(self, session_id: str) -> None:
        """Hook for role-specific side effects of sending a message."""

    async def send_message(
        self, content: str, session_id: str | None = None
    ) -> SendResult:
        """Optimistically cache the message, then deliver it exactly once."""
        if not content or not content.strip():
            raise ChatValidationError("Message content is empty")
        sid = self._require_session(session_id)

        temp = ChatMessage(
            message_id=f"{TEMP_MESSAGE_PREFIX}{uuid.uuid4().hex}",
            session_id=sid,
            sender_type=self.role,
            sender_id=self._party_id,
            content=content,
            created_at=datetime.now(UTC),
        )
        temp = await self._cache.save_message(sid, temp)
        await self._after_local_send(sid)

        body: dict[str, Any] = {
            "senderId": self._party_id,
            "senderType": self.role,
            "content": content,
        }
        transport = self._transport
        if transport is not None and transport.is_open and sid == self._session_id:
            self._pending[temp.message_id] = content
            try:
                await transport.send(body)
                return SendResult(message=temp, via="socket")
            except TransportError as e:
                self._pending.pop(temp.message_id, None)
                logger.warning(
                    "Socket send failed, using REST", session_id=sid, error=e.message
                )

        try:
            created = await self._api.send_message(
                sid, self._party_id, self.role, content
            )
        except ChatApiError as e:
            raise MessageDeliveryError(e.message) from e
        confirmed = await self._cache.confirm_message(sid, temp.message_id, created)
        return SendResult(message=confirmed, via="rest")

    async def send_typing_indicator(self, is_typing: bool) -> bool:
        """Send a typing frame over an open socket. Returns False when polling."""
        transport = self._transport
        if transport is None or not transport.is_open:
            return False
        try:
            await transport.send(
                {
                    "type": "typing",
                    "isTyping": is_typing,
                    "senderId": self._party_id,
                    "senderType": self.role,
                }
            )
        except TransportError:
            return False
        return True

    # --- Reads with cache fallback ---

    async def get_session(self, session_id: str | None = None) -> ChatSession:
        """Remote session, or the cached copy when the API is unreachable."""
        sid = self._require_session(session_id)
        try:
            return await self._api.get_session(sid)
        except SessionNotFoundError:
            raise
        except ChatApiError as e:
            cached = await self._cache.get_session(sid)
            if cached is None:
                raise
            logger.warning("Using cached session", session_id=sid, error=e.message)
            return cached

    async def get_messages(self, session_id: str | None = None) -> MessageListResult:
        sid = self._require_session(session_id)
        try:
            messages = await self._api.get_messages(sid)
        except ChatApiError as e:
            logger.warning("Using cached messages", session_id=sid, error=e.message)
            cached = await self._cache.get_messages(sid)
            return MessageListResult(messages=cached, source="cache")
        return MessageListResult(messages=messages, source="api")

    # --- Read state and feedback ---

    async def mark_as_read(
        self,
        sender_type: SenderType | None = None,
        session_id: str | None = None,
    ) -> None:
        """Mark the counterpart's messages read, locally first."""
        sid = self._require_session(session_id)
        await self._cache.mark_session_as_read(sid)
        await self._api.mark_as_read(sid, sender_type or COUNTERPART[self.role])

    async def rate_session(
        self,
        rating: int,
        feedback: str | None = None,
        session_id: str | None = None,
    ) -> dict[str, Any]:
        """Rate a session 1-5, by default the current or last closed one.

        Out-of-range ratings never reach the network.
        """
        if isinstance(rating, bool) or not isinstance(rating, int):
            raise InvalidRatingError()
        if rating < 1 or rating > 5:
            raise InvalidRatingError()
        sid = self._require_session(session_id, include_last=True)
        return await self._api.rate_session(sid, rating, feedback)


class UserChatClient(ChatSessionClient):
    """End-user side of the chat widget."""

    def __init__(
        self,
        api: ChatApi,
        cache: SessionCache,
        config: TransportConfig,
        events: EventBus | None = None,
    ) -> None:
        super().__init__(
            role="USER",
            api=api,
            cache=cache,
            config=config,
            poll_interval_seconds=config.user_poll_interval_seconds,
            events=events,
        )

    @property
    def account_id(self) -> str | None:
        return self._party_id

    async def start_session(
        self,
        account_id: str,
        subject: str | None = None,
        display_name: str | None = None,
    ) -> ChatSession:
        """Create a session remotely and cache it with the caller's display name."""
        self._party_id = account_id
        session = await self._api.create_session(account_id, subject)
        cached = await self._cache.save_session(
            session.model_copy(update={"display_name": display_name})
            if display_name
            else session
        )
        self._session_id = session.session_id
        self._state = "SESSION_STARTED"
        logger.info(
            "Chat session started",
            session_id=session.session_id,
            account_id=account_id,
            status=cached.status,
        )
        return cached

    async def connect(
        self,
        account_id: str,
        subject: str | None = None,
        display_name: str | None = None,
    ) -> SessionConnection:
        """Start a session and attach a transport; degraded delivery still succeeds."""
        await self._teardown_transport()
        session = await self.start_session(account_id, subject, display_name)
        mode = await self._attach_transport(session.session_id)
        return SessionConnection(session=session, mode=mode)

    async def get_chat_history(
        self, account_id: str | None = None
    ) -> SessionListResult:
        """The account's past sessions, from the API or the cache."""
        resolved = account_id or self._party_id
        if not resolved:
            raise ChatValidationError("No account id")
        try:
            sessions = await self._api.get_my_sessions(resolved)
        except ChatApiError as e:
            logger.warning(
                "Using cached chat history", account_id=resolved, error=e.message
            )
            cached = await self._cache.get_sessions_by_account(resolved)
            return SessionListResult(sessions=cached, source="cache", error=e.message)
        return SessionListResult(sessions=sessions, source="api")
