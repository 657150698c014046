"""Tests for UserChatClient over the polling transport."""

import pytest

from livechat.core.exceptions import (
    ChatApiError,
    ChatValidationError,
    InvalidRatingError,
    MessageDeliveryError,
    NoActiveSessionError,
    SessionClosedError,
    SessionNotFoundError,
)
from livechat.repositories.session_cache import SessionCache
from livechat.schemas.chat_schema import ChatEvent, ChatSession
from livechat.services.chat_client import UserChatClient
from tests.fakes import FakeChatBackend, eventually


@pytest.fixture
def events(user_client: UserChatClient) -> list[ChatEvent]:
    received: list[ChatEvent] = []
    user_client.subscribe(received.append)
    return received


def _types(events: list[ChatEvent]) -> list[str]:
    return [e.type for e in events]


class TestConnect:
    """Session start and transport selection."""

    async def test_connect_falls_back_to_polling(
        self,
        user_client: UserChatClient,
        user_cache: SessionCache,
        events: list[ChatEvent],
    ) -> None:
        connection = await user_client.connect("acct-1", display_name="Jane")

        assert connection.mode == "polling"
        assert user_client.mode == "polling"
        assert user_client.state == "CONNECTED"
        assert events[0].type == "connected"
        assert events[0].mode == "polling"
        cached = await user_cache.get_session(connection.session.session_id)
        assert cached is not None
        assert cached.display_name == "Jane"
        assert cached.status == "WAITING"

    async def test_start_session_failure_raises(
        self, user_client: UserChatClient, backend: FakeChatBackend
    ) -> None:
        backend.offline = True
        with pytest.raises(ChatApiError):
            await user_client.start_session("acct-1")
        assert user_client.state == "UNINITIALIZED"
        assert user_client.session_id is None

    async def test_start_session_without_connecting(
        self, user_client: UserChatClient
    ) -> None:
        session = await user_client.start_session("acct-1", "Withdrawal")
        assert user_client.state == "SESSION_STARTED"
        assert user_client.mode is None
        assert session.subject == "Withdrawal"

    async def test_resume_closed_session(
        self, user_client: UserChatClient, backend: FakeChatBackend
    ) -> None:
        backend.add_session("s9", status="CLOSED")
        with pytest.raises(SessionClosedError):
            await user_client.resume_session("s9", "acct-1")

    async def test_resume_unknown_session(self, user_client: UserChatClient) -> None:
        with pytest.raises(SessionNotFoundError):
            await user_client.resume_session("nope", "acct-1")

    async def test_resume_from_cache_when_offline(
        self,
        user_client: UserChatClient,
        user_cache: SessionCache,
        backend: FakeChatBackend,
    ) -> None:
        await user_cache.save_session(ChatSession(session_id="s9", status="ACTIVE"))
        backend.offline = True

        connection = await user_client.resume_session("s9", "acct-1")

        assert connection.session.status == "ACTIVE"
        assert user_client.session_id == "s9"

    async def test_resume_caches_session(
        self,
        user_client: UserChatClient,
        user_cache: SessionCache,
    ) -> None:
        connection = await user_client.connect("acct-1")
        session_id = connection.session.session_id
        await user_client.disconnect()
        await user_cache.delete_session(session_id)

        await user_client.resume_session(session_id, "acct-1")
        await user_client.send_message("hello")
        await user_cache.cleanup_old_data()

        cached = await user_cache.get_session(session_id)
        assert cached is not None
        assert cached.last_message == "hello"
        messages = await user_cache.get_messages(session_id)
        assert [m.content for m in messages] == ["hello"]

    async def test_disconnect_is_idempotent(self, user_client: UserChatClient) -> None:
        await user_client.connect("acct-1")
        await user_client.disconnect()
        await user_client.disconnect()
        assert user_client.mode is None
        assert user_client.session_id is None


class TestSendMessage:
    """Optimistic send and delivery."""

    async def test_send_over_rest_when_polling(
        self,
        user_client: UserChatClient,
        user_cache: SessionCache,
        backend: FakeChatBackend,
    ) -> None:
        connection = await user_client.connect("acct-1")
        session_id = connection.session.session_id

        result = await user_client.send_message("I can't withdraw")

        assert result.via == "rest"
        assert not result.message.is_temporary
        assert backend.paths("POST").count(
            f"/api/chat/sessions/{session_id}/messages"
        ) == 1
        cached = await user_cache.get_messages(session_id)
        assert [m.message_id for m in cached] == [result.message.message_id]
        assert cached[0].sender_type == "USER"

    async def test_own_message_not_counted_unread(
        self, user_client: UserChatClient, user_cache: SessionCache
    ) -> None:
        connection = await user_client.connect("acct-1")
        await user_client.send_message("hello")
        session = await user_cache.get_session(connection.session.session_id)
        assert session is not None
        assert session.unread_count == 0
        assert session.last_message == "hello"

    async def test_blank_message_rejected(
        self, user_client: UserChatClient, backend: FakeChatBackend
    ) -> None:
        await user_client.connect("acct-1")
        with pytest.raises(ChatValidationError):
            await user_client.send_message("   ")
        assert backend.paths("POST") == ["/api/chat/sessions"]

    async def test_send_without_session(self, user_client: UserChatClient) -> None:
        with pytest.raises(NoActiveSessionError):
            await user_client.send_message("hello")

    async def test_delivery_failure_keeps_optimistic_message(
        self,
        user_client: UserChatClient,
        user_cache: SessionCache,
        backend: FakeChatBackend,
    ) -> None:
        connection = await user_client.connect("acct-1")
        backend.offline = True

        with pytest.raises(MessageDeliveryError):
            await user_client.send_message("anyone there?")

        cached = await user_cache.get_messages(connection.session.session_id)
        assert len(cached) == 1
        assert cached[0].is_temporary
        assert cached[0].content == "anyone there?"

    async def test_typing_indicator_noop_when_polling(
        self, user_client: UserChatClient
    ) -> None:
        await user_client.connect("acct-1")
        assert await user_client.send_typing_indicator(True) is False


class TestInboundEvents:
    """Events delivered by the poller."""

    async def test_agent_message_cached_and_emitted(
        self,
        user_client: UserChatClient,
        user_cache: SessionCache,
        backend: FakeChatBackend,
        events: list[ChatEvent],
    ) -> None:
        connection = await user_client.connect("acct-1")
        session_id = connection.session.session_id
        backend.add_message(session_id, "USER", "echo of mine")
        backend.add_message(session_id, "AGENT", "Hello, how can I help?")

        await eventually(lambda: "message" in _types(events))

        messages = [e.message for e in events if e.type == "message"]
        assert [m.content for m in messages if m] == ["Hello, how can I help?"]
        session = await user_cache.get_session(session_id)
        assert session is not None
        assert session.unread_count == 1

    async def test_agent_join_recorded(
        self,
        user_client: UserChatClient,
        user_cache: SessionCache,
        backend: FakeChatBackend,
        events: list[ChatEvent],
    ) -> None:
        connection = await user_client.connect("acct-1")
        session_id = connection.session.session_id
        backend.sessions[session_id].update(status="ACTIVE", agentId="agent-3")

        await eventually(lambda: "agent_join" in _types(events))

        session = await user_cache.get_session(session_id)
        assert session is not None
        assert session.agent_id == "agent-3"

    async def test_remote_close_detected(
        self,
        user_client: UserChatClient,
        user_cache: SessionCache,
        backend: FakeChatBackend,
        events: list[ChatEvent],
    ) -> None:
        connection = await user_client.connect("acct-1")
        session_id = connection.session.session_id
        backend.sessions[session_id]["status"] = "CLOSED"

        await eventually(lambda: "session_closed" in _types(events))

        session = await user_cache.get_session(session_id)
        assert session is not None
        assert session.status == "CLOSED"
        assert user_client.state == "CLOSED"
        assert user_client.mode is None


class TestCloseSession:
    """Local-first close."""

    async def test_close_is_idempotent(
        self, user_client: UserChatClient, backend: FakeChatBackend
    ) -> None:
        connection = await user_client.connect("acct-1")
        session_id = connection.session.session_id

        first = await user_client.close_session()
        second = await user_client.close_session()

        assert first.synced is True
        assert second.synced is True
        assert first.session is not None and second.session is not None
        assert second.session.closed_at == first.session.closed_at
        assert user_client.state == "CLOSED"
        assert user_client.mode is None
        assert backend.paths("POST").count(
            f"/api/chat/sessions/{session_id}/close"
        ) == 1

    async def test_remote_failure_still_closes_locally(
        self,
        user_client: UserChatClient,
        user_cache: SessionCache,
        backend: FakeChatBackend,
    ) -> None:
        connection = await user_client.connect("acct-1")
        session_id = connection.session.session_id
        backend.fail_paths.add("/close")

        result = await user_client.close_session()

        assert result.synced is False
        session = await user_cache.get_session(session_id)
        assert session is not None
        assert session.status == "CLOSED"

    async def test_repeat_close_retries_failed_remote_close(
        self, user_client: UserChatClient, backend: FakeChatBackend
    ) -> None:
        connection = await user_client.connect("acct-1")
        session_id = connection.session.session_id
        backend.fail_paths.add("/close")
        first = await user_client.close_session()
        backend.fail_paths.clear()

        second = await user_client.close_session()

        assert first.synced is False
        assert second.synced is True
        assert second.session_id == session_id
        assert backend.sessions[session_id]["status"] == "CLOSED"

    async def test_close_without_session(self, user_client: UserChatClient) -> None:
        with pytest.raises(NoActiveSessionError):
            await user_client.close_session()


class TestRating:
    """Rating validation happens before any request."""

    @pytest.mark.parametrize("rating", [0, 6, -1])
    async def test_out_of_range_rating(
        self, user_client: UserChatClient, backend: FakeChatBackend, rating: int
    ) -> None:
        with pytest.raises(InvalidRatingError):
            await user_client.rate_session(rating, session_id="s1")
        assert backend.requests == []

    async def test_non_integer_rating(
        self, user_client: UserChatClient, backend: FakeChatBackend
    ) -> None:
        with pytest.raises(InvalidRatingError):
            await user_client.rate_session(
                4.5, session_id="s1"  # type: ignore[arg-type]
            )
        assert backend.requests == []

    async def test_valid_rating(
        self, user_client: UserChatClient, backend: FakeChatBackend
    ) -> None:
        backend.add_session("s1", status="CLOSED")
        result = await user_client.rate_session(5, "Quick help", session_id="s1")
        assert result["rating"] == 5
        assert backend.requests[0].url.params["feedback"] == "Quick help"

    async def test_rate_after_close_without_id(
        self, user_client: UserChatClient, backend: FakeChatBackend
    ) -> None:
        connection = await user_client.connect("acct-1")
        await user_client.close_session()

        result = await user_client.rate_session(5)

        assert result["sessionId"] == connection.session.session_id
        assert result["rating"] == 5


class TestReadsWithFallback:
    """Reads served from the cache when the API is down."""

    async def test_mark_as_read_defaults_to_agent_messages(
        self,
        user_client: UserChatClient,
        user_cache: SessionCache,
        backend: FakeChatBackend,
    ) -> None:
        backend.add_session("s1")
        await user_cache.save_session(ChatSession(session_id="s1", unread_count=3))

        await user_client.mark_as_read(session_id="s1")

        assert backend.requests[-1].url.params["senderType"] == "AGENT"
        session = await user_cache.get_session("s1")
        assert session is not None
        assert session.unread_count == 0

    async def test_mark_as_read_failure_keeps_local_reset(
        self,
        user_client: UserChatClient,
        user_cache: SessionCache,
        backend: FakeChatBackend,
    ) -> None:
        await user_cache.save_session(ChatSession(session_id="s1", unread_count=2))
        backend.offline = True

        with pytest.raises(ChatApiError):
            await user_client.mark_as_read(session_id="s1")

        session = await user_cache.get_session("s1")
        assert session is not None
        assert session.unread_count == 0

    async def test_chat_history_from_api(
        self, user_client: UserChatClient, backend: FakeChatBackend
    ) -> None:
        backend.wrap_lists = True
        backend.add_session("s1", accountId="acct-1")
        backend.add_session("s2", accountId="acct-2")

        result = await user_client.get_chat_history("acct-1")

        assert result.source == "api"
        assert [s.session_id for s in result.sessions] == ["s1"]

    async def test_chat_history_from_cache(
        self,
        user_client: UserChatClient,
        user_cache: SessionCache,
        backend: FakeChatBackend,
    ) -> None:
        await user_cache.save_session(ChatSession(session_id="s1", account_id="a1"))
        await user_cache.save_session(ChatSession(session_id="s2", account_id="a2"))
        backend.offline = True

        result = await user_client.get_chat_history("a1")

        assert result.is_stale
        assert [s.session_id for s in result.sessions] == ["s1"]

    async def test_messages_from_cache(
        self,
        user_client: UserChatClient,
        user_cache: SessionCache,
        backend: FakeChatBackend,
    ) -> None:
        await user_client.connect("acct-1")
        await user_client.send_message("hello")
        backend.offline = True

        result = await user_client.get_messages()

        assert result.source == "cache"
        assert [m.content for m in result.messages] == ["hello"]

    async def test_session_from_cache(
        self,
        user_client: UserChatClient,
        user_cache: SessionCache,
        backend: FakeChatBackend,
    ) -> None:
        await user_cache.save_session(ChatSession(session_id="s1", status="ACTIVE"))
        backend.offline = True

        session = await user_client.get_session("s1")

        assert session.status == "ACTIVE"

    async def test_session_unknown_everywhere(
        self, user_client: UserChatClient, backend: FakeChatBackend
    ) -> None:
        backend.offline = True
        with pytest.raises(ChatApiError):
            await user_client.get_session("s1")
