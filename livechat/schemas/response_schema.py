"""Result objects returned by the chat clients."""

from typing import Literal

from pydantic import BaseModel, ConfigDict

from livechat.schemas.chat_schema import ChatMessage, ChatSession, TransportMode

DataSource = Literal["api", "cache"]


class SessionListResult(BaseModel):
    """Session list with the source it was read from."""

    model_config = ConfigDict(frozen=True)

    sessions: list[ChatSession]
    source: DataSource
    error: str | None = None

    @property
    def is_stale(self) -> bool:
        """True when the remote API was unavailable and cached data was used."""
        return self.source == "cache"


class MessageListResult(BaseModel):
    """Message list with the source it was read from."""

    model_config = ConfigDict(frozen=True)

    messages: list[ChatMessage]
    source: DataSource


class SessionConnection(BaseModel):
    """Session attached to a live transport."""

    model_config = ConfigDict(frozen=True)

    session: ChatSession
    mode: TransportMode


class SendResult(BaseModel):
    """Outcome of a delivered message."""

    model_config = ConfigDict(frozen=True)

    message: ChatMessage
    via: Literal["socket", "rest"]


class CloseResult(BaseModel):
    """Outcome of closing a session.

    ``synced`` is False when the session was closed locally but the remote
    close call failed.
    """

    model_config = ConfigDict(frozen=True)

    session_id: str
    synced: bool
    session: ChatSession | None = None
