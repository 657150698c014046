"""Chat session, message and event schemas.

Wire and cache payloads use camelCase keys; attributes are snake_case.
"""

import uuid
from datetime import UTC, datetime
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

SessionStatus = Literal["WAITING", "ACTIVE", "CLOSED"]
SenderType = Literal["USER", "AGENT", "SYSTEM"]
ChatRole = Literal["USER", "AGENT"]
MessageType = Literal["TEXT", "IMAGE", "FILE", "SYSTEM_NOTIFICATION"]
TransportMode = Literal["socket", "polling"]
ClientState = Literal["UNINITIALIZED", "SESSION_STARTED", "CONNECTED", "CLOSED"]
EventType = Literal[
    "connected",
    "message",
    "typing",
    "session_closed",
    "agent_join",
    "disconnected",
    "connection_failed",
]

COUNTERPART: dict[ChatRole, ChatRole] = {"USER": "AGENT", "AGENT": "USER"}
OPEN_STATUSES: frozenset[str] = frozenset({"WAITING", "ACTIVE"})
TEMP_MESSAGE_PREFIX = "local-"


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="ignore",
    )


class ChatMessage(_WireModel):
    """Single message within a chat session."""

    message_id: str = Field(
        default_factory=lambda: uuid.uuid4().hex,
        validation_alias=AliasChoices("messageId", "id", "message_id"),
    )
    session_id: str | None = None
    sender_type: SenderType = "USER"
    sender_id: str | None = None
    content: str = ""
    message_type: MessageType = "TEXT"
    created_at: datetime | None = None
    read: bool = False

    @field_validator("created_at")
    @classmethod
    def _normalize_created_at(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @property
    def is_temporary(self) -> bool:
        """Whether this is an optimistic message awaiting backend confirmation."""
        return self.message_id.startswith(TEMP_MESSAGE_PREFIX)


class ChatSession(_WireModel):
    """Support conversation between an end user and an agent."""

    session_id: str
    account_id: str | None = None
    agent_id: str | None = None
    status: SessionStatus = "WAITING"
    subject: str | None = None
    display_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("displayName", "userName", "display_name"),
    )
    created_at: datetime | None = None
    updated_at: datetime | None = None
    closed_at: datetime | None = None
    last_message: str | None = None
    last_message_at: datetime | None = None
    unread_count: int = Field(default=0, ge=0)

    @field_validator("created_at", "updated_at", "closed_at", "last_message_at")
    @classmethod
    def _normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @property
    def user_name(self) -> str | None:
        """Label shown in agent lists: cached display name, else the account id."""
        return self.display_name or self.account_id

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def sort_key(self) -> datetime:
        return self.updated_at or self.created_at or datetime.min.replace(tzinfo=UTC)


class AgentInfo(BaseModel):
    """Agent that joined a session."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = "Support Agent"


class ChatEvent(BaseModel):
    """Transport-independent event delivered to subscribers."""

    model_config = ConfigDict(frozen=True)

    type: EventType
    session_id: str | None = None
    mode: TransportMode | None = None
    message: ChatMessage | None = None
    is_typing: bool | None = None
    sender_id: str | None = None
    agent: AgentInfo | None = None
