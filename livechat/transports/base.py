"""Common contract for real-time session transports."""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from livechat.schemas.chat_schema import ChatEvent, TransportMode

EventHandler = Callable[[ChatEvent], Awaitable[None]]


class Transport(ABC):
    """Delivers inbound events for one session and accepts outbound sends."""

    mode: TransportMode

    def __init__(self, session_id: str, on_event: EventHandler) -> None:
        self.session_id = session_id
        self._on_event = on_event

    @abstractmethod
    async def start(self) -> None:
        """Begin delivering events. Raises TransportError if it cannot."""

    @abstractmethod
    async def send(self, payload: dict[str, Any]) -> None:
        """Send a frame to the session. Raises TransportError if unsupported."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop delivering events. Safe to call more than once."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether outbound sends can go through this transport."""
