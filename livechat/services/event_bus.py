"""Publish/subscribe fan-out of chat events to UI listeners."""

from collections.abc import Callable

import structlog

from livechat.schemas.chat_schema import ChatEvent

logger = structlog.get_logger()

Listener = Callable[[ChatEvent], None]


class EventBus:
    """Set of listener callbacks; subscribing returns the unsubscribe function."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        if listener not in self._listeners:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, event: ChatEvent) -> None:
        """Deliver ``event`` to every listener.

        A failing listener is logged and does not stop delivery to the rest.
        """
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Chat event listener failed", event_type=event.type)

    def __len__(self) -> int:
        return len(self._listeners)
