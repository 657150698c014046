"""Persistent WebSocket transport for one chat session."""

import asyncio
import json
from collections.abc import Callable
from typing import Any

import structlog
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.protocol import State

from livechat.core.exceptions import (
    SocketUnavailableError,
    TransportConnectError,
    TransportError,
)
from livechat.core.settings import TransportConfig
from livechat.transports.base import EventHandler, Transport
from livechat.transports.frames import parse_frame

logger = structlog.get_logger()

ClosedHandler = Callable[["SocketTransport", Exception | None], None]


class SocketTransport(Transport):
    """One socket per session at ``/ws/chat/{session_id}``.

    The transport never reconnects by itself: when the connection ends for
    any reason other than ``stop()``, ``on_closed`` is called and the owner
    decides what happens next.
    """

    mode = "socket"

    def __init__(
        self,
        session_id: str,
        config: TransportConfig,
        on_event: EventHandler,
        on_closed: ClosedHandler,
    ) -> None:
        super().__init__(session_id, on_event)
        self._config = config
        self._on_closed = on_closed
        self._ws: ClientConnection | None = None
        self._reader: asyncio.Task[None] | None = None
        self._stopping = False

    @property
    def url(self) -> str:
        return self._config.socket_url(self.session_id)

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN

    async def start(self) -> None:
        """Open the socket within the connect timeout and start reading."""
        if not self._config.socket_enabled:
            raise SocketUnavailableError()

        logger.info("Connecting socket", session_id=self.session_id, url=self.url)
        try:
            ws = await connect(
                self.url, open_timeout=self._config.connect_timeout_seconds
            )
        except TimeoutError as e:
            raise TransportConnectError("Socket connection timeout") from e
        except (OSError, WebSocketException) as e:
            raise TransportConnectError(f"Socket connection failed: {e}") from e

        self._ws = ws
        self._stopping = False
        self._reader = asyncio.create_task(self._read_loop(ws))
        logger.info("Socket connected", session_id=self.session_id)

    async def _read_loop(self, ws: ClientConnection) -> None:
        error: Exception | None = None
        try:
            async for raw in ws:
                await self._dispatch(raw)
        except ConnectionClosed as e:
            error = e

        if not self._stopping:
            logger.info("Socket closed", session_id=self.session_id, error=str(error))
            self._on_closed(self, error)

    async def _dispatch(self, raw: str | bytes) -> None:
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Failed to parse socket frame", session_id=self.session_id)
            return
        event = parse_frame(data, self.session_id)
        if event is None:
            logger.debug("Ignoring unrecognized frame", session_id=self.session_id)
            return
        try:
            await self._on_event(event)
        except Exception:
            logger.exception(
                "Socket event handler failed",
                session_id=self.session_id,
                event_type=event.type,
            )

    async def send(self, payload: dict[str, Any]) -> None:
        if not self.is_open or self._ws is None:
            raise TransportError("Socket is not open")
        try:
            await self._ws.send(json.dumps(payload))
        except ConnectionClosed as e:
            raise TransportError(f"Socket send failed: {e}") from e

    async def stop(self) -> None:
        self._stopping = True
        reader, self._reader = self._reader, None
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
