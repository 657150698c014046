"""Real-time transport configuration."""

from pydantic import BaseModel


class TransportConfig(BaseModel, frozen=True):
    """Socket, reconnection and polling settings."""

    ws_base_url: str | None
    secure_context: bool
    connect_timeout_seconds: float
    max_reconnect_attempts: int
    reconnect_base_delay_seconds: float
    reconnect_max_delay_seconds: float
    user_poll_interval_seconds: float
    agent_poll_interval_seconds: float
    sessions_poll_interval_seconds: float

    @property
    def socket_enabled(self) -> bool:
        """Whether a socket may be attempted at all.

        A secure page cannot open a plain ``ws://`` endpoint, so the socket
        strategy is disabled in that case.
        """
        if not self.ws_base_url:
            return False
        if self.secure_context and not self.ws_base_url.startswith("wss://"):
            return False
        return True

    def socket_url(self, session_id: str) -> str:
        """Session-scoped socket endpoint."""
        base = (self.ws_base_url or "").rstrip("/")
        return f"{base}/ws/chat/{session_id}"

    def reconnect_delay(self, attempt: int) -> float:
        """Backoff delay before reconnect ``attempt`` (1-based)."""
        delay = self.reconnect_base_delay_seconds * (2**attempt)
        return min(delay, self.reconnect_max_delay_seconds)
