"""Local session cache configuration."""

from datetime import timedelta

from pydantic import BaseModel


class CacheConfig(BaseModel, frozen=True):
    """Retention and key layout for the local session cache."""

    retention_minutes: int
    cleanup_interval_minutes: int
    key_prefix: str

    @property
    def retention(self) -> timedelta:
        """How long closed sessions stay queryable."""
        return timedelta(minutes=self.retention_minutes)

    @property
    def cleanup_interval(self) -> timedelta:
        """Minimum time between garbage collection runs."""
        return timedelta(minutes=self.cleanup_interval_minutes)

    @property
    def sessions_key(self) -> str:
        return f"{self.key_prefix}sessions"

    @property
    def messages_key(self) -> str:
        return f"{self.key_prefix}messages"

    @property
    def last_cleanup_key(self) -> str:
        return f"{self.key_prefix}last_cleanup"

    def unread_key(self, owner: str) -> str:
        """Per-owner unread counters, keyed by session id."""
        return f"{self.key_prefix}unread:{owner.lower()}"

    def counted_key(self, owner: str) -> str:
        """Per-owner ids of messages already counted as unread, keyed by session id."""
        return f"{self.key_prefix}counted:{owner.lower()}"
