"""Redis connection configuration for the session cache."""

from pydantic import BaseModel


class RedisConfig(BaseModel, frozen=True):
    """Redis connection settings."""

    url: str
    socket_timeout_seconds: float
