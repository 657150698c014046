"""Remote chat API configuration."""

from pydantic import BaseModel


class ChatApiConfig(BaseModel, frozen=True):
    """Remote chat backend connection settings."""

    base_url: str
    timeout_seconds: float
