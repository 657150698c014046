"""Domain-specific configuration models."""

from livechat.core.settings.auth_config import AuthConfig
from livechat.core.settings.cache_config import CacheConfig
from livechat.core.settings.chat_api_config import ChatApiConfig
from livechat.core.settings.redis_config import RedisConfig
from livechat.core.settings.transport_config import TransportConfig

__all__ = [
    "AuthConfig",
    "CacheConfig",
    "ChatApiConfig",
    "RedisConfig",
    "TransportConfig",
]
