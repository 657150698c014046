"""Application configuration using Pydantic Settings V2."""

from functools import cached_property

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from livechat.core.settings import (
    AuthConfig,
    CacheConfig,
    ChatApiConfig,
    RedisConfig,
    TransportConfig,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Flat fields are loaded directly from environment variables.
    Domain properties provide grouped access (e.g. settings.transport.ws_base_url).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Chat API
    chat_api_base_url: str = Field(
        default="http://localhost:8080",
        description="Base URL of the remote chat backend",
    )
    http_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Timeout for REST calls",
    )

    # Transport
    chat_ws_base_url: str | None = Field(
        default="ws://localhost:8080",
        description="Base URL for session sockets (empty disables sockets)",
    )
    secure_context: bool = Field(
        default=False,
        description="Running inside a secure (https) page context",
    )
    socket_connect_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Socket connect attempt timeout",
    )
    max_reconnect_attempts: int = Field(
        default=5,
        ge=0,
        le=20,
        description="Maximum socket reconnect attempts",
    )
    reconnect_base_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Base delay for exponential reconnect backoff",
    )
    reconnect_max_delay_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Ceiling for reconnect backoff delay",
    )
    user_poll_interval_seconds: float = Field(
        default=3.0,
        gt=0,
        description="Message poll interval for the user widget",
    )
    agent_poll_interval_seconds: float = Field(
        default=3.0,
        gt=0,
        description="Message poll interval for the agent console",
    )
    sessions_poll_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Session list poll interval for the agent console",
    )

    # Cache
    cache_retention_minutes: int = Field(
        default=60,
        ge=1,
        description="Retention window for closed sessions",
    )
    cache_cleanup_interval_minutes: int = Field(
        default=10,
        ge=1,
        description="Minimum interval between cache garbage collections",
    )
    cache_key_prefix: str = Field(
        default="livechat:",
        description="Redis key prefix for the session cache",
    )

    # Redis
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )
    redis_socket_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for Redis commands",
    )

    # Agent auth
    keycloak_url: str | None = Field(
        default=None,
        description="Keycloak base URL",
    )
    keycloak_realm: str = Field(
        default="Team33Casino",
        description="Keycloak realm",
    )
    keycloak_client_id: str = Field(
        default="Team33admin",
        description="Keycloak client id",
    )
    keycloak_client_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Keycloak client secret",
    )
    agent_api_token: SecretStr | None = Field(
        default=None,
        description="Static bearer token for agent calls",
    )
    token_refresh_margin_seconds: int = Field(
        default=30,
        ge=0,
        description="Refresh the cached token this long before it expires",
    )

    # --- Domain properties ---

    @cached_property
    def chat_api(self) -> ChatApiConfig:
        """Remote chat backend configuration."""
        return ChatApiConfig(
            base_url=self.chat_api_base_url,
            timeout_seconds=self.http_timeout_seconds,
        )

    @cached_property
    def transport(self) -> TransportConfig:
        """Socket and polling configuration."""
        return TransportConfig(
            ws_base_url=self.chat_ws_base_url or None,
            secure_context=self.secure_context,
            connect_timeout_seconds=self.socket_connect_timeout_seconds,
            max_reconnect_attempts=self.max_reconnect_attempts,
            reconnect_base_delay_seconds=self.reconnect_base_delay_seconds,
            reconnect_max_delay_seconds=self.reconnect_max_delay_seconds,
            user_poll_interval_seconds=self.user_poll_interval_seconds,
            agent_poll_interval_seconds=self.agent_poll_interval_seconds,
            sessions_poll_interval_seconds=self.sessions_poll_interval_seconds,
        )

    @cached_property
    def cache(self) -> CacheConfig:
        """Local session cache configuration."""
        return CacheConfig(
            retention_minutes=self.cache_retention_minutes,
            cleanup_interval_minutes=self.cache_cleanup_interval_minutes,
            key_prefix=self.cache_key_prefix,
        )

    @cached_property
    def redis(self) -> RedisConfig:
        """Redis connection configuration."""
        return RedisConfig(
            url=self.redis_url,
            socket_timeout_seconds=self.redis_socket_timeout_seconds,
        )

    @cached_property
    def auth(self) -> AuthConfig:
        """Agent bearer-token configuration."""
        return AuthConfig(
            keycloak_url=self.keycloak_url or None,
            realm=self.keycloak_realm,
            client_id=self.keycloak_client_id,
            client_secret=self.keycloak_client_secret,
            static_token=self.agent_api_token,
            refresh_margin_seconds=self.token_refresh_margin_seconds,
        )


# Global settings instance
settings = Settings()
