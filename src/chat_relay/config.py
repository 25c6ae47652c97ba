"""Chat Relay Service Configuration using Pydantic Settings.

Provides centralized configuration for the relay including:
- Upstream provider settings (URL, bearer credential, timeouts, pool limits)
- Generation defaults (model, temperature, max tokens, top-p, system prompt)
- Model selection policy (vision/reasoning models, allowed families)
- Message store backend and database connection
- Service settings (auth enforcement, CORS, logging, bind address)

Configuration is loaded from environment variables and .env files using
Pydantic Settings. The @lru_cache decorator ensures a single settings
instance is shared across the application.

Last Grunted: 10/17/2026 09:00:00 AM UTC
"""
from functools import lru_cache
from typing import Literal, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SYSTEM_PROMPT: str = (
    "You are an AI assistant specialized in code generation and problem-solving. "
    "Provide clear, concise, and efficient solutions."
)

FALLBACK_ERROR_MESSAGE: str = (
    "I'm sorry, but I encountered an error while generating a response. "
    "Please try again."
)


class RelaySettings(BaseSettings):
    """Core service configuration for chat-relay.

    Pydantic Settings class that loads configuration from environment
    variables and .env files. Provides typed access to all service settings.

    Example:
        >>> settings = get_settings()
        >>> settings.default_model
        'DeepSeek-V3'
        >>> settings.get_allowed_models()
        ()

    Last Grunted: 10/17/2026 09:00:00 AM UTC
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Upstream provider
    upstream_url: str = Field(
        default="https://models.inference.ai.azure.com/chat/completions",
        description="OpenAI-compatible streaming chat completions endpoint",
    )
    upstream_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("upstream_api_key", "azure_api_key"),
        description="Bearer credential sent to the upstream provider",
    )
    upstream_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Seconds to wait for the upstream to start streaming (headers and first bytes)",
    )

    # Connection pool
    http_max_connections: int = Field(default=100, description="Maximum pooled connections")
    http_max_keepalive: int = Field(default=20, description="Maximum keep-alive connections")
    http_connect_timeout: float = Field(default=5.0, description="Connect timeout in seconds")
    http_write_timeout: float = Field(default=30.0, description="Write timeout in seconds")
    http_pool_timeout: float = Field(default=10.0, description="Pool acquire timeout in seconds")

    # Generation defaults
    default_model: str = Field(default="DeepSeek-V3", description="Model used when none is selected")
    default_temperature: float = Field(default=0.7, description="Default sampling temperature")
    default_max_tokens: int = Field(default=2048, description="Default completion token limit")
    default_top_p: float = Field(default=0.95, description="Default nucleus sampling value")
    default_system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT)
    fallback_error_message: str = Field(
        default=FALLBACK_ERROR_MESSAGE,
        description="Assistant text persisted and shown when generation fails",
    )

    # Model selection
    vision_model: str = Field(default="gpt-4o", description="Model used when attachments are present")
    reasoning_model: str = Field(default="DeepSeek-R1", description="Model used for deep-think prompts")
    reasoning_trigger: str = Field(default="deep_think", description="System prompt marker selecting the reasoning model")
    allowed_models: str = Field(default="", description="Comma-separated allowed model families (empty = all)")

    # Message store
    message_store_backend: Literal["memory", "sql"] = Field(default="memory", description="Message store backend type")
    database_url: str = Field(default="postgresql+asyncpg://localhost/chatdb", description="SQL store connection URL")
    sql_echo: bool = Field(default=False)
    db_pool_size: int = Field(default=5)
    db_max_overflow: int = Field(default=10)
    db_pool_timeout: int = Field(default=30)
    db_pool_recycle: int = Field(default=3600)

    # Service
    require_auth: bool = Field(default=False, description="Reject requests without caller identity headers")
    cors_origins: str = Field(default="http://localhost:3000", description="Comma-separated CORS origins")
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    debug: bool = Field(default=False)

    def get_allowed_models(self) -> tuple[str, ...]:
        """Parse the allowed model families into a tuple."""
        return _parse_csv(self.allowed_models)

    def get_cors_origins(self) -> list[str]:
        """Parse the CORS origins into a list."""
        return list(_parse_csv(self.cors_origins))


def _parse_csv(value: Optional[str]) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


@lru_cache()
def get_settings() -> RelaySettings:
    """Get cached singleton settings instance.

    Uses @lru_cache to ensure a single RelaySettings instance is created
    and reused across the application lifetime. The settings are loaded
    from environment variables and .env files on first call.

    Returns:
        RelaySettings: Cached configuration instance.

    Note:
        To reload settings (e.g., after env changes), call get_settings.cache_clear()
        before calling get_settings() again.

    Last Grunted: 10/17/2026 09:00:00 AM UTC
    """
    return RelaySettings()
