"""
Centralized configuration management for the EHR webhook service.

This module provides a Pydantic Settings-based configuration system that:
- Validates environment variables at startup
- Provides type coercion (strings to ints, bools, etc.)
- Groups related settings for better organization
- Supports .env file loading

Usage:
    from ehr_webhooks.config import get_settings

    settings = get_settings()
    timeout = settings.webhooks.webhook_timeout_seconds
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# Webhook Delivery Settings
# =============================================================================


class WebhookSettings(BaseSettings):
    """Configuration for outbound webhook delivery."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Delivery
    webhook_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Timeout in seconds for a single delivery attempt",
    )
    webhook_max_response_body_bytes: int = Field(
        default=1024,
        ge=0,
        description="Maximum number of response body bytes kept on a delivery record",
    )
    webhook_user_agent: str = Field(
        default="EHR-Webhooks/1.0",
        description="User-Agent header sent with deliveries",
    )

    # Endpoint URL validation
    webhook_block_private_urls: bool = Field(
        default=True,
        description="Reject endpoint URLs that point at private or internal addresses",
    )
    webhook_resolve_dns: bool = Field(
        default=True,
        description="Resolve endpoint hostnames when checking for private addresses",
    )

    # Retry with backoff
    webhook_retry_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum redelivery attempts made by retry_with_backoff",
    )
    webhook_retry_base_delay: float = Field(
        default=1.0,
        ge=0,
        description="Base delay in seconds for exponential backoff",
    )
    webhook_retry_max_delay: float = Field(
        default=300.0,
        ge=0,
        description="Upper bound in seconds for a single backoff delay",
    )

    # Pagination
    webhook_fanout_page_size: int = Field(
        default=500,
        ge=1,
        description="Page size used when loading a tenant's endpoints for fan-out",
    )
    webhook_default_page_size: int = Field(
        default=20,
        ge=1,
        description="Default page size for list endpoints",
    )
    webhook_max_page_size: int = Field(
        default=100,
        ge=1,
        description="Maximum page size accepted by list endpoints",
    )

    @model_validator(mode="after")
    def _check_page_sizes(self) -> "WebhookSettings":
        if self.webhook_default_page_size > self.webhook_max_page_size:
            raise ValueError(
                "webhook_default_page_size must not exceed webhook_max_page_size"
            )
        return self


# =============================================================================
# Server Settings
# =============================================================================


class ServerSettings(BaseSettings):
    """Configuration for the HTTP server."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    service_name: str = Field(
        default="ehr-webhooks",
        description="Service name used in logs and health checks",
    )
    host: str = Field(
        default="0.0.0.0",
        description="Bind address for the API server",
    )
    port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Port for the API server",
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


# =============================================================================
# Logging Settings
# =============================================================================


class LoggingSettings(BaseSettings):
    """Configuration for logging."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format_json: bool = Field(
        default=False,
        description="Force JSON log format in development",
    )
    request_logging_enabled: bool = Field(
        default=True,
        description="Enable request logging middleware",
    )


# =============================================================================
# Redis Settings (Optional)
# =============================================================================


class RedisSettings(BaseSettings):
    """Configuration for Redis (optional endpoint and delivery storage)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    redis_url: Optional[str] = Field(
        default=None,
        description="Redis connection URL",
    )
    redis_key_prefix: str = Field(
        default="webhook",
        description="Prefix for all webhook keys stored in Redis",
    )

    @property
    def is_configured(self) -> bool:
        """Check if Redis is configured."""
        return bool(self.redis_url)


# =============================================================================
# Main Settings Class
# =============================================================================


class Settings(BaseSettings):
    """
    Main settings class that aggregates all configuration groups.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    webhooks: WebhookSettings = Field(default_factory=WebhookSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)

    @property
    def is_redis_configured(self) -> bool:
        """Check if Redis storage is configured."""
        return self.redis.is_configured

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.server.is_production

    def get_config_summary(self) -> dict:
        """
        Get a summary of configuration status for logging.

        This method returns a dictionary with configuration status
        WITHOUT exposing any secrets.
        """
        return {
            "environment": self.server.environment,
            "service": self.server.service_name,
            "store_backend": "redis" if self.is_redis_configured else "memory",
            "delivery_timeout_seconds": self.webhooks.webhook_timeout_seconds,
            "block_private_urls": self.webhooks.webhook_block_private_urls,
            "log_level": self.logging.log_level,
        }


# =============================================================================
# Settings Singleton
# =============================================================================


@lru_cache()
def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Uses lru_cache to ensure settings are only loaded once.
    Call reload_settings() after changing the environment.

    Returns:
        Validated Settings instance
    """
    return Settings()


def reload_settings() -> Settings:
    """
    Reload settings from environment.

    This clears the cache and returns fresh settings.
    Useful for testing or after environment changes.
    """
    get_settings.cache_clear()
    return get_settings()
