#!/usr/bin/env python3
"""
Centralized Configuration Module using Pydantic Settings

This module provides type-safe, environment-based configuration for the
whole service. All configuration is centralized here to ensure consistency
across modules.

Architectural Decision: Pydantic Settings for type safety and validation
- Environment variable loading with .env support
- Type validation at startup (fail fast on misconfiguration)
- Easy testing with override mechanisms
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RedisSettings(BaseSettings):
    """
    Redis configuration for the durable store.

    STAGE-0.1: Redis connection configuration

    When REDIS_ENABLED is False the service runs on the in-memory store,
    which is only correct for a single instance.
    """

    REDIS_ENABLED: bool = Field(default=False, description="Use Redis as the durable store")
    REDIS_HOST: str = Field(default="localhost", description="Redis server host")
    REDIS_PORT: int = Field(default=6379, description="Redis server port")
    REDIS_DB: int = Field(default=0, description="Redis database number")
    REDIS_PASSWORD: str | None = Field(default=None, description="Redis password (if required)")
    REDIS_MAX_CONNECTIONS: int = Field(default=50, description="Maximum pooled connections")
    REDIS_SOCKET_TIMEOUT: int = Field(default=5, description="Socket timeout in seconds")
    REDIS_SOCKET_CONNECT_TIMEOUT: int = Field(default=5, description="Connection timeout in seconds")
    REDIS_HEALTH_CHECK_INTERVAL: int = Field(default=30, description="Health check interval in seconds")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class CircuitBreakerSettings(BaseSettings):
    """
    Default circuit breaker thresholds.

    STAGE-CB: Circuit breaker thresholds

    Dependencies with a preset in constants.BREAKER_PRESETS ignore these.
    """

    CB_FAILURE_THRESHOLD: int = Field(default=5, ge=1, description="Failures before opening circuit")
    CB_SUCCESS_THRESHOLD: int = Field(default=2, ge=1, description="Half-open successes to close circuit")
    CB_OPEN_DURATION: float = Field(default=30.0, gt=0, description="Seconds before attempting recovery")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class RetrySettings(BaseSettings):
    """Default retry policy for outbound calls."""

    RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1, description="Attempts including the first")
    RETRY_BASE_DELAY: float = Field(default=0.5, ge=0, description="Base backoff delay (seconds)")
    RETRY_MAX_DELAY: float = Field(default=10.0, ge=0, description="Backoff cap (seconds)")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class RateLimitSettings(BaseSettings):
    """
    Rate limiting configuration.

    STAGE-3: Rate limiting thresholds

    Fixed window per client key with a hard cap on tracked keys.
    """

    RATE_LIMIT_REQUESTS: int = Field(default=100, ge=1, description="Requests per window")
    RATE_LIMIT_WINDOW_SECONDS: float = Field(default=60.0, gt=0, description="Window length")
    RATE_LIMIT_MAX_ENTRIES: int = Field(default=10000, ge=1, description="Maximum tracked keys")
    RATE_LIMIT_SWEEP_INTERVAL: float = Field(default=60.0, gt=0, description="Background sweep interval")
    SENDER_RATE_LIMIT_REQUESTS: int = Field(default=20, ge=1, description="Messages per sender per window")
    SENDER_RATE_LIMIT_WINDOW_SECONDS: float = Field(default=60.0, gt=0, description="Per-sender window length")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class IdempotencySettings(BaseSettings):
    """
    Duplicate delivery detection.

    Event types listed in IDEMPOTENCY_FAIL_CLOSED_EVENTS are dropped when the
    durable store is unreachable; every other type is processed.
    """

    IDEMPOTENCY_MEMORY_MAX_KEYS: int = Field(default=10000, ge=1, description="Recent keys kept in memory")
    IDEMPOTENCY_RETENTION_SECONDS: int = Field(default=604800, ge=1, description="Store record TTL")
    IDEMPOTENCY_FAIL_CLOSED_EVENTS: list[str] = Field(
        default=["survey_response"],
        description="Event types treated as duplicates when the store fails",
    )
    SURVEY_BUTTON_PREFIXES: list[str] = Field(
        default=["btn_rating_"],
        description="Button id prefixes that classify a reply as a survey response",
    )

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class SessionSettings(BaseSettings):
    """Optimistic concurrency retry for session state."""

    SESSION_RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1, description="Read-modify-write attempts")
    SESSION_RETRY_BASE_DELAY: float = Field(default=0.05, ge=0, description="Conflict backoff base")
    SESSION_RETRY_MAX_DELAY: float = Field(default=1.0, ge=0, description="Conflict backoff cap")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class AuditSettings(BaseSettings):
    """Audit event buffering."""

    AUDIT_BUFFER_SIZE: int = Field(default=500, ge=1, description="Pending events kept in memory")
    AUDIT_BACKUP_PATH: str = Field(
        default="/tmp/signbot_audit_buffer.json",
        description="File used to persist pending events across restarts",
    )
    AUDIT_DRAIN_BATCH_SIZE: int = Field(default=50, ge=1, description="Events persisted per drain")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class DeadLetterSettings(BaseSettings):
    """
    Redelivery of events whose handler failed.

    STAGE-DL: Dead letter retry schedule

    DLQ_RETRY_DELAYS[n] is the wait before retry n+1; the last delay repeats
    if DLQ_MAX_RETRIES is larger than the list.
    """

    DLQ_MAX_RETRIES: int = Field(default=3, ge=1, description="Redelivery attempts before an entry is FAILED")
    DLQ_RETRY_DELAYS: list[float] = Field(default=[60.0, 300.0, 900.0], description="Seconds before each retry")
    DLQ_BATCH_SIZE: int = Field(default=10, ge=1, description="Entries retried per run")
    DLQ_RETRY_INTERVAL: float = Field(default=600.0, gt=0, description="Seconds between background retry runs")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class WebhookSettings(BaseSettings):
    """WhatsApp webhook authentication."""

    WHATSAPP_APP_SECRET: str | None = Field(default=None, description="Meta app secret for X-Hub-Signature-256")
    WHATSAPP_VERIFY_TOKEN: str | None = Field(default=None, description="Token echoed in the subscription handshake")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class LoggingSettings(BaseSettings):
    """
    Logging configuration for structured logging.

    STAGE-L: Logging configuration
    """

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class ApplicationSettings(BaseSettings):
    """
    General application settings.

    STAGE-0: Application initialization
    """

    ENVIRONMENT: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment"
    )
    APP_NAME: str = Field(default="SignBot", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")
    API_BASE_PATH: str = Field(default="", description="Prefix for all routers")
    ADMIN_API_KEY: str | None = Field(default=None, description="Key required on /admin routes (unset = open)")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class Settings(BaseSettings):
    """
    Main settings class that aggregates all configuration sections.

    STAGE-0: Centralized configuration initialization

    Usage:
        from signbot.core.config.settings import get_settings

        settings = get_settings()
        threshold = settings.circuit_breaker.CB_FAILURE_THRESHOLD
    """

    # Redis settings
    REDIS_ENABLED: bool = Field(default=False, description="Use Redis as the durable store")
    REDIS_HOST: str = Field(default="localhost", description="Redis server host")
    REDIS_PORT: int = Field(default=6379, description="Redis server port")
    REDIS_DB: int = Field(default=0, description="Redis database number")
    REDIS_PASSWORD: str | None = Field(default=None, description="Redis password (if required)")
    REDIS_MAX_CONNECTIONS: int = Field(default=50, description="Maximum pooled connections")
    REDIS_SOCKET_TIMEOUT: int = Field(default=5, description="Socket timeout in seconds")
    REDIS_SOCKET_CONNECT_TIMEOUT: int = Field(default=5, description="Connection timeout in seconds")
    REDIS_HEALTH_CHECK_INTERVAL: int = Field(default=30, description="Health check interval in seconds")

    # Circuit Breaker settings
    CB_FAILURE_THRESHOLD: int = Field(default=5, ge=1, description="Failures before opening circuit")
    CB_SUCCESS_THRESHOLD: int = Field(default=2, ge=1, description="Half-open successes to close circuit")
    CB_OPEN_DURATION: float = Field(default=30.0, gt=0, description="Seconds before attempting recovery")

    # Retry settings
    RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1, description="Attempts including the first")
    RETRY_BASE_DELAY: float = Field(default=0.5, ge=0, description="Base backoff delay (seconds)")
    RETRY_MAX_DELAY: float = Field(default=10.0, ge=0, description="Backoff cap (seconds)")

    # Rate Limiting settings
    RATE_LIMIT_REQUESTS: int = Field(default=100, ge=1, description="Requests per window")
    RATE_LIMIT_WINDOW_SECONDS: float = Field(default=60.0, gt=0, description="Window length")
    RATE_LIMIT_MAX_ENTRIES: int = Field(default=10000, ge=1, description="Maximum tracked keys")
    RATE_LIMIT_SWEEP_INTERVAL: float = Field(default=60.0, gt=0, description="Background sweep interval")
    SENDER_RATE_LIMIT_REQUESTS: int = Field(default=20, ge=1, description="Messages per sender per window")
    SENDER_RATE_LIMIT_WINDOW_SECONDS: float = Field(default=60.0, gt=0, description="Per-sender window length")

    # Idempotency settings
    IDEMPOTENCY_MEMORY_MAX_KEYS: int = Field(default=10000, ge=1, description="Recent keys kept in memory")
    IDEMPOTENCY_RETENTION_SECONDS: int = Field(default=604800, ge=1, description="Store record TTL")
    IDEMPOTENCY_FAIL_CLOSED_EVENTS: list[str] = Field(
        default=["survey_response"],
        description="Event types treated as duplicates when the store fails",
    )
    SURVEY_BUTTON_PREFIXES: list[str] = Field(
        default=["btn_rating_"],
        description="Button id prefixes that classify a reply as a survey response",
    )

    # Session settings
    SESSION_RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1, description="Read-modify-write attempts")
    SESSION_RETRY_BASE_DELAY: float = Field(default=0.05, ge=0, description="Conflict backoff base")
    SESSION_RETRY_MAX_DELAY: float = Field(default=1.0, ge=0, description="Conflict backoff cap")

    # Audit settings
    AUDIT_BUFFER_SIZE: int = Field(default=500, ge=1, description="Pending events kept in memory")
    AUDIT_BACKUP_PATH: str = Field(
        default="/tmp/signbot_audit_buffer.json",
        description="File used to persist pending events across restarts",
    )
    AUDIT_DRAIN_BATCH_SIZE: int = Field(default=50, ge=1, description="Events persisted per drain")

    # Dead letter settings
    DLQ_MAX_RETRIES: int = Field(default=3, ge=1, description="Redelivery attempts before an entry is FAILED")
    DLQ_RETRY_DELAYS: list[float] = Field(default=[60.0, 300.0, 900.0], description="Seconds before each retry")
    DLQ_BATCH_SIZE: int = Field(default=10, ge=1, description="Entries retried per run")
    DLQ_RETRY_INTERVAL: float = Field(default=600.0, gt=0, description="Seconds between background retry runs")

    # Webhook settings
    WHATSAPP_APP_SECRET: str | None = Field(default=None, description="Meta app secret for X-Hub-Signature-256")
    WHATSAPP_VERIFY_TOKEN: str | None = Field(default=None, description="Token echoed in the subscription handshake")

    # Logging settings
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    # Application settings
    ENVIRONMENT: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment"
    )
    APP_NAME: str = Field(default="SignBot", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")
    API_BASE_PATH: str = Field(default="", description="Prefix for all routers")
    ADMIN_API_KEY: str | None = Field(default=None, description="Key required on /admin routes (unset = open)")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    # Nested configuration views
    @property
    def redis(self) -> RedisSettings:
        """Get Redis settings."""
        return RedisSettings(
            REDIS_ENABLED=self.REDIS_ENABLED,
            REDIS_HOST=self.REDIS_HOST,
            REDIS_PORT=self.REDIS_PORT,
            REDIS_DB=self.REDIS_DB,
            REDIS_PASSWORD=self.REDIS_PASSWORD,
            REDIS_MAX_CONNECTIONS=self.REDIS_MAX_CONNECTIONS,
            REDIS_SOCKET_TIMEOUT=self.REDIS_SOCKET_TIMEOUT,
            REDIS_SOCKET_CONNECT_TIMEOUT=self.REDIS_SOCKET_CONNECT_TIMEOUT,
            REDIS_HEALTH_CHECK_INTERVAL=self.REDIS_HEALTH_CHECK_INTERVAL,
        )

    @property
    def circuit_breaker(self) -> CircuitBreakerSettings:
        """Get circuit breaker settings."""
        return CircuitBreakerSettings(
            CB_FAILURE_THRESHOLD=self.CB_FAILURE_THRESHOLD,
            CB_SUCCESS_THRESHOLD=self.CB_SUCCESS_THRESHOLD,
            CB_OPEN_DURATION=self.CB_OPEN_DURATION,
        )

    @property
    def retry(self) -> RetrySettings:
        """Get retry settings."""
        return RetrySettings(
            RETRY_MAX_ATTEMPTS=self.RETRY_MAX_ATTEMPTS,
            RETRY_BASE_DELAY=self.RETRY_BASE_DELAY,
            RETRY_MAX_DELAY=self.RETRY_MAX_DELAY,
        )

    @property
    def rate_limit(self) -> RateLimitSettings:
        """Get rate limit settings."""
        return RateLimitSettings(
            RATE_LIMIT_REQUESTS=self.RATE_LIMIT_REQUESTS,
            RATE_LIMIT_WINDOW_SECONDS=self.RATE_LIMIT_WINDOW_SECONDS,
            RATE_LIMIT_MAX_ENTRIES=self.RATE_LIMIT_MAX_ENTRIES,
            RATE_LIMIT_SWEEP_INTERVAL=self.RATE_LIMIT_SWEEP_INTERVAL,
            SENDER_RATE_LIMIT_REQUESTS=self.SENDER_RATE_LIMIT_REQUESTS,
            SENDER_RATE_LIMIT_WINDOW_SECONDS=self.SENDER_RATE_LIMIT_WINDOW_SECONDS,
        )

    @property
    def idempotency(self) -> IdempotencySettings:
        """Get idempotency settings."""
        return IdempotencySettings(
            IDEMPOTENCY_MEMORY_MAX_KEYS=self.IDEMPOTENCY_MEMORY_MAX_KEYS,
            IDEMPOTENCY_RETENTION_SECONDS=self.IDEMPOTENCY_RETENTION_SECONDS,
            IDEMPOTENCY_FAIL_CLOSED_EVENTS=self.IDEMPOTENCY_FAIL_CLOSED_EVENTS,
            SURVEY_BUTTON_PREFIXES=self.SURVEY_BUTTON_PREFIXES,
        )

    @property
    def session(self) -> SessionSettings:
        """Get session concurrency settings."""
        return SessionSettings(
            SESSION_RETRY_MAX_ATTEMPTS=self.SESSION_RETRY_MAX_ATTEMPTS,
            SESSION_RETRY_BASE_DELAY=self.SESSION_RETRY_BASE_DELAY,
            SESSION_RETRY_MAX_DELAY=self.SESSION_RETRY_MAX_DELAY,
        )

    @property
    def audit(self) -> AuditSettings:
        """Get audit settings."""
        return AuditSettings(
            AUDIT_BUFFER_SIZE=self.AUDIT_BUFFER_SIZE,
            AUDIT_BACKUP_PATH=self.AUDIT_BACKUP_PATH,
            AUDIT_DRAIN_BATCH_SIZE=self.AUDIT_DRAIN_BATCH_SIZE,
        )

    @property
    def dead_letter(self) -> DeadLetterSettings:
        """Get dead letter retry settings."""
        return DeadLetterSettings(
            DLQ_MAX_RETRIES=self.DLQ_MAX_RETRIES,
            DLQ_RETRY_DELAYS=self.DLQ_RETRY_DELAYS,
            DLQ_BATCH_SIZE=self.DLQ_BATCH_SIZE,
            DLQ_RETRY_INTERVAL=self.DLQ_RETRY_INTERVAL,
        )

    @property
    def webhooks(self) -> WebhookSettings:
        """Get webhook authentication settings."""
        return WebhookSettings(
            WHATSAPP_APP_SECRET=self.WHATSAPP_APP_SECRET,
            WHATSAPP_VERIFY_TOKEN=self.WHATSAPP_VERIFY_TOKEN,
        )

    @property
    def logging(self) -> LoggingSettings:
        """Get logging settings."""
        return LoggingSettings(LOG_LEVEL=self.LOG_LEVEL, LOG_FORMAT=self.LOG_FORMAT)

    @property
    def app(self) -> ApplicationSettings:
        """Get application settings."""
        return ApplicationSettings(
            ENVIRONMENT=self.ENVIRONMENT,
            APP_NAME=self.APP_NAME,
            APP_VERSION=self.APP_VERSION,
            API_BASE_PATH=self.API_BASE_PATH,
            ADMIN_API_KEY=self.ADMIN_API_KEY,
        )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


# Global settings instance (singleton pattern)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton).

    STAGE-0.3: Settings initialization

    Returns:
        Settings: Global settings instance
    """
    global _settings

    if _settings is None:
        _settings = Settings()

    return _settings


def reload_settings() -> Settings:
    """
    Reload settings (useful for testing).

    Returns:
        Settings: New settings instance
    """
    global _settings
    _settings = Settings()
    return _settings
