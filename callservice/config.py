"""Configuration management for the call session service."""

from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"  # Ignore extra environment variables
    )

    # Server configuration
    port: int = 8000
    host: str = "0.0.0.0"

    # Supabase configuration (service role key, server side only)
    supabase_url: str = "http://localhost:54321"
    supabase_service_role_key: str = "service-role-key"

    # ElevenLabs conversational AI
    elevenlabs_api_key: Optional[str] = None
    elevenlabs_agent_id: Optional[str] = None
    elevenlabs_api_base: str = "https://api.elevenlabs.io"

    # Webhook verification
    webhook_shared_secret: Optional[str] = None
    webhook_tolerance_seconds: int = 300

    # Call policy
    default_timezone: str = "Europe/Madrid"
    daily_call_limit: int = 2
    stale_call_minutes: int = 120

    # Rate limiting
    rate_limit_backend: str = "memory"
    redis_url: Optional[str] = None

    # Staff routes
    admin_api_key: Optional[str] = None

    # Outbound timeouts
    http_timeout_seconds: float = 10.0

    # Observability
    otlp_endpoint: Optional[str] = None

    # Logging configuration
    log_level: str = "INFO"

    @field_validator('supabase_url')
    @classmethod
    def validate_supabase_url(cls, v):
        if not v:
            raise ValueError('SUPABASE_URL environment variable is required')
        return v

    @field_validator('supabase_service_role_key')
    @classmethod
    def validate_supabase_service_role_key(cls, v):
        if not v:
            raise ValueError('SUPABASE_SERVICE_ROLE_KEY environment variable is required')
        return v

    @field_validator('default_timezone')
    @classmethod
    def validate_default_timezone(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f'DEFAULT_TIMEZONE is not a known IANA zone: {v}')
        return v

    @field_validator('daily_call_limit', 'stale_call_minutes', 'webhook_tolerance_seconds')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError('value must be a positive integer')
        return v

    @field_validator('rate_limit_backend')
    @classmethod
    def validate_rate_limit_backend(cls, v):
        v = v.lower()
        if v not in ('memory', 'redis'):
            raise ValueError('RATE_LIMIT_BACKEND must be "memory" or "redis"')
        return v

    @field_validator('http_timeout_seconds')
    @classmethod
    def validate_http_timeout(cls, v):
        if not 0.0 < v <= 120.0:
            raise ValueError('HTTP_TIMEOUT_SECONDS must be between 0 and 120')
        return v


# Global settings instance
settings = Settings()
