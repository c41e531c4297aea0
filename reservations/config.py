"""
Reservation Engine Configuration

Centralized, validated configuration for the reservation engine and its
backing services (Redis for ephemeral state, Supabase for durable records).

Uses Pydantic Settings so every value can be overridden from the environment
or a local .env file, and so tests can build settings explicitly.
"""
import logging
import os
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings
from redis.asyncio import Redis

logger = logging.getLogger(__name__)

# Minimum entropy for security keys (32 hex chars = 128 bits)
MIN_SECRET_LENGTH = 32


class ReservationSettings(BaseSettings):
    """Validated reservation engine configuration."""

    # Backing services
    REDIS_URL: str = "redis://localhost:6379"
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: str = ""

    # Slot generation
    SLOT_DURATION_MINUTES: int = 15
    DEFAULT_TIMEZONE: str = "UTC"

    # Ephemeral state lifetimes (seconds). Lock and draft share one window
    # so an abandoned reservation is reclaimed as a unit.
    SLOT_LOCK_TTL_SECONDS: int = 600
    BOOKING_DRAFT_TTL_SECONDS: int = 600

    # One-time codes
    OTP_LENGTH: int = 6
    OTP_TTL_SECONDS: int = 300
    OTP_MAX_VERIFY_ATTEMPTS: int = 3
    OTP_RATE_LIMIT_MAX: int = 3
    OTP_RATE_LIMIT_WINDOW_SECONDS: int = 900

    # Secrets (no defaults allowed)
    OTP_HASH_SECRET: str = ""
    PHI_ENCRYPTION_KEY: str = ""

    ENVIRONMENT: str = "development"

    @field_validator('OTP_HASH_SECRET')
    @classmethod
    def validate_secret_strength(cls, v: str, info) -> str:
        """Ensure secrets have minimum entropy."""
        if v in ("change-this-in-production", ""):
            raise ValueError(
                f"{info.field_name} cannot use insecure default. "
                f"Generate with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )
        if len(v) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"{info.field_name} must be at least {MIN_SECRET_LENGTH} chars for security"
            )
        return v

    @field_validator('PHI_ENCRYPTION_KEY')
    @classmethod
    def validate_encryption_key_present(cls, v: str) -> str:
        if not v:
            raise ValueError(
                "PHI_ENCRYPTION_KEY must be set. Generate with: python -c "
                "\"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )
        return v

    @field_validator('OTP_LENGTH')
    @classmethod
    def validate_otp_length(cls, v: int) -> int:
        if not 4 <= v <= 10:
            raise ValueError("OTP_LENGTH must be between 4 and 10 digits")
        return v

    @field_validator('REDIS_URL')
    @classmethod
    def validate_redis_not_localhost_in_prod(cls, v: str) -> str:
        """Ensure Redis is not localhost in production."""
        env = os.getenv("ENVIRONMENT", "development")
        if "localhost" in v and env == "production":
            raise ValueError("REDIS_URL cannot point to localhost in production")
        return v

    @model_validator(mode='after')
    def validate_lifetimes(self) -> 'ReservationSettings':
        # A code must never outlive the draft it confirms
        if self.OTP_TTL_SECONDS > self.BOOKING_DRAFT_TTL_SECONDS:
            raise ValueError("OTP_TTL_SECONDS must not exceed BOOKING_DRAFT_TTL_SECONDS")
        if min(
            self.SLOT_LOCK_TTL_SECONDS,
            self.BOOKING_DRAFT_TTL_SECONDS,
            self.OTP_TTL_SECONDS,
            self.OTP_RATE_LIMIT_WINDOW_SECONDS,
        ) <= 0:
            raise ValueError("TTL values must be positive")
        if self.OTP_MAX_VERIFY_ATTEMPTS < 1 or self.OTP_RATE_LIMIT_MAX < 1:
            raise ValueError("Attempt and rate limits must be at least 1")
        return self

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",  # Allow extra env vars without validation errors
    }


@lru_cache
def get_settings() -> ReservationSettings:
    """
    Load settings once per process.

    Note: Never log actual secret values, only variable names.
    """
    settings = ReservationSettings()
    logger.info(
        f"Reservation settings loaded (environment={settings.ENVIRONMENT}, "
        f"lock_ttl={settings.SLOT_LOCK_TTL_SECONDS}s, otp_ttl={settings.OTP_TTL_SECONDS}s)"
    )
    return settings


def get_redis_client(settings: ReservationSettings) -> Redis:
    """
    Get configured async Redis client with optimized settings

    Returns:
        Redis: Configured Redis client instance
    """
    return Redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,  # Automatically decode responses to strings
        socket_connect_timeout=5,  # 5 second connection timeout
        socket_timeout=5,  # 5 second operation timeout
        retry_on_timeout=True,  # Retry operations that timeout
        health_check_interval=30  # Health check every 30 seconds
    )
