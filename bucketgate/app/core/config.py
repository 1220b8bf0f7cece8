from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    Bucket parameters (fill rate, capacity) are not settings: every call site
    passes its own when it sets up a bucket.
    """

    # Redis settings
    redis_enabled: bool = False  # If False, buckets live in process memory
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = 5.0

    # Filling bucket settings
    bucket_key_prefix: str = "bucket"
    bucket_ttl_slack_seconds: int = 1  # Added to every key TTL for clock/network jitter
    throttle_retry_margin_seconds: int = 3  # Added to every computed retry delay

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("bucket_key_prefix")
    @classmethod
    def validate_key_prefix(cls, v: str) -> str:
        """Validate the key prefix is a non-empty token without separators."""
        v = v.strip()
        if not v:
            raise ValueError("bucket_key_prefix must not be empty")
        if "." in v:
            raise ValueError("bucket_key_prefix must not contain '.'")
        return v

    @field_validator("bucket_ttl_slack_seconds", "throttle_retry_margin_seconds")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Validate slack and margin values are not negative."""
        if v < 0:
            raise ValueError("slack and margin values must not be negative")
        return v

    @field_validator("redis_socket_timeout")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
