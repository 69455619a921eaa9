"""Application configuration models shared by services."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .ratelimit import RateLimitPresets
from .security import TokenTTL


MIN_TOKEN_SECRET_LENGTH = 32


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class GatewaySettings(BaseSettings):
    """Runtime settings for the content delivery gateway.

    Constructed once at startup and passed explicitly to every component.
    Missing signing secret or bucket names fail validation, so the service
    refuses to start rather than serving with a partial configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    # Token codec
    token_secret: SecretStr = env_field(..., "LEXGATE_TOKEN_SECRET")
    token_secret_fallbacks: SecretStr = env_field(SecretStr(""), "LEXGATE_TOKEN_SECRET_FALLBACKS")
    token_clock_skew_seconds: int = env_field(60, "LEXGATE_TOKEN_CLOCK_SKEW")
    document_token_ttl_seconds: int = env_field(TokenTTL.DOCUMENT_VIEW, "LEXGATE_DOCUMENT_TOKEN_TTL")
    video_token_ttl_seconds: int = env_field(TokenTTL.VIDEO_PLAYBACK, "LEXGATE_VIDEO_TOKEN_TTL")

    # Backing object store
    document_bucket: str = env_field(..., "LEXGATE_DOCUMENT_BUCKET")
    video_bucket: str = env_field(..., "LEXGATE_VIDEO_BUCKET")
    s3_endpoint_url: Optional[str] = env_field(None, "LEXGATE_S3_ENDPOINT")
    s3_region: Optional[str] = env_field(None, "LEXGATE_S3_REGION")
    s3_access_key_id: Optional[str] = env_field(None, "LEXGATE_S3_ACCESS_KEY_ID")
    s3_secret_access_key: Optional[SecretStr] = env_field(None, "LEXGATE_S3_SECRET_ACCESS_KEY")
    s3_max_retries: int = env_field(2, "LEXGATE_S3_MAX_RETRIES")
    s3_retry_base_seconds: float = env_field(0.2, "LEXGATE_S3_RETRY_BASE")
    s3_retry_max_seconds: float = env_field(2.0, "LEXGATE_S3_RETRY_MAX")
    s3_circuit_breaker_failures: int = env_field(5, "LEXGATE_S3_CIRCUIT_FAILURES")
    s3_circuit_breaker_reset_seconds: float = env_field(30.0, "LEXGATE_S3_CIRCUIT_RESET")
    stream_chunk_bytes: int = env_field(64 * 1024, "LEXGATE_STREAM_CHUNK_BYTES")
    local_storage_path: Optional[Path] = env_field(None, "LEXGATE_LOCAL_STORAGE_PATH")

    # Shared store (rate limits and caches)
    redis_url: Optional[str] = env_field(None, "LEXGATE_REDIS_URL")
    local_store_max_entries: int = env_field(10_000, "LEXGATE_LOCAL_STORE_MAX_ENTRIES")
    store_timeout_seconds: float = env_field(0.25, "LEXGATE_STORE_TIMEOUT")
    metadata_cache_ttl_seconds: int = env_field(3600, "LEXGATE_METADATA_CACHE_TTL")
    membership_cache_ttl_seconds: int = env_field(300, "LEXGATE_MEMBERSHIP_CACHE_TTL")

    # Rate limiting
    issue_rate_limit: int = env_field(RateLimitPresets.STRICT.max_requests, "LEXGATE_ISSUE_RATE_LIMIT")
    issue_rate_window_seconds: int = env_field(RateLimitPresets.STRICT.window_seconds, "LEXGATE_ISSUE_RATE_WINDOW")
    serve_rate_limit: int = env_field(RateLimitPresets.RELAXED.max_requests, "LEXGATE_SERVE_RATE_LIMIT")
    serve_rate_window_seconds: int = env_field(RateLimitPresets.RELAXED.window_seconds, "LEXGATE_SERVE_RATE_WINDOW")
    trusted_proxy_cidrs: str = env_field("", "LEXGATE_TRUSTED_PROXY_CIDRS")

    # Delivery
    video_cookie_name: str = env_field("video_token", "LEXGATE_VIDEO_COOKIE_NAME")
    secure_cookies: bool = env_field(True, "LEXGATE_SECURE_COOKIES")
    private_cache_max_age_seconds: int = env_field(60, "LEXGATE_PRIVATE_CACHE_MAX_AGE")

    # External collaborators
    identity_base_url: Optional[str] = env_field(None, "LEXGATE_IDENTITY_URL")
    identity_api_key: Optional[SecretStr] = env_field(None, "LEXGATE_IDENTITY_API_KEY")
    identity_jwt_secret: Optional[SecretStr] = env_field(None, "LEXGATE_IDENTITY_JWT_SECRET")
    identity_jwt_audience: str = env_field("authenticated", "LEXGATE_IDENTITY_JWT_AUDIENCE")
    collaborator_timeout_seconds: float = env_field(5.0, "LEXGATE_COLLABORATOR_TIMEOUT")

    # Operations
    internal_token: Optional[SecretStr] = env_field(None, "LEXGATE_INTERNAL_TOKEN")
    metrics_token: Optional[SecretStr] = env_field(None, "LEXGATE_METRICS_TOKEN")
    host: str = env_field("0.0.0.0", "LEXGATE_HOST")
    port: int = env_field(8080, "LEXGATE_PORT")
    log_level: str = env_field("INFO", "LEXGATE_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "LEXGATE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "LEXGATE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "LEXGATE_OTEL_SAMPLER_RATIO")

    @field_validator("token_secret")
    @classmethod
    def _require_strong_secret(cls, value: SecretStr) -> SecretStr:
        if len(value.get_secret_value()) < MIN_TOKEN_SECRET_LENGTH:
            raise ValueError(f"token secret must be at least {MIN_TOKEN_SECRET_LENGTH} characters")
        return value

    @field_validator("document_bucket", "video_bucket")
    @classmethod
    def _require_bucket(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("bucket name must not be empty")
        return value

    @field_validator("stream_chunk_bytes")
    @classmethod
    def _positive_chunk(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("stream chunk size must be positive")
        return value

    @property
    def token_secrets(self) -> list[str]:
        return [self.token_secret.get_secret_value(), *_split_csv(self.token_secret_fallbacks.get_secret_value())]

    @property
    def trusted_proxies(self) -> list[str]:
        return _split_csv(self.trusted_proxy_cidrs)
