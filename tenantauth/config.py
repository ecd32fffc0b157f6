from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


ARGON2_MIN_MEMORY_COST = 65536
ARGON2_MIN_TIME_COST = 3
ARGON2_MIN_PARALLELISM = 4


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    # Token issuance
    jwt_issuer: str = env_field("tenantauth", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(10, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking access token expiry",
    )
    private_key_path: str = env_field("./keys/private.pem", "PRIVATE_KEY_PATH")
    public_key_path: str = env_field("./keys/public.pem", "PUBLIC_KEY_PATH")

    # Argon2id cost parameters
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    # One-time secrets
    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

    # Admission control
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Shared counter store; unset keeps rate limiting in-process",
    )
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_max_requests: int = env_field(5, "RATE_LIMIT_MAX_REQUESTS")
    strict_rate_limit_window_seconds: int = env_field(
        15 * 60, "STRICT_RATE_LIMIT_WINDOW_SECONDS"
    )
    strict_rate_limit_max_requests: int = env_field(3, "STRICT_RATE_LIMIT_MAX_REQUESTS")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TenantAuth", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    # OAuth providers
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_microsoft_client_id: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: str | None = env_field(
        None, "OAUTH_MICROSOFT_CLIENT_SECRET"
    )
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI; never enable in production",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("otp_length")
    @classmethod
    def _validate_otp_length(cls, value: int) -> int:
        if value < 4 or value > 10:
            raise ValueError("OTP_LENGTH must be between 4 and 10 digits")
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "otp_ttl_minutes",
        "password_reset_ttl_minutes",
    )
    @classmethod
    def _validate_positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _enforce_argon2_floors(self) -> "Settings":
        # Test runs may use cheaper parameters to keep hashing fast
        if self.test_mode:
            return self
        floors = {
            "argon2_memory_cost": ARGON2_MIN_MEMORY_COST,
            "argon2_time_cost": ARGON2_MIN_TIME_COST,
            "argon2_parallelism": ARGON2_MIN_PARALLELISM,
        }
        too_weak = [name for name, floor in floors.items() if getattr(self, name) < floor]
        if too_weak:
            raise ValueError(
                f"Argon2 parameters below the minimum cost: {', '.join(too_weak)}"
            )
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
