from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hackauth.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


class AppEnv(str, Enum):
    """Deployment environments recognised by the service."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip().lower() for item in value.split(",") if item.strip()]
    return [str(item).strip().lower() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the identity and session service."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/hackauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviour: generated secrets and in-process cache fallback.",
    )
    # Tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("hackauth", "JWT_ISSUER")
    jwt_audience: str = env_field("hackathon-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(
        15 * 60, "ACCESS_TOKEN_TTL_SECONDS", gt=0
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS", gt=0
    )
    # HTTP surface
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    api_prefix: str = env_field("api", "API_PREFIX")
    cookie_secure: bool | None = env_field(
        None,
        "COOKIE_SECURE",
        description="Mark auth cookies Secure; defaults to true in production.",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    # Password hashing (argon2id)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        64 * 1024, "PASSWORD_HASH_MEMORY_COST", ge=8
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)
    password_reset_secret: str | None = env_field(None, "PASSWORD_RESET_SECRET")
    # Throttling
    code_max_attempts: int = env_field(5, "CODE_MAX_ATTEMPTS", ge=1)
    login_max_failures: int = env_field(10, "LOGIN_MAX_FAILURES", ge=1)
    login_failure_window_seconds: int = env_field(
        15 * 60, "LOGIN_FAILURE_WINDOW_SECONDS", gt=0
    )
    # Backing store timeouts
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS", gt=0)
    cache_timeout_seconds: float = env_field(5.0, "CACHE_TIMEOUT_SECONDS", gt=0)
    # OAuth providers
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_google_callback_url: str | None = env_field(None, "OAUTH_GOOGLE_CALLBACK_URL")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_github_callback_url: str | None = env_field(None, "OAUTH_GITHUB_CALLBACK_URL")
    oauth_linkedin_client_id: str | None = env_field(None, "OAUTH_LINKEDIN_CLIENT_ID")
    oauth_linkedin_client_secret: str | None = env_field(
        None, "OAUTH_LINKEDIN_CLIENT_SECRET"
    )
    oauth_linkedin_callback_url: str | None = env_field(
        None, "OAUTH_LINKEDIN_CALLBACK_URL"
    )
    oauth_trusted_email_providers: list[str] = env_field(
        ["google", "github", "linkedin"],
        "OAUTH_TRUSTED_EMAIL_PROVIDERS",
        description="Providers whose email addresses are trusted for account linking.",
    )
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS", gt=0)
    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Hackathon Platform", "EMAIL_FROM_NAME")

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
        # Empty strings mean "unset" for optional values coming from the environment
        cleaned = {key: value for key, value in merged.items() if value != ""}
        if merged.get("redis_url") == "":
            cleaned["redis_url"] = None
        return cls(**cleaned)

    @field_validator("app_env", mode="before")
    @classmethod
    def _normalize_env(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("api_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        return value.strip("/")

    @field_validator("frontend_url")
    @classmethod
    def _normalize_frontend_url(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("cors_allow_origins", "oauth_trusted_email_providers", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < _MIN_SECRET_LENGTH and self.is_production:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters in production"
                )
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET must be set unless TEST_MODE is enabled")
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; generated a per-process secret for TEST_MODE",
            app_env=self.app_env.value,
        )
        self.jwt_secret = secrets.token_urlsafe(64)
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.is_production

    @property
    def auth_path(self) -> str:
        """Path prefix of the auth router; also the cookie path."""
        prefix = f"/{self.api_prefix}" if self.api_prefix else ""
        return f"{prefix}/v1/auth"


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
