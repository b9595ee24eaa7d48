from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from lankaqr.logging import get_logger

logger = get_logger(__name__)

FALLBACK_CORS_ORIGINS = ["https://www.b2u.app"]

# Firebase refuses session cookies shorter than 5 minutes or longer than 14 days
MIN_SESSION_COOKIE_MS = 5 * 60 * 1000
MAX_SESSION_COOKIE_MS = 14 * 24 * 60 * 60 * 1000
DEFAULT_SESSION_COOKIE_MS = 8 * 60 * 60 * 1000


class AppEnv(str, Enum):
    """Deployment environment; production turns on Secure cookies."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _normalize_origin(origin: str) -> str:
    return origin.strip().rstrip("/")


class Settings(BaseModel):
    """Runtime settings for the portal backend."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    app_origin: str = env_field("http://localhost:3000", "APP_ORIGIN")
    cors_allow_origins: list[str] = env_field(
        list(FALLBACK_CORS_ORIGINS),
        "MARKETING_SITE_ORIGIN",
        description="Comma separated origins allowed to call /api/auth/custom-token",
    )
    pin_pepper: str = env_field("", "PIN_PEPPER")
    # Identity provider / document store
    firebase_service_account: str | None = env_field(None, "FIREBASE_SERVICE_ACCOUNT")
    firebase_project_id: str | None = env_field(None, "FIREBASE_PROJECT_ID")
    firebase_rest_api_key: str | None = env_field(None, "FIREBASE_REST_API_KEY")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-memory collaborators for the test suite.",
    )
    # Sessions
    session_cookie_ttl_ms: int = env_field(
        DEFAULT_SESSION_COOKIE_MS, "SESSION_COOKIE_TTL_MS"
    )
    operator_session_ttl_seconds: int = env_field(
        8 * 60 * 60,
        "OPERATOR_SESSION_TTL_SECONDS",
        description="TTL of admin_session / staff_session cookies and records",
    )
    invite_ttl_hours: int = env_field(24, "INVITE_TTL_HOURS")
    tenant_cache_ttl_ms: int = env_field(5000, "TENANT_CACHE_TTL_MS")
    email_code_ttl_seconds: int = env_field(5 * 60, "EMAIL_OTP_TTL_SECONDS")
    virtual_login_domain: str = env_field(
        "lqr.internal",
        "VIRTUAL_LOGIN_DOMAIN",
        description="Domain of the sign-in addresses given to staff without their own email",
    )
    # Email (optional; when absent invite links are only logged)
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASS")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "FROM_EMAIL")
    email_from_name: str = env_field("LankaQR", "EMAIL_FROM_NAME")
    build_sha: str = env_field("dev", "BUILD_SHA")

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

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_app_env(cls, value: Any) -> AppEnv:
        if isinstance(value, str):
            return AppEnv(value.strip().lower())
        return AppEnv(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return list(FALLBACK_CORS_ORIGINS)
        if isinstance(value, str):
            items = [_normalize_origin(part) for part in value.split(",")]
        else:
            items = [_normalize_origin(str(part)) for part in value]
        deduped: list[str] = []
        for origin in items:
            if origin and origin not in deduped:
                deduped.append(origin)
        return deduped or list(FALLBACK_CORS_ORIGINS)

    @field_validator("session_cookie_ttl_ms")
    @classmethod
    def _clamp_session_ttl(cls, value: int) -> int:
        if value > MAX_SESSION_COOKIE_MS:
            logger.warning(
                "session_cookie_ttl_clamped",
                requested_ms=value,
                max_ms=MAX_SESSION_COOKIE_MS,
            )
            return MAX_SESSION_COOKIE_MS
        return value

    @property
    def is_production(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION


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
