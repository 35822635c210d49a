from __future__ import annotations

import os
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from authgate.logging import get_logger

logger = get_logger(__name__)

# Variables the process refuses to start without.
REQUIRED_ENV = ("AUTH_SECRET", "APP_URL", "DATABASE_URL")


class ConfigurationError(RuntimeError):
    """Fatal misconfiguration detected while loading settings at startup."""

    def __init__(self, message: str, *, missing: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.missing = missing


class AppEnv(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_paths(value: Any) -> list[str]:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return list(value)


class Settings(BaseModel):
    """Process settings resolved from the environment and ``.env``."""

    auth_secret: str = env_field(
        ..., "AUTH_SECRET", description="Signs session and access cookies"
    )
    app_url: str = env_field(..., "APP_URL", description="Externally reachable base URL")
    database_url: str = env_field(..., "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")

    access_ttl_minutes: int = env_field(
        15, "ACCESS_TTL_MINUTES", description="Short-lived access window", ge=1
    )
    session_ttl_days: int = env_field(
        7, "SESSION_TTL_DAYS", description="Refresh horizon without remember-me", ge=1
    )
    remember_me_ttl_days: int = env_field(
        30, "REMEMBER_ME_TTL_DAYS", description="Refresh horizon with remember-me", ge=1
    )

    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT", ge=1)
    login_rate_window_seconds: int = env_field(60, "LOGIN_RATE_WINDOW_SECONDS", ge=1)
    login_ip_rate_limit: int = env_field(20, "LOGIN_IP_RATE_LIMIT", ge=1)
    register_rate_limit: int = env_field(10, "REGISTER_RATE_LIMIT", ge=1)
    session_sweep_interval_seconds: int = env_field(
        300, "SESSION_SWEEP_INTERVAL_SECONDS", ge=1
    )

    cookie_prefix: str = env_field("auth", "COOKIE_PREFIX")
    protected_routes: list[str] = env_field(["/dashboard"], "PROTECTED_ROUTES")
    auth_routes: list[str] = env_field(["/login", "/register"], "AUTH_ROUTES")
    app_home_path: str = env_field("/dashboard", "APP_HOME_PATH")
    login_path: str = env_field("/login", "LOGIN_PATH")
    trusted_origins: list[str] = env_field([], "TRUSTED_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if os.environ.get(env_name):
                merged[name] = os.environ[env_name]
            elif env_file_values.get(env_name):
                merged[name] = env_file_values[env_name]

        missing = tuple(
            env for env in REQUIRED_ENV if env.lower() not in merged
        )
        if missing:
            logger.error("config_missing_required", missing=list(missing))
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}. "
                "AUTH_SECRET can be generated with: openssl rand -base64 32",
                missing=missing,
            )
        try:
            return cls(**merged)
        except ValidationError as exc:
            problems = [
                f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
                for err in exc.errors()
            ]
            logger.error("config_invalid", problems=problems)
            raise ConfigurationError(f"Invalid configuration: {'; '.join(problems)}") from exc

    @field_validator("auth_secret")
    @classmethod
    def _validate_secret(cls, value: str) -> str:
        if len(value) < 16:
            raise ValueError("AUTH_SECRET must be at least 16 characters")
        return value

    @field_validator("app_url")
    @classmethod
    def _validate_app_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("APP_URL must be an absolute http(s) URL")
        return value.rstrip("/")

    @field_validator("protected_routes", "auth_routes", "trusted_origins", mode="before")
    @classmethod
    def _parse_list(cls, value: Any) -> list[str]:
        return _split_paths(value)

    @model_validator(mode="after")
    def _check_route_sets(self) -> "Settings":
        overlap = {
            protected
            for protected in self.protected_routes
            for auth_only in self.auth_routes
            if protected.startswith(auth_only) or auth_only.startswith(protected)
        }
        if overlap:
            raise ValueError(f"protected and auth-only routes overlap: {sorted(overlap)}")
        if not self.trusted_origins:
            self.trusted_origins = [self.app_url]
        return self

    @property
    def secure_cookies(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION

    @property
    def session_cookie_name(self) -> str:
        return f"{self.cookie_prefix}.session_token"

    @property
    def access_cookie_name(self) -> str:
        return f"{self.cookie_prefix}.session_data"


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
