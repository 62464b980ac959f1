from __future__ import annotations

import sys
from functools import lru_cache
from typing import Dict, List

from pydantic import field_validator
from pydantic_settings import BaseSettings


_DEFAULT_JWT_SECRET = "change-this-in-production-minimum-32-characters"
_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./response_ready.db"
    log_sql: bool = False

    # Server
    environment: str = "development"
    log_level: str = "info"
    log_format: str = "json"
    allow_cors_origins: List[str] = ["*"]

    # Tokens
    jwt_secret: str = _DEFAULT_JWT_SECRET
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7

    # Passwords
    bcrypt_rounds: int = 12

    # Brute-force lockout
    lockout_threshold: int = 5
    lockout_duration_minutes: int = 15
    lockout_reset_window_minutes: int = 60

    # Rate limiting: preset name -> {max_requests, window_ms}
    rate_limits: Dict[str, Dict[str, int]] = {
        "auth": {"max_requests": 5, "window_ms": 15 * 60 * 1000},
        "api": {"max_requests": 100, "window_ms": 60 * 1000},
        "read": {"max_requests": 200, "window_ms": 60 * 1000},
    }
    counter_sweep_interval_seconds: int = 300

    # Client session timeouts (served from /auth/session-policy)
    idle_timeout_minutes: int = 30
    max_session_hours: int = 8
    warning_before_timeout_minutes: int = 5

    # Accounts
    registration_enabled: bool = True
    admin_email: str = "admin@responseready.local"
    admin_password: str = "changeme"
    admin_username: str = "admin@responseready.local"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @field_validator("jwt_secret")
    @classmethod
    def validate_jwt_secret(cls, v: str, info) -> str:
        """Refuse to start in production with the default or a short JWT secret."""
        env = info.data.get("environment", "development")
        if env == "development":
            return v
        if v == _DEFAULT_JWT_SECRET:
            print(
                "\n🚨 FATAL: RESPONSE_READY_JWT_SECRET is set to the default value.\n"
                "   Set RESPONSE_READY_JWT_SECRET to a strong random string before "
                "running in production.\n"
                "   Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\"\n",
                file=sys.stderr,
            )
            raise ValueError(
                "JWT secret must be changed from default in non-development environments. "
                "Set RESPONSE_READY_JWT_SECRET env var."
            )
        if len(v) < _MIN_SECRET_LENGTH:
            raise ValueError(
                f"JWT secret must be at least {_MIN_SECRET_LENGTH} characters "
                "in non-development environments."
            )
        return v

    @field_validator("rate_limits")
    @classmethod
    def validate_rate_limits(cls, v: Dict[str, Dict[str, int]]) -> Dict[str, Dict[str, int]]:
        for name, preset in v.items():
            if preset.get("max_requests", 0) < 1 or preset.get("window_ms", 0) < 1:
                raise ValueError(
                    f"Rate limit preset '{name}' needs positive max_requests and window_ms."
                )
        return v

    class Config:
        env_prefix = "RESPONSE_READY_"


@lru_cache
def get_settings() -> Settings:
    return Settings()


# Module-level singleton for convenience
settings = get_settings()
