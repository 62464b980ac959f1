"""
errors.py — Request error taxonomy and safe client messages
===========================================================
Handlers raise these; the request pipeline turns them into
``{"error": message}`` bodies with the class status code. Anything that
is not an ``ApiError`` is an unexpected failure: it is logged in full
server-side and reaches the client as a generic message outside
development. The same holds for any ``ApiError`` with a 5xx status.
Rate limiting answers 429 with its own prepared response, so it has no
class here.
"""
from __future__ import annotations

import logging
import math
import time
from typing import Any, Optional

from .config import settings

logger = logging.getLogger("response_ready.errors")


class ApiError(Exception):
    """Base class for errors that map directly onto an HTTP response."""

    status_code: int = 400

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationFailed(ApiError):
    """Missing or malformed input (400)."""
    status_code = 400


class AuthenticationFailed(ApiError):
    """Bad credentials, missing or invalid token, inactive account (401)."""
    status_code = 401


class PermissionDenied(ApiError):
    """Authenticated but lacking privilege (403)."""
    status_code = 403


class NotFound(ApiError):
    status_code = 404


class AccountLocked(ApiError):
    """Too many failed logins for an identifier (423).

    The message only exposes the remaining wait, never the failure count.
    """

    status_code = 423

    def __init__(self, locked_until: float, *, now: Optional[float] = None) -> None:
        self.locked_until = locked_until
        self.minutes_remaining = minutes_until(locked_until, now)
        super().__init__(
            "Account temporarily locked due to too many failed login attempts. "
            f"Please try again in {self.minutes_remaining} minute(s)."
        )


class ServerError(ApiError):
    """An expected server-side failure (500). The message is sanitised like any other 5xx."""
    status_code = 500


def minutes_until(deadline: float, now: Optional[float] = None) -> int:
    """Whole minutes (rounded up, at least 1) until an epoch-seconds deadline."""
    now = time.time() if now is None else now
    return max(1, math.ceil((deadline - now) / 60))


def get_safe_error_message(error: BaseException, default_message: str = "An error occurred") -> str:
    """Detailed message in development, the generic default everywhere else."""
    if settings.is_development:
        return str(error) or default_message
    return default_message


def log_error(context: str, error: BaseException, **metadata: Any) -> None:
    """Log an unexpected error with its stack trace. Never sent to clients."""
    logger.error(
        "[%s] %s: %s",
        context,
        type(error).__name__,
        error,
        exc_info=(type(error), error, error.__traceback__),
        extra={"context": context, **metadata},
    )
