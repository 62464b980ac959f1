from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

import bcrypt

from ..config import settings

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

def hash_password(plain: str) -> str:
    return bcrypt.hashpw(plain.encode(), bcrypt.gensalt(rounds=settings.bcrypt_rounds)).decode()


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode(), hashed.encode())
    except ValueError:
        # Malformed stored hash
        return False


# Compared against when the account does not exist, so both login failure
# paths pay for one bcrypt check.
_DUMMY_HASH: Optional[str] = None


def burn_password_check(plain: str) -> None:
    global _DUMMY_HASH
    if _DUMMY_HASH is None:
        _DUMMY_HASH = hash_password("response-ready-dummy-password")
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Password policy
# ---------------------------------------------------------------------------

MIN_PASSWORD_LENGTH = 12
PASSWORD_REQUIREMENTS = (
    "Password must be at least 12 characters and include uppercase, lowercase, "
    "number, and special character (@$!%*?&)"
)

_RULES = (
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"[0-9]"), "Password must contain at least one number"),
    (re.compile(r"[@$!%*?&]"), "Password must contain at least one special character (@$!%*?&)"),
)


@dataclass(frozen=True)
class PasswordCheck:
    valid: bool
    error: Optional[str] = None


def validate_password(password: Any) -> PasswordCheck:
    if not password or not isinstance(password, str):
        return PasswordCheck(False, "Password is required")
    if len(password) < MIN_PASSWORD_LENGTH:
        return PasswordCheck(False, f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    for pattern, message in _RULES:
        if not pattern.search(password):
            return PasswordCheck(False, message)
    return PasswordCheck(True)


# ---------------------------------------------------------------------------
# Input sanitising
# ---------------------------------------------------------------------------

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def sanitize_string(value: Any, max_length: int = 1000) -> Optional[str]:
    """Trimmed, NUL-free, length-capped string, or None for empty input."""
    if value is None or value == "":
        return None
    sanitized = str(value).strip()[:max_length].replace("\0", "")
    return sanitized or None


def sanitize_email(value: Any) -> Optional[str]:
    """Lower-cased email when it looks like ``x@y.z``, else None."""
    sanitized = sanitize_string(value, 255)
    if not sanitized or not _EMAIL_RE.match(sanitized):
        return None
    return sanitized.lower()
