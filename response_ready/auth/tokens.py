"""
tokens.py — Signed access and refresh tokens
============================================
Both tokens are HS256 JWTs carrying the account id, the admin flag and
the account email. Nothing is stored server-side: a token is valid when
its signature checks out, it has not expired, and its ``type`` claim
matches what the caller asked for.

Verification never raises. Malformed, tampered, expired or wrong-type
tokens all come back as ``None``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from starlette.requests import HTTPConnection

ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"

_BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class TokenClaims:
    """Identity carried by a token. ``issued_at``/``expires_at`` are set on verify."""

    user_id: str
    is_admin: bool
    email: str
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def identity(self) -> "TokenClaims":
        return TokenClaims(user_id=self.user_id, is_admin=self.is_admin, email=self.email)


@dataclass(frozen=True)
class TokenPair:
    token: str
    refresh_token: str


class TokenService:
    def __init__(
        self,
        secret: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
    ) -> None:
        self._secret = secret
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def _sign(self, claims: TokenClaims, token_type: str, ttl: timedelta) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": claims.user_id,
            "is_admin": claims.is_admin,
            "email": claims.email,
            "type": token_type,
            "iat": now,
            "exp": now + ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def sign_access_token(self, claims: TokenClaims) -> str:
        return self._sign(claims, ACCESS, self.access_ttl)

    def sign_refresh_token(self, claims: TokenClaims) -> str:
        return self._sign(claims, REFRESH, self.refresh_ttl)

    def issue_pair(self, claims: TokenClaims) -> TokenPair:
        return TokenPair(
            token=self.sign_access_token(claims),
            refresh_token=self.sign_refresh_token(claims),
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _verify(self, token: Any, token_type: str) -> Optional[TokenClaims]:
        if not isinstance(token, str) or not token:
            return None
        try:
            payload = jwt.decode(token, self._secret, algorithms=[ALGORITHM])
        except JWTError:
            return None
        return _claims_from_payload(payload, token_type)

    def verify_token(self, token: Any) -> Optional[TokenClaims]:
        """Claims of a valid access token, else None."""
        return self._verify(token, ACCESS)

    def verify_refresh_token(self, token: Any) -> Optional[TokenClaims]:
        """Claims of a valid refresh token, else None."""
        return self._verify(token, REFRESH)


def _claims_from_payload(payload: Dict[str, Any], token_type: str) -> Optional[TokenClaims]:
    if payload.get("type") != token_type:
        return None
    user_id = payload.get("sub")
    is_admin = payload.get("is_admin")
    email = payload.get("email")
    iat = payload.get("iat")
    exp = payload.get("exp")
    if not isinstance(user_id, str) or not user_id:
        return None
    if not isinstance(is_admin, bool) or not isinstance(email, str):
        return None
    if not isinstance(exp, (int, float)) or not isinstance(iat, (int, float)):
        return None
    return TokenClaims(
        user_id=user_id,
        is_admin=is_admin,
        email=email,
        issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
        expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
    )


def is_token_expired(token: Any) -> bool:
    """
    True when the token's ``exp`` is in the past or cannot be read.
    The signature is NOT checked; use only for client-side refresh decisions.
    """
    if not isinstance(token, str) or not token:
        return True
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return True
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        return True
    return exp < datetime.now(timezone.utc).timestamp()


def get_token_from_request(request: HTTPConnection) -> Optional[str]:
    """The substring after ``Bearer `` in the Authorization header, else None."""
    header = request.headers.get("authorization")
    if not header or not header.startswith(_BEARER_PREFIX):
        return None
    return header[len(_BEARER_PREFIX):]
