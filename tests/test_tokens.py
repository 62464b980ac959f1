"""
Tests for access/refresh token issuance and verification.

Run with: pytest tests/ -v
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import jwt
from starlette.requests import Request

from response_ready.auth.tokens import (
    ALGORITHM,
    TokenClaims,
    TokenService,
    get_token_from_request,
    is_token_expired,
)

SECRET = "test-secret-with-at-least-thirty-two-chars"

_claims = TokenClaims(user_id="7", is_admin=False, email="agent@example.com")


def _request(authorization: str = None) -> Request:
    headers = [(b"authorization", authorization.encode())] if authorization is not None else []
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers})


def test_access_token_round_trip():
    svc = TokenService(SECRET)
    claims = svc.verify_token(svc.sign_access_token(_claims))
    assert claims is not None
    assert claims.identity() == _claims
    assert claims.expires_at - claims.issued_at == timedelta(minutes=15)


def test_refresh_token_lasts_seven_days():
    svc = TokenService(SECRET)
    claims = svc.verify_refresh_token(svc.sign_refresh_token(_claims))
    assert claims.identity() == _claims
    assert claims.expires_at - claims.issued_at == timedelta(days=7)


def test_token_types_are_not_interchangeable():
    svc = TokenService(SECRET)
    pair = svc.issue_pair(_claims)
    assert svc.verify_token(pair.refresh_token) is None
    assert svc.verify_refresh_token(pair.token) is None


def test_tampered_token_is_rejected():
    svc = TokenService(SECRET)
    token = svc.sign_access_token(_claims)
    head, _, sig = token.split(".")
    forged = svc.sign_access_token(TokenClaims(user_id="1", is_admin=True, email="x@example.com"))
    forged_payload = forged.split(".")[1]
    assert svc.verify_token(f"{head}.{forged_payload}.{sig}") is None
    assert TokenService("another-secret-that-is-also-long-enough").verify_token(token) is None


def test_garbage_and_missing_tokens_return_none():
    svc = TokenService(SECRET)
    for bad in (None, "", "not-a-jwt", "a.b.c", 12345):
        assert svc.verify_token(bad) is None


def test_expired_token_is_rejected():
    svc = TokenService(SECRET, access_ttl=timedelta(seconds=-1))
    token = svc.sign_access_token(_claims)
    assert svc.verify_token(token) is None
    assert is_token_expired(token)


def test_token_missing_claims_is_rejected():
    now = datetime.now(timezone.utc)
    token = jwt.encode(
        {"sub": "7", "type": "access", "iat": now, "exp": now + timedelta(minutes=5)},
        SECRET, algorithm=ALGORITHM,
    )
    assert TokenService(SECRET).verify_token(token) is None


def test_is_token_expired_for_fresh_and_unreadable_tokens():
    svc = TokenService(SECRET)
    assert not is_token_expired(svc.sign_access_token(_claims))
    assert is_token_expired("garbage")
    assert is_token_expired(None)


def test_bearer_extraction():
    assert get_token_from_request(_request("Bearer abc.def.ghi")) == "abc.def.ghi"
    assert get_token_from_request(_request("Basic Zm9vOmJhcg==")) is None
    assert get_token_from_request(_request("bearer abc")) is None
    assert get_token_from_request(_request()) is None
