"""
Tests for fixed-window rate limiting and client identification.

Run with: pytest tests/ -v
"""
from __future__ import annotations

import json

from starlette.requests import Request

from conftest import FakeClock
from response_ready.security.counter_store import InMemoryCounterStore
from response_ready.security.rate_limiter import (
    RATE_LIMIT_MESSAGE,
    RATE_LIMITS,
    RateLimitPolicy,
    RateLimiter,
    create_rate_limit_middleware,
    get_client_identifier,
    policies_from_config,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(InMemoryCounterStore(clock=clock), clock)


def _request(headers: dict = None, client=("10.0.0.9", 1234)) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/auth/login",
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
        "server": ("testserver", 80),
        "scheme": "http",
    }
    return Request(scope)


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------

def test_nth_request_allowed_with_zero_remaining_and_next_denied():
    clock = FakeClock()
    limiter = _limiter(clock)
    policy = RateLimitPolicy(max_requests=3, window_ms=60_000, name="t")

    remaining = [limiter.check_rate_limit("ip:1", policy).remaining for _ in range(3)]
    assert remaining == [2, 1, 0]

    denied = limiter.check_rate_limit("ip:1", policy)
    assert denied.allowed is False
    assert denied.remaining == 0
    assert denied.limit == 3


def test_window_reopens_after_expiry():
    clock = FakeClock()
    limiter = _limiter(clock)
    policy = RateLimitPolicy(max_requests=1, window_ms=10_000, name="t")

    assert limiter.check_rate_limit("ip:1", policy).allowed
    assert not limiter.check_rate_limit("ip:1", policy).allowed
    clock.advance(10.5)
    result = limiter.check_rate_limit("ip:1", policy)
    assert result.allowed
    assert result.remaining == 0


def test_reset_at_is_window_start_plus_window():
    clock = FakeClock()
    limiter = _limiter(clock)
    policy = RateLimitPolicy(max_requests=5, window_ms=60_000, name="t")
    start = clock.now
    limiter.check_rate_limit("ip:1", policy)
    clock.advance(20)
    assert limiter.check_rate_limit("ip:1", policy).reset_at == start + 60


def test_identifiers_and_policies_are_counted_separately():
    clock = FakeClock()
    limiter = _limiter(clock)
    strict = RateLimitPolicy(max_requests=1, window_ms=60_000, name="strict")
    loose = RateLimitPolicy(max_requests=1, window_ms=60_000, name="loose")

    assert limiter.check_rate_limit("ip:1", strict).allowed
    assert limiter.check_rate_limit("ip:2", strict).allowed
    assert limiter.check_rate_limit("ip:1", loose).allowed
    assert not limiter.check_rate_limit("ip:1", strict).allowed


def test_presets_match_configuration():
    assert RATE_LIMITS["auth"].max_requests == 5
    assert RATE_LIMITS["auth"].window_ms == 15 * 60 * 1000
    assert RATE_LIMITS["api"].max_requests == 100
    assert RATE_LIMITS["read"].max_requests == 200

    built = policies_from_config({"x": {"max_requests": 2, "window_ms": 500}})
    assert built["x"] == RateLimitPolicy(max_requests=2, window_ms=500, name="x")


# ---------------------------------------------------------------------------
# Client identity
# ---------------------------------------------------------------------------

def test_user_id_wins_over_headers():
    req = _request({"X-Forwarded-For": "1.2.3.4"})
    assert get_client_identifier(req, "42") == "user:42"


def test_first_forwarded_for_entry_is_used():
    req = _request({"X-Forwarded-For": " 1.2.3.4 , 5.6.7.8", "X-Real-IP": "9.9.9.9"})
    assert get_client_identifier(req) == "ip:1.2.3.4"


def test_real_ip_used_without_forwarded_for():
    req = _request({"X-Real-IP": "9.9.9.9"})
    assert get_client_identifier(req) == "ip:9.9.9.9"


def test_socket_peer_then_unknown():
    assert get_client_identifier(_request()) == "ip:10.0.0.9"
    assert get_client_identifier(_request(client=None)) == "ip:unknown"


# ---------------------------------------------------------------------------
# Middleware form
# ---------------------------------------------------------------------------

def test_middleware_rejection_carries_headers_and_retry_after():
    clock = FakeClock()
    limiter = _limiter(clock)
    policy = RateLimitPolicy(max_requests=1, window_ms=60_000, name="t")
    check = create_rate_limit_middleware(limiter, policy, clock)

    first = check(_request())
    assert first.allowed and first.remaining == 0 and first.response is None

    clock.advance(15)
    second = check(_request())
    assert second.allowed is False
    resp = second.response
    assert resp.status_code == 429
    body = json.loads(resp.body)
    assert body == {"error": RATE_LIMIT_MESSAGE, "retryAfter": 45}
    assert resp.headers["Retry-After"] == "45"
    assert resp.headers["X-RateLimit-Limit"] == "1"
    assert resp.headers["X-RateLimit-Remaining"] == "0"
    assert "X-RateLimit-Reset" in resp.headers
