"""
rate_limiter.py — Fixed-window request limits per client
========================================================
Each (policy, client) pair owns one counter in the injected
``CounterStore``. The first request of a window creates the counter with
a TTL of ``window_ms``; later requests increment it. Once the TTL lapses
the store reports the key as absent and the next request opens a fresh
window, so there is no explicit reset path.

Client identity is ``user:<id>`` when the caller is known, otherwise
``ip:<address>`` taken from proxy headers, then the socket peer, then
the literal ``ip:unknown``. The socket peer sits before the fallback
because clients that reach the service directly send no proxy headers,
and would otherwise all share the single ``ip:unknown`` bucket.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from .counter_store import CounterStore

logger = logging.getLogger("response_ready.security.rate_limit")

RATE_LIMIT_MESSAGE = "Too many requests. Please try again later."
REMAINING_HEADER = "X-RateLimit-Remaining"


@dataclass(frozen=True)
class RateLimitPolicy:
    max_requests: int
    window_ms: int
    name: str = "default"

    @property
    def window_seconds(self) -> float:
        return self.window_ms / 1000


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    limit: int


RATE_LIMITS: Dict[str, RateLimitPolicy] = {
    # Strict limits for authentication endpoints
    "auth": RateLimitPolicy(max_requests=5, window_ms=15 * 60 * 1000, name="auth"),
    "api": RateLimitPolicy(max_requests=100, window_ms=60 * 1000, name="api"),
    # Lenient limits for read-only endpoints
    "read": RateLimitPolicy(max_requests=200, window_ms=60 * 1000, name="read"),
}


def policies_from_config(config: Mapping[str, Mapping[str, int]]) -> Dict[str, RateLimitPolicy]:
    """Build named policies from the ``rate_limits`` settings mapping."""
    return {
        name: RateLimitPolicy(
            max_requests=int(preset["max_requests"]),
            window_ms=int(preset["window_ms"]),
            name=name,
        )
        for name, preset in config.items()
    }


class RateLimiter:
    def __init__(self, store: CounterStore, clock: Callable[[], float]) -> None:
        self._store = store
        self._clock = clock

    def check_rate_limit(self, identifier: str, policy: RateLimitPolicy) -> RateLimitResult:
        """Count this request against ``identifier`` and decide admission."""
        key = f"rl:{policy.name}:{identifier}"
        count = self._store.increment(key, policy.window_seconds)
        entry = self._store.get_entry(key)
        reset_at = entry.expires_at if entry else self._clock() + policy.window_seconds

        if count > policy.max_requests:
            return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at, limit=policy.max_requests)
        return RateLimitResult(
            allowed=True,
            remaining=policy.max_requests - count,
            reset_at=reset_at,
            limit=policy.max_requests,
        )


# ---------------------------------------------------------------------------
# Client identity
# ---------------------------------------------------------------------------

def get_client_ip(request: Request) -> Optional[str]:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return None


def get_client_identifier(request: Request, user_id: Optional[str] = None) -> str:
    if user_id:
        return f"user:{user_id}"
    return f"ip:{get_client_ip(request) or 'unknown'}"


# ---------------------------------------------------------------------------
# Middleware form
# ---------------------------------------------------------------------------

@dataclass
class RateLimitOutcome:
    allowed: bool
    remaining: int
    response: Optional[JSONResponse] = None


def rate_limit_exceeded_response(result: RateLimitResult, now: float) -> JSONResponse:
    retry_after = max(0, math.ceil(result.reset_at - now))
    reset_iso = datetime.fromtimestamp(result.reset_at, tz=timezone.utc).isoformat()
    return JSONResponse(
        status_code=429,
        content={"error": RATE_LIMIT_MESSAGE, "retryAfter": retry_after},
        headers={
            "X-RateLimit-Limit": str(result.limit),
            REMAINING_HEADER: str(result.remaining),
            "X-RateLimit-Reset": reset_iso,
            "Retry-After": str(retry_after),
        },
    )


def create_rate_limit_middleware(
    limiter: RateLimiter,
    policy: RateLimitPolicy,
    clock: Callable[[], float],
) -> Callable[[Request, Optional[str]], RateLimitOutcome]:
    """
    Bind a policy to a limiter. The returned callable admits or rejects a
    request; on rejection the outcome carries a ready-to-send 429.
    """

    def check(request: Request, user_id: Optional[str] = None) -> RateLimitOutcome:
        identifier = get_client_identifier(request, user_id)
        result = limiter.check_rate_limit(identifier, policy)
        if result.allowed:
            return RateLimitOutcome(allowed=True, remaining=result.remaining)
        logger.warning(
            "Rate limit '%s' exceeded for %s on %s %s",
            policy.name, identifier, request.method, request.url.path,
        )
        return RateLimitOutcome(
            allowed=False,
            remaining=0,
            response=rate_limit_exceeded_response(result, clock()),
        )

    return check
