"""
Request-security services shared by every endpoint.

``build_security`` wires the counter store, rate limiter, lockout
tracker and token service from settings into one ``SecurityServices``
container, which the app keeps on ``app.state.security``.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, Optional, Union

from ..auth.tokens import TokenService
from ..config import Settings
from .counter_store import CounterStore, InMemoryCounterStore
from .lockout import LockoutPolicy, LockoutTracker
from .rate_limiter import RATE_LIMITS, RateLimitPolicy, RateLimiter, policies_from_config


@dataclass
class SecurityServices:
    store: CounterStore
    rate_limiter: RateLimiter
    lockout: LockoutTracker
    tokens: TokenService
    rate_limits: Dict[str, RateLimitPolicy] = field(default_factory=lambda: dict(RATE_LIMITS))
    clock: Callable[[], float] = time.time

    def resolve_policy(self, policy: Union[str, RateLimitPolicy]) -> RateLimitPolicy:
        if isinstance(policy, RateLimitPolicy):
            return policy
        try:
            return self.rate_limits[policy]
        except KeyError:
            raise KeyError(f"Unknown rate limit preset '{policy}'") from None


def build_security(
    settings: Settings,
    *,
    clock: Callable[[], float] = time.time,
    store: Optional[CounterStore] = None,
) -> SecurityServices:
    if store is None:
        store = InMemoryCounterStore(
            clock=clock,
            sweep_interval_seconds=settings.counter_sweep_interval_seconds,
        )
    lockout_policy = LockoutPolicy(
        threshold=settings.lockout_threshold,
        lock_duration_seconds=settings.lockout_duration_minutes * 60,
        reset_window_seconds=settings.lockout_reset_window_minutes * 60,
    )
    return SecurityServices(
        store=store,
        rate_limiter=RateLimiter(store, clock),
        lockout=LockoutTracker(store, lockout_policy, clock),
        tokens=TokenService(
            settings.jwt_secret,
            access_ttl=timedelta(minutes=settings.access_token_expire_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
        ),
        rate_limits=policies_from_config(settings.rate_limits),
        clock=clock,
    )
