"""
session_monitor.py — Client idle and absolute session timeouts
==============================================================
A small state machine:

    ACTIVE -> WARNING_IDLE | WARNING_SESSION_MAX -> ACTIVE     (user activity)
                                                 -> EXPIRED    (timeout, forced logout)

Every transition condition is a pure function of two timestamps (last
activity, session start) and the ``SessionTimeoutPolicy``; the monitor
only advances the machine on ``tick()``. A single recurring timer calls
``tick()`` while a session is live and is cancelled on logout or
``stop()``.

The monitor also listens to the shared client storage: another tab
removing the access token logs this tab out, and another tab signing
in (a token where there was none, or a different user) starts a fresh
session here. A refreshed token replacing a live one leaves both clocks
alone, so rotation in any tab never extends the absolute limit.
"""
from __future__ import annotations

import json
import logging
import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from .storage import AUTH_TOKEN_KEY, CURRENT_USER_KEY, StorageEvent, TabStorage

logger = logging.getLogger("response_ready.client.session")


class SessionPhase(str, Enum):
    ACTIVE = "active"
    WARNING_IDLE = "warning_idle"
    WARNING_SESSION_MAX = "warning_session_max"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SessionTimeoutPolicy:
    idle_timeout_minutes: float = 30
    max_session_hours: float = 8
    warning_before_timeout_minutes: float = 5

    @property
    def idle_timeout_seconds(self) -> float:
        return self.idle_timeout_minutes * 60

    @property
    def max_session_seconds(self) -> float:
        return self.max_session_hours * 3600

    @property
    def warning_seconds(self) -> float:
        return self.warning_before_timeout_minutes * 60

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SessionTimeoutPolicy":
        """Build from the ``/auth/session-policy`` response."""
        defaults = cls()
        return cls(
            idle_timeout_minutes=payload.get("idleTimeoutMinutes", defaults.idle_timeout_minutes),
            max_session_hours=payload.get("maxSessionHours", defaults.max_session_hours),
            warning_before_timeout_minutes=payload.get(
                "warningBeforeTimeoutMinutes", defaults.warning_before_timeout_minutes,
            ),
        )


@dataclass
class SessionClock:
    last_activity_at: float
    session_started_at: float
    warning_shown: bool = False

    @classmethod
    def start(cls, now: float) -> "SessionClock":
        return cls(last_activity_at=now, session_started_at=now)


@dataclass(frozen=True)
class SessionEvaluation:
    phase: SessionPhase
    reason: Optional[str] = None  # "idle" | "session"
    minutes_remaining: int = 0


# ---------------------------------------------------------------------------
# Pure transition conditions
# ---------------------------------------------------------------------------

def idle_seconds(now: float, clock: SessionClock) -> float:
    return now - clock.last_activity_at


def session_seconds(now: float, clock: SessionClock) -> float:
    return now - clock.session_started_at


def is_idle(now: float, clock: SessionClock, policy: SessionTimeoutPolicy) -> bool:
    return idle_seconds(now, clock) > policy.idle_timeout_seconds


def is_session_expired(now: float, clock: SessionClock, policy: SessionTimeoutPolicy) -> bool:
    return session_seconds(now, clock) > policy.max_session_seconds


def evaluate_session(now: float, clock: SessionClock, policy: SessionTimeoutPolicy) -> SessionEvaluation:
    if is_session_expired(now, clock, policy):
        return SessionEvaluation(SessionPhase.EXPIRED, reason="session")
    if is_idle(now, clock, policy):
        return SessionEvaluation(SessionPhase.EXPIRED, reason="idle")

    until_idle = policy.idle_timeout_seconds - idle_seconds(now, clock)
    if 0 < until_idle <= policy.warning_seconds:
        return SessionEvaluation(
            SessionPhase.WARNING_IDLE, reason="idle", minutes_remaining=math.ceil(until_idle / 60),
        )

    until_max = policy.max_session_seconds - session_seconds(now, clock)
    if 0 < until_max <= policy.warning_seconds:
        return SessionEvaluation(
            SessionPhase.WARNING_SESSION_MAX, reason="session", minutes_remaining=math.ceil(until_max / 60),
        )

    return SessionEvaluation(SessionPhase.ACTIVE)


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

class SessionActivityMonitor:
    def __init__(
        self,
        storage: TabStorage,
        policy: Optional[SessionTimeoutPolicy] = None,
        *,
        clock: Callable[[], float] = time.time,
        check_interval_seconds: float = 30.0,
        auto_schedule: bool = True,
        on_warning: Optional[Callable[[SessionEvaluation], None]] = None,
        on_expired: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.storage = storage
        self.policy = policy or SessionTimeoutPolicy()
        self._now = clock
        self._interval = check_interval_seconds
        self._auto_schedule = auto_schedule
        self._on_warning = on_warning
        self._on_expired = on_expired

        self._lock = threading.RLock()
        self._timer: Optional[threading.Timer] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.clock: Optional[SessionClock] = None
        self.phase = SessionPhase.EXPIRED

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._timer is not None

    def start(self) -> None:
        """Begin (or restart) a session now. Call after login."""
        with self._lock:
            if self._unsubscribe is None:
                self._unsubscribe = self.storage.subscribe(self._on_storage_event)
            self.clock = SessionClock.start(self._now())
            self.phase = SessionPhase.ACTIVE
            if self._auto_schedule:
                self._schedule()

    reset = start

    def stop(self) -> None:
        """Tear down the timer and the storage subscription (unmount)."""
        with self._lock:
            self._cancel_timer()
            if self._unsubscribe is not None:
                self._unsubscribe()
                self._unsubscribe = None

    def end_session(self, reason: str = "logout") -> None:
        """Forced logout: clear stored credentials and stop ticking."""
        with self._lock:
            if self.phase is SessionPhase.EXPIRED and self.clock is None:
                return
            self._cancel_timer()
            self.phase = SessionPhase.EXPIRED
            self.clock = None
        self.storage.clear_session()
        logger.info("Session ended (%s)", reason)
        if self._on_expired:
            self._on_expired(reason)

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    def record_activity(self) -> None:
        """Any tracked user interaction. Also how a user extends a warned session."""
        with self._lock:
            if self.clock is None:
                return
            self.clock.last_activity_at = self._now()
            self.clock.warning_shown = False
            if self.phase in (SessionPhase.WARNING_IDLE, SessionPhase.WARNING_SESSION_MAX):
                self.phase = SessionPhase.ACTIVE

    extend = record_activity

    # ------------------------------------------------------------------
    # State machine step
    # ------------------------------------------------------------------

    def tick(self) -> SessionEvaluation:
        with self._lock:
            if self.clock is None:
                return SessionEvaluation(SessionPhase.EXPIRED)
            evaluation = evaluate_session(self._now(), self.clock, self.policy)

            if evaluation.phase is SessionPhase.EXPIRED:
                expire = True
                warn = False
            else:
                expire = False
                warn = evaluation.phase is not SessionPhase.ACTIVE and not self.clock.warning_shown
                if evaluation.phase is SessionPhase.ACTIVE:
                    self.phase = SessionPhase.ACTIVE
                elif warn:
                    self.clock.warning_shown = True
                    self.phase = evaluation.phase

        if expire:
            self.end_session(evaluation.reason or "idle")
        elif warn and self._on_warning:
            self._on_warning(evaluation)
        return evaluation

    # ------------------------------------------------------------------
    # Timer (caller holds the lock)
    # ------------------------------------------------------------------

    def _schedule(self) -> None:
        self._cancel_timer()
        timer = threading.Timer(self._interval, self._run_tick)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _run_tick(self) -> None:
        with self._lock:
            self._timer = None
        evaluation = self.tick()
        with self._lock:
            if evaluation.phase is not SessionPhase.EXPIRED and self.clock is not None and self._timer is None:
                self._schedule()

    # ------------------------------------------------------------------
    # Other tabs
    # ------------------------------------------------------------------

    def _on_storage_event(self, event: StorageEvent) -> None:
        if event.key == CURRENT_USER_KEY:
            self._on_user_changed(event)
            return
        if event.key != AUTH_TOKEN_KEY:
            return
        if event.new_value is None:
            with self._lock:
                if self.clock is None:
                    return
                self._cancel_timer()
                self.phase = SessionPhase.EXPIRED
                self.clock = None
            logger.info("Logged out in another tab")
            if self._on_expired:
                self._on_expired("logout")
        elif event.old_value is None:
            logger.info("Logged in from another tab; session restarted")
            self.start()
        # A token replacing a token is a refresh: the absolute limit keeps running.

    def _on_user_changed(self, event: StorageEvent) -> None:
        old_id, new_id = _user_id(event.old_value), _user_id(event.new_value)
        if new_id is None or old_id is None or new_id == old_id:
            return
        logger.info("Another tab signed in as a different user; session restarted")
        self.start()


def _user_id(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    try:
        user = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(user, dict) or user.get("id") is None:
        return None
    return str(user["id"])
