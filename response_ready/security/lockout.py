"""
lockout.py — Brute-force lockout per login identifier
=====================================================
Failed logins are counted per normalized identifier (the lower-cased
email). Reaching the threshold locks the identifier for a fixed
duration, and any further failure while locked restarts the lock.

The tracker never consults the account table: a failure for an email
that has no account is counted exactly like a wrong password, so the
lockout behaviour cannot be used to discover which emails exist.

Credential checks go through ``begin_attempt``, which reserves a slot
under the tracker lock before the password is evaluated. Recorded
failures plus in-flight attempts never exceed the threshold, so a burst
of concurrent logins cannot get more passwords evaluated than a
sequential caller would, and a success that settles after a lock was
set is refused rather than clearing it.

State lives in two counters of the injected ``CounterStore``:
``lockout:attempts:<id>`` (expires one reset window after the first
failure of a run, or together with the lock once locked) and
``lockout:until:<id>`` (expires when the lock ends). In-flight
reservations are process-local and vanish once settled.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Optional

from .counter_store import CounterStore

logger = logging.getLogger("response_ready.security.lockout")


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int = 5
    lock_duration_seconds: float = 15 * 60
    reset_window_seconds: float = 60 * 60


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    locked_until: Optional[float] = None
    remaining_attempts: int = 0


@dataclass(frozen=True)
class LockoutRecord:
    identifier: str
    failed_attempts: int
    locked_until: Optional[float]


class LoginAttempt:
    """
    One reserved credential check. Settle it exactly once with ``fail()``
    or ``succeed()``; leaving the ``with`` block unsettled releases the
    slot without counting a failure.
    """

    def __init__(self, tracker: "LockoutTracker", identifier: str, status: LockoutStatus) -> None:
        self._tracker = tracker
        self.identifier = identifier
        self.status = status
        # A refused attempt holds no slot.
        self.settled = status.locked

    @property
    def admitted(self) -> bool:
        return not self.status.locked

    def fail(self) -> LockoutStatus:
        self._settle()
        self.status = self._tracker._settle_failure(self.identifier)
        return self.status

    def succeed(self) -> LockoutStatus:
        """Clear the record, unless a lock landed while this attempt was in flight."""
        self._settle()
        self.status = self._tracker._settle_success(self.identifier)
        return self.status

    def release(self) -> None:
        if not self.settled:
            self.settled = True
            self._tracker._release(self.identifier)

    def _settle(self) -> None:
        if self.settled:
            raise RuntimeError(f"Login attempt for {self.identifier} already settled")
        self.settled = True

    def __enter__(self) -> "LoginAttempt":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()


class LockoutTracker:
    def __init__(self, store: CounterStore, policy: LockoutPolicy, clock: Callable[[], float]) -> None:
        self._store = store
        self.policy = policy
        self._clock = clock
        # Serialises the read-modify-write sequences below across requests.
        self._lock = Lock()
        self._in_flight: Dict[str, int] = {}

    @staticmethod
    def _attempts_key(identifier: str) -> str:
        return f"lockout:attempts:{identifier}"

    @staticmethod
    def _until_key(identifier: str) -> str:
        return f"lockout:until:{identifier}"

    # ------------------------------------------------------------------
    # Internal helpers (caller holds the lock)
    # ------------------------------------------------------------------

    def _locked_until(self, identifier: str) -> Optional[float]:
        entry = self._store.get_entry(self._until_key(identifier))
        return entry.expires_at if entry else None

    def _failed_attempts(self, identifier: str) -> int:
        return self._store.get(self._attempts_key(identifier)) or 0

    def _lock_identifier(self, identifier: str, attempts: int) -> float:
        duration = self.policy.lock_duration_seconds
        self._store.set_with_ttl(self._until_key(identifier), 1, duration)
        self._store.set_with_ttl(self._attempts_key(identifier), attempts, duration)
        return self._locked_until(identifier) or self._clock() + duration

    def _record_failure(self, identifier: str) -> LockoutStatus:
        attempts = self._store.increment(
            self._attempts_key(identifier), self.policy.reset_window_seconds,
        )
        already_locked = self._locked_until(identifier) is not None

        if already_locked or attempts >= self.policy.threshold:
            locked_until = self._lock_identifier(identifier, attempts)
            if already_locked:
                logger.warning("Failed login while locked; lock restarted for %s", identifier)
            else:
                logger.warning("Identifier %s locked after %d failed attempts", identifier, attempts)
            return LockoutStatus(locked=True, locked_until=locked_until, remaining_attempts=0)

        return LockoutStatus(locked=False, remaining_attempts=self.policy.threshold - attempts)

    def _clear(self, identifier: str) -> None:
        self._store.delete(self._attempts_key(identifier))
        self._store.delete(self._until_key(identifier))

    def _drop_in_flight(self, identifier: str) -> None:
        pending = self._in_flight.get(identifier, 0) - 1
        if pending > 0:
            self._in_flight[identifier] = pending
        else:
            self._in_flight.pop(identifier, None)

    # ------------------------------------------------------------------
    # Reserved attempts
    # ------------------------------------------------------------------

    def begin_attempt(self, identifier: str) -> LoginAttempt:
        """
        Reserve a credential check. Refused (``attempt.admitted`` is False)
        while locked, or while recorded failures plus checks already in
        flight reach the threshold; the latter reports the lock those
        in-flight checks would set if they all failed.
        """
        with self._lock:
            locked_until = self._locked_until(identifier)
            if locked_until is not None:
                return LoginAttempt(self, identifier, LockoutStatus(locked=True, locked_until=locked_until))

            pending = self._in_flight.get(identifier, 0)
            used = self._failed_attempts(identifier) + pending
            if used >= self.policy.threshold:
                logger.warning(
                    "Refusing login for %s: %d attempt(s) already in flight", identifier, pending,
                )
                return LoginAttempt(self, identifier, LockoutStatus(
                    locked=True,
                    locked_until=self._clock() + self.policy.lock_duration_seconds,
                ))

            self._in_flight[identifier] = pending + 1
            return LoginAttempt(self, identifier, LockoutStatus(
                locked=False, remaining_attempts=self.policy.threshold - used,
            ))

    def _settle_failure(self, identifier: str) -> LockoutStatus:
        with self._lock:
            self._drop_in_flight(identifier)
            return self._record_failure(identifier)

    def _settle_success(self, identifier: str) -> LockoutStatus:
        with self._lock:
            self._drop_in_flight(identifier)
            locked_until = self._locked_until(identifier)
            if locked_until is not None:
                return LockoutStatus(locked=True, locked_until=locked_until)
            self._clear(identifier)
            return LockoutStatus(locked=False, remaining_attempts=self.policy.threshold)

    def _release(self, identifier: str) -> None:
        with self._lock:
            self._drop_in_flight(identifier)

    def in_flight(self, identifier: str) -> int:
        with self._lock:
            return self._in_flight.get(identifier, 0)

    # ------------------------------------------------------------------
    # Direct operations
    # ------------------------------------------------------------------

    def is_account_locked(self, identifier: str) -> LockoutStatus:
        with self._lock:
            locked_until = self._locked_until(identifier)
            if locked_until is not None:
                return LockoutStatus(locked=True, locked_until=locked_until, remaining_attempts=0)
            return LockoutStatus(
                locked=False,
                remaining_attempts=max(0, self.policy.threshold - self._failed_attempts(identifier)),
            )

    def record_failed_attempt(self, identifier: str) -> LockoutStatus:
        with self._lock:
            return self._record_failure(identifier)

    def clear_failed_attempts(self, identifier: str) -> None:
        with self._lock:
            self._clear(identifier)

    def get_remaining_attempts(self, identifier: str) -> int:
        return self.is_account_locked(identifier).remaining_attempts

    def get_record(self, identifier: str) -> LockoutRecord:
        with self._lock:
            return LockoutRecord(
                identifier=identifier,
                failed_attempts=self._failed_attempts(identifier),
                locked_until=self._locked_until(identifier),
            )
