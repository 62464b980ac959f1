"""Client-side companion: token storage, session timeouts and an httpx API client."""
from __future__ import annotations

from .api_client import ClientAuthError, ResponseReadyClient
from .session_monitor import (
    SessionActivityMonitor,
    SessionClock,
    SessionEvaluation,
    SessionPhase,
    SessionTimeoutPolicy,
    evaluate_session,
)
from .storage import ClientStorage, StorageEvent, TabStorage

__all__ = [
    "ClientAuthError",
    "ClientStorage",
    "ResponseReadyClient",
    "SessionActivityMonitor",
    "SessionClock",
    "SessionEvaluation",
    "SessionPhase",
    "SessionTimeoutPolicy",
    "StorageEvent",
    "TabStorage",
    "evaluate_session",
]
