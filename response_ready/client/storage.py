"""
storage.py — Durable client key/value slots shared between tabs
===============================================================
One ``ClientStorage`` models the browser's persistent storage; each tab
(or client instance) talks to it through its own ``TabStorage`` handle.
Like browser storage events, a mutation made through one handle is
delivered to the listeners of every *other* handle, which is how a
login or logout in one tab reaches the rest.
"""
from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger("response_ready.client.storage")

AUTH_TOKEN_KEY = "auth-token"
REFRESH_TOKEN_KEY = "refresh-token"
CURRENT_USER_KEY = "current-user"

SESSION_KEYS = (AUTH_TOKEN_KEY, REFRESH_TOKEN_KEY, CURRENT_USER_KEY)


@dataclass(frozen=True)
class StorageEvent:
    key: str
    old_value: Optional[str]
    new_value: Optional[str]


StorageListener = Callable[[StorageEvent], None]


class ClientStorage:
    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._listeners: Dict[int, Tuple[int, StorageListener]] = {}
        self._ids = itertools.count(1)
        self._lock = RLock()

    def tab(self) -> "TabStorage":
        """A new handle with its own identity for event delivery."""
        return TabStorage(self, next(self._ids))

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def _write(self, key: str, value: Optional[str], origin: int) -> None:
        with self._lock:
            old = self._data.get(key)
            if old == value:
                return
            if value is None:
                del self._data[key]
            else:
                self._data[key] = value
            targets: List[StorageListener] = [
                listener for tab_id, listener in self._listeners.values() if tab_id != origin
            ]
        event = StorageEvent(key=key, old_value=old, new_value=value)
        for listener in targets:
            try:
                listener(event)
            except Exception:
                logger.exception("Storage listener failed for key %s", key)

    def _subscribe(self, tab_id: int, listener: StorageListener) -> Callable[[], None]:
        with self._lock:
            token = next(self._ids)
            self._listeners[token] = (tab_id, listener)

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(token, None)

        return unsubscribe


class TabStorage:
    """One tab's view of a shared ``ClientStorage``."""

    def __init__(self, storage: ClientStorage, tab_id: int) -> None:
        self._storage = storage
        self.tab_id = tab_id

    def get(self, key: str) -> Optional[str]:
        return self._storage.get(key)

    def set(self, key: str, value: str) -> None:
        self._storage._write(key, value, self.tab_id)

    def remove(self, key: str) -> None:
        self._storage._write(key, None, self.tab_id)

    def clear_session(self) -> None:
        for key in SESSION_KEYS:
            self.remove(key)

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        """Receive changes made by other tabs. Returns an unsubscribe callable."""
        return self._storage._subscribe(self.tab_id, listener)
