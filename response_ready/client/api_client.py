"""
api_client.py — httpx client for the Response Ready API
=======================================================
Keeps the access token, refresh token and current-user snapshot in a
``TabStorage``, sends ``Authorization: Bearer <token>`` on every call,
and transparently refreshes once when the access token has expired or
the server answers 401.

    storage = ClientStorage()
    client = ResponseReadyClient("http://localhost:8000", storage=storage.tab())
    user = client.login("agent@example.com", "S3cure!Passw0rd")
    client.me()

Pass a ``SessionActivityMonitor`` to have login start the idle/absolute
session clock and logout stop it. API traffic does not count as user
activity: background calls never postpone the idle timeout, only the
monitor's ``record_activity()`` does.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import httpx

from ..auth.tokens import is_token_expired
from .session_monitor import SessionActivityMonitor, SessionTimeoutPolicy
from .storage import (
    AUTH_TOKEN_KEY,
    CURRENT_USER_KEY,
    REFRESH_TOKEN_KEY,
    ClientStorage,
    TabStorage,
)

logger = logging.getLogger("response_ready.client")

_TIMEOUT = 10.0


class ClientAuthError(RuntimeError):
    """Raised when the API rejects a credential operation."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _error_message(resp: httpx.Response, default: str) -> str:
    try:
        data = resp.json()
    except ValueError:
        return default
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"]
    return default


class ResponseReadyClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        storage: Optional[TabStorage] = None,
        http: Optional[httpx.Client] = None,
        monitor: Optional[SessionActivityMonitor] = None,
        timeout: float = _TIMEOUT,
    ) -> None:
        self.storage = storage or ClientStorage().tab()
        self._http = http or httpx.Client(base_url=base_url, timeout=timeout)
        self._owns_http = http is None
        self.monitor = monitor

    def close(self) -> None:
        if self.monitor is not None:
            self.monitor.stop()
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "ResponseReadyClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Stored session
    # ------------------------------------------------------------------

    @property
    def token(self) -> Optional[str]:
        return self.storage.get(AUTH_TOKEN_KEY)

    def current_user(self) -> Optional[Dict[str, Any]]:
        raw = self.storage.get(CURRENT_USER_KEY)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable current-user snapshot")
            self.storage.remove(CURRENT_USER_KEY)
            return None

    def is_authenticated(self) -> bool:
        return self.current_user() is not None and self.token is not None

    def _store_envelope(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if data.get("token"):
            self.storage.set(AUTH_TOKEN_KEY, data["token"])
        if data.get("refreshToken"):
            self.storage.set(REFRESH_TOKEN_KEY, data["refreshToken"])
        user = data.get("user") or {}
        if user:
            self.storage.set(CURRENT_USER_KEY, json.dumps(user))
        return user

    def _clear(self) -> None:
        self.storage.clear_session()

    # ------------------------------------------------------------------
    # Credential operations
    # ------------------------------------------------------------------

    def _credential_call(self, path: str, payload: Dict[str, Any], default_error: str) -> Dict[str, Any]:
        resp = self._http.post(path, json=payload)
        if resp.status_code >= 400:
            raise ClientAuthError(_error_message(resp, default_error), resp.status_code)
        user = self._store_envelope(resp.json())
        if self.monitor is not None:
            self.monitor.start()
        return user

    def login(self, username: str, password: str) -> Dict[str, Any]:
        return self._credential_call(
            "/auth/login", {"username": username, "password": password}, "Login failed",
        )

    def register(self, username: str, password: str, email: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"username": username, "password": password}
        if email:
            payload["email"] = email
        return self._credential_call("/auth/register", payload, "Registration failed")

    def refresh(self) -> bool:
        """Swap the refresh token for a new pair. Clears the session on failure."""
        refresh_token = self.storage.get(REFRESH_TOKEN_KEY)
        if not refresh_token:
            return False
        resp = self._http.post("/auth/refresh", json={"refreshToken": refresh_token})
        if resp.status_code != 200:
            logger.info("Refresh rejected (%s); clearing session", resp.status_code)
            if resp.status_code in (400, 401):
                self._clear()
            return False
        self._store_envelope(resp.json())
        return True

    def logout(self) -> None:
        token = self.token
        if token:
            try:
                self._http.post("/auth/logout", headers={"Authorization": f"Bearer {token}"})
            except httpx.HTTPError as exc:
                logger.warning("Logout call failed: %s", exc)
        if self.monitor is not None:
            self.monitor.end_session("logout")
        self._clear()

    # ------------------------------------------------------------------
    # Authorized requests
    # ------------------------------------------------------------------

    def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        token = self.token
        if token and is_token_expired(token) and self.refresh():
            token = self.token

        resp = self._send(method, path, token, **kwargs)
        if resp.status_code == 401 and self.storage.get(REFRESH_TOKEN_KEY) and self.refresh():
            resp = self._send(method, path, self.token, **kwargs)
        if resp.status_code == 401:
            self._clear()
        return resp

    def _send(self, method: str, path: str, token: Optional[str], **kwargs: Any) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return self._http.request(method, path, headers=headers, **kwargs)

    def me(self) -> Dict[str, Any]:
        resp = self.request("GET", "/auth/me")
        if resp.status_code != 200:
            raise ClientAuthError(_error_message(resp, "Not authenticated"), resp.status_code)
        user = resp.json()["user"]
        self.storage.set(CURRENT_USER_KEY, json.dumps(user))
        return user

    def change_password(self, current_password: str, new_password: str) -> Dict[str, Any]:
        resp = self.request(
            "POST",
            "/auth/change-password",
            json={"currentPassword": current_password, "newPassword": new_password},
        )
        if resp.status_code != 200:
            raise ClientAuthError(_error_message(resp, "Failed to change password"), resp.status_code)
        user = resp.json()["user"]
        self.storage.set(CURRENT_USER_KEY, json.dumps(user))
        return user

    def session_policy(self) -> SessionTimeoutPolicy:
        resp = self._http.get("/auth/session-policy")
        resp.raise_for_status()
        return SessionTimeoutPolicy.from_payload(resp.json())
