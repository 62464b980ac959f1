"""
Tests for the per-endpoint request pipeline, exercised through a small
stand-alone app so each stage can be driven in isolation.

Run with: pytest tests/ -v
"""
from __future__ import annotations

from typing import ClassVar

import pytest
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from fastapi.testclient import TestClient
from pydantic import BaseModel

from conftest import FakeClock
from response_ready.api.pipeline import GENERIC_ERROR, HandlerContext, RoutePolicy, create_api_handler
from response_ready.auth.tokens import TokenClaims
from response_ready.config import settings
from response_ready.errors import NotFound, ServerError
from response_ready.security import build_security
from response_ready.security.rate_limiter import RateLimitPolicy


class EchoBody(BaseModel):
    invalid_message: ClassVar[str] = "Name is required"

    name: str


def _ok(request: Request, ctx: HandlerContext) -> dict:
    return {"ok": True, "user": ctx.user_id or None, "admin": ctx.is_admin}


async def _echo(request: Request, ctx: HandlerContext) -> dict:
    return {"name": ctx.body.name}


def _boom(request: Request, ctx: HandlerContext) -> dict:
    raise RuntimeError("secret database detail")


def _missing(request: Request, ctx: HandlerContext) -> dict:
    raise NotFound("Thing not found")


def _server_error(request: Request, ctx: HandlerContext) -> dict:
    raise ServerError("replica lag on accounts-db-2")


def _raw(request: Request, ctx: HandlerContext) -> PlainTextResponse:
    return PlainTextResponse("raw", status_code=202)


TIGHT = RateLimitPolicy(max_requests=2, window_ms=60_000, name="tight")

pipeline_app = FastAPI()
pipeline_app.add_api_route("/open", create_api_handler(RoutePolicy(
    handler=_ok, rate_limit="api", needs_db=False,
)), methods=["GET"])
pipeline_app.add_api_route("/tight", create_api_handler(RoutePolicy(
    handler=_ok, rate_limit=TIGHT, require_auth=True, check_active=False, needs_db=False,
)), methods=["GET"])
pipeline_app.add_api_route("/private", create_api_handler(RoutePolicy(
    handler=_ok, rate_limit="read", require_auth=True,
)), methods=["GET"])
pipeline_app.add_api_route("/claims-only", create_api_handler(RoutePolicy(
    handler=_ok, require_auth=True, check_active=False, needs_db=False,
)), methods=["GET"])
pipeline_app.add_api_route("/admin", create_api_handler(RoutePolicy(
    handler=_ok, rate_limit="api", require_admin=True,
)), methods=["GET"])
pipeline_app.add_api_route("/echo", create_api_handler(RoutePolicy(
    handler=_echo, rate_limit="api", body=EchoBody, needs_db=False, success_status=201,
)), methods=["POST"])
pipeline_app.add_api_route("/boom", create_api_handler(RoutePolicy(
    handler=_boom, rate_limit="api", needs_db=False,
)), methods=["GET"])
pipeline_app.add_api_route("/missing", create_api_handler(RoutePolicy(
    handler=_missing, needs_db=False,
)), methods=["GET"])
pipeline_app.add_api_route("/server-error", create_api_handler(RoutePolicy(
    handler=_server_error, needs_db=False,
)), methods=["GET"])
pipeline_app.add_api_route("/raw", create_api_handler(RoutePolicy(
    handler=_raw, rate_limit="api", needs_db=False,
)), methods=["GET"])


@pytest.fixture
def client():
    pipeline_app.state.security = build_security(settings, clock=FakeClock())
    return TestClient(pipeline_app)


def _bearer(user_id: str, is_admin: bool = False) -> dict:
    tokens = pipeline_app.state.security.tokens
    token = tokens.sign_access_token(TokenClaims(user_id=user_id, is_admin=is_admin, email="x@example.com"))
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Rate limit stage
# ---------------------------------------------------------------------------

def test_remaining_header_on_success(client):
    resp = client.get("/open")
    assert resp.status_code == 200
    assert resp.headers["X-RateLimit-Remaining"] == "99"
    assert client.get("/open").headers["X-RateLimit-Remaining"] == "98"


def test_rate_limit_runs_before_authentication(client):
    assert client.get("/tight").status_code == 401
    assert client.get("/tight").status_code == 401
    resp = client.get("/tight")
    assert resp.status_code == 429
    assert resp.json()["error"] == "Too many requests. Please try again later."
    assert resp.headers["X-RateLimit-Remaining"] == "0"
    assert resp.headers["Retry-After"] == "60"


def test_authenticated_callers_get_their_own_bucket(client):
    for _ in range(2):
        assert client.get("/tight").status_code == 401
    # The anonymous IP bucket is spent; a valid token is counted per account
    resp = client.get("/tight", headers=_bearer("11"))
    assert resp.status_code == 200
    assert resp.headers["X-RateLimit-Remaining"] == "1"


# ---------------------------------------------------------------------------
# Auth and admin stages
# ---------------------------------------------------------------------------

def test_missing_token_is_401_with_header(client):
    resp = client.get("/private")
    assert resp.status_code == 401
    assert resp.json() == {"error": "Authentication required"}
    assert resp.headers["X-RateLimit-Remaining"] == "199"


def test_invalid_token_is_401(client):
    resp = client.get("/private", headers={"Authorization": "Bearer nonsense"})
    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid or expired token"}


def test_claims_only_route_trusts_the_token(client):
    resp = client.get("/claims-only", headers=_bearer("5", is_admin=True))
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "user": "5", "admin": True}
    assert "X-RateLimit-Remaining" not in resp.headers


def test_active_check_rejects_unknown_and_inactive_accounts(client, make_user):
    assert client.get("/private", headers=_bearer("999999")).json() == {"error": "User account is inactive"}

    uid = make_user("sleepy@example.com", is_active=False)
    resp = client.get("/private", headers=_bearer(str(uid)))
    assert resp.status_code == 401
    assert resp.json() == {"error": "User account is inactive"}


def test_active_account_passes(client, make_user):
    uid = make_user("awake@example.com")
    resp = client.get("/private", headers=_bearer(str(uid)))
    assert resp.status_code == 200
    assert resp.json()["user"] == str(uid)


def test_admin_flag_comes_from_the_account_not_the_token(client, make_user):
    uid = make_user("plain@example.com")
    resp = client.get("/admin", headers=_bearer(str(uid), is_admin=True))
    assert resp.status_code == 403
    assert resp.json() == {"error": "Admin access required"}

    admin_id = make_user("boss@example.com", is_admin=True)
    assert client.get("/admin", headers=_bearer(str(admin_id))).status_code == 200


# ---------------------------------------------------------------------------
# Body stage
# ---------------------------------------------------------------------------

def test_valid_body_reaches_async_handler(client):
    resp = client.post("/echo", json={"name": "pat"})
    assert resp.status_code == 201
    assert resp.json() == {"name": "pat"}


def test_invalid_body_uses_model_message(client):
    resp = client.post("/echo", json={"nom": "pat"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Name is required"}
    assert resp.headers["X-RateLimit-Remaining"] == "99"


def test_malformed_json_is_400(client):
    resp = client.post("/echo", content=b"{not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid JSON body"}


def test_non_object_json_is_400(client):
    resp = client.post("/echo", json=["pat"])
    assert resp.status_code == 400
    assert resp.json() == {"error": "Name is required"}


# ---------------------------------------------------------------------------
# Handler errors and results
# ---------------------------------------------------------------------------

def test_api_error_maps_to_its_status(client):
    resp = client.get("/missing")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Thing not found"}


def test_unexpected_error_is_generic_outside_development(client, monkeypatch, caplog):
    monkeypatch.setattr(settings, "environment", "production")
    with caplog.at_level("ERROR", logger="response_ready.errors"):
        resp = client.get("/boom")
    assert resp.status_code == 500
    assert resp.json() == {"error": GENERIC_ERROR}
    assert "secret database detail" not in resp.text
    assert resp.headers["X-RateLimit-Remaining"] == "99"
    assert any("secret database detail" in r.getMessage() for r in caplog.records)


def test_unexpected_error_detail_shown_in_development(client):
    resp = client.get("/boom")
    assert resp.status_code == 500
    assert resp.json() == {"error": "secret database detail"}


def test_server_error_message_is_sanitised_outside_development(client, monkeypatch, caplog):
    monkeypatch.setattr(settings, "environment", "production")
    with caplog.at_level("ERROR", logger="response_ready.errors"):
        resp = client.get("/server-error")
    assert resp.status_code == 500
    assert resp.json() == {"error": GENERIC_ERROR}
    assert any("replica lag" in r.getMessage() for r in caplog.records)


def test_db_outside_request_scope_is_a_server_error():
    ctx = HandlerContext(request=None, security=build_security(settings))
    with pytest.raises(ServerError):
        ctx.db


def test_handler_response_passes_through(client):
    resp = client.get("/raw")
    assert resp.status_code == 202
    assert resp.text == "raw"
    assert resp.headers["X-RateLimit-Remaining"] == "99"
