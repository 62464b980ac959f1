from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request
from sqlalchemy.exc import IntegrityError

from .core import (
    burn_password_check,
    hash_password,
    sanitize_email,
    validate_password,
    verify_password,
)
from .tokens import TokenClaims
from ..accounts import (
    find_account_by_identifier,
    format_activity,
    format_user,
    get_account,
    list_activities,
    record_activity,
)
from ..api.pipeline import HandlerContext, RoutePolicy, create_api_handler
from ..config import settings
from ..errors import AccountLocked, AuthenticationFailed, NotFound, PermissionDenied, ValidationFailed
from ..models import User
from ..schemas import (
    ActivityRequest,
    ChangePasswordRequest,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    SessionPolicyRead,
)
from ..security.lockout import LockoutStatus, LoginAttempt

logger = logging.getLogger("response_ready.auth")

router = APIRouter(prefix="/auth", tags=["auth"])

INVALID_CREDENTIALS = "Invalid username or password"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _credential_envelope(ctx: HandlerContext, user: User) -> Dict[str, Any]:
    claims = TokenClaims(user_id=str(user.id), is_admin=bool(user.is_admin), email=user.username)
    pair = ctx.security.tokens.issue_pair(claims)
    return {
        "user": format_user(user),
        "token": pair.token,
        "refreshToken": pair.refresh_token,
    }


def _raise_if_locked(ctx: HandlerContext, status: LockoutStatus) -> None:
    if status.locked:
        raise AccountLocked(status.locked_until, now=ctx.security.clock())


def _reject_credentials(ctx: HandlerContext, attempt: LoginAttempt, message: str = INVALID_CREDENTIALS) -> None:
    """Count the failure, then raise 423 if that locked the identifier, else 401."""
    _raise_if_locked(ctx, attempt.fail())
    raise AuthenticationFailed(message)


def _accept_credentials(ctx: HandlerContext, attempt: LoginAttempt) -> None:
    """Clear the failure record; 423 if a concurrent failure locked it meanwhile."""
    _raise_if_locked(ctx, attempt.succeed())


def _client_meta(request: Request) -> Dict[str, Any]:
    return {
        "user_agent": request.headers.get("user-agent"),
        "url": request.headers.get("referer"),
    }


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------

def login(request: Request, ctx: HandlerContext) -> Dict[str, Any]:
    body: LoginRequest = ctx.body
    identifier = sanitize_email(body.username)
    if not identifier:
        raise ValidationFailed("Invalid email format")

    with ctx.security.lockout.begin_attempt(identifier) as attempt:
        _raise_if_locked(ctx, attempt.status)

        user = find_account_by_identifier(ctx.db, identifier)
        if user is None or not user.is_active:
            # Same cost and same lockout accounting as a wrong password
            burn_password_check(body.password)
            logger.info("Login failed: no active account for identifier")
            _reject_credentials(ctx, attempt)

        if not verify_password(body.password, user.password_hash):
            logger.info("Login failed: wrong password for user %s", user.id)
            _reject_credentials(ctx, attempt)

        _accept_credentials(ctx, attempt)

    user.last_login_at = datetime.now(timezone.utc)
    record_activity(ctx.db, user.id, "login", **_client_meta(request))
    ctx.db.flush()
    logger.info("User %s logged in", user.id)
    return _credential_envelope(ctx, user)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

def register(request: Request, ctx: HandlerContext) -> Dict[str, Any]:
    if not settings.registration_enabled:
        raise PermissionDenied("Public registration is disabled. Contact an administrator.")

    body: RegisterRequest = ctx.body
    username = sanitize_email(body.username)
    if not username:
        raise ValidationFailed("Username must be a valid email address")

    check = validate_password(body.password)
    if not check.valid:
        raise ValidationFailed(check.error)

    if find_account_by_identifier(ctx.db, username) is not None:
        raise ValidationFailed("An account with this email already exists")

    email = sanitize_email(body.email) if body.email else None
    user = User(
        username=username,
        email=email or username,
        password_hash=hash_password(body.password),
        is_active=True,
        is_admin=False,
    )
    ctx.db.add(user)
    try:
        ctx.db.flush()
    except IntegrityError:
        # Concurrent registration of the same email
        raise ValidationFailed("An account with this email already exists")
    ctx.db.refresh(user)

    record_activity(ctx.db, user.id, "register", **_client_meta(request))
    logger.info("Registered user %s", user.id)
    return _credential_envelope(ctx, user)


# ---------------------------------------------------------------------------
# Token refresh
# ---------------------------------------------------------------------------

def refresh(request: Request, ctx: HandlerContext) -> Dict[str, Any]:
    body: RefreshRequest = ctx.body
    claims = ctx.security.tokens.verify_refresh_token(body.refresh_token)
    if claims is None:
        raise AuthenticationFailed("Invalid or expired refresh token")

    user = get_account(ctx.db, claims.user_id)
    if user is None or not user.is_active:
        raise AuthenticationFailed("User account is inactive")
    return _credential_envelope(ctx, user)


# ---------------------------------------------------------------------------
# Current user
# ---------------------------------------------------------------------------

def me(request: Request, ctx: HandlerContext) -> Dict[str, Any]:
    return {"user": format_user(ctx.account)}


def logout(request: Request, ctx: HandlerContext) -> Dict[str, Any]:
    """Audit only; tokens are stateless and simply discarded by the client."""
    record_activity(ctx.db, ctx.account.id, "logout", **_client_meta(request))
    return {"success": True}


def change_password(request: Request, ctx: HandlerContext) -> Dict[str, Any]:
    body: ChangePasswordRequest = ctx.body
    user = ctx.account
    identifier = user.username

    with ctx.security.lockout.begin_attempt(identifier) as attempt:
        _raise_if_locked(ctx, attempt.status)
        if not verify_password(body.current_password, user.password_hash):
            _reject_credentials(ctx, attempt, "Current password is incorrect")
        _accept_credentials(ctx, attempt)

    check = validate_password(body.new_password)
    if not check.valid:
        raise ValidationFailed(check.error)
    if body.new_password == body.current_password:
        raise ValidationFailed("New password must be different from the current password")

    user.password_hash = hash_password(body.new_password)
    user.must_change_password = False
    record_activity(ctx.db, user.id, "password_change", **_client_meta(request))
    ctx.db.flush()
    logger.info("User %s changed password", user.id)
    return {"success": True, "user": format_user(user)}


# ---------------------------------------------------------------------------
# Activity trail
# ---------------------------------------------------------------------------

def track_activity(request: Request, ctx: HandlerContext) -> Dict[str, Any]:
    body: ActivityRequest = ctx.body
    record_activity(ctx.db, ctx.account.id, body.action, details=body.metadata or {}, **_client_meta(request))
    return {"success": True}


def list_user_activities(request: Request, ctx: HandlerContext) -> Dict[str, Any]:
    """The caller's own trail, newest first. Admins may pass ``?userId=`` for anyone's."""
    target = request.query_params.get("userId") or ctx.user_id
    if target != ctx.user_id and not ctx.is_admin:
        raise PermissionDenied("Admin access required")
    user = get_account(ctx.db, target)
    if user is None:
        raise NotFound("User not found")
    return {"activities": [format_activity(a) for a in list_activities(ctx.db, user.id)]}


def session_policy(request: Request, ctx: HandlerContext) -> SessionPolicyRead:
    """Idle and absolute timeouts the client session monitor enforces."""
    return SessionPolicyRead(
        idle_timeout_minutes=settings.idle_timeout_minutes,
        max_session_hours=settings.max_session_hours,
        warning_before_timeout_minutes=settings.warning_before_timeout_minutes,
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

router.add_api_route("/login", create_api_handler(RoutePolicy(
    rate_limit="auth", body=LoginRequest, handler=login, error_context="Login",
)), methods=["POST"])

router.add_api_route("/register", create_api_handler(RoutePolicy(
    rate_limit="auth", body=RegisterRequest, handler=register,
    success_status=201, error_context="Registration",
)), methods=["POST"])

router.add_api_route("/refresh", create_api_handler(RoutePolicy(
    rate_limit="auth", body=RefreshRequest, handler=refresh, error_context="Refresh token",
)), methods=["POST"])

router.add_api_route("/me", create_api_handler(RoutePolicy(
    rate_limit="read", require_auth=True, handler=me, error_context="Current user",
)), methods=["GET"])

router.add_api_route("/logout", create_api_handler(RoutePolicy(
    rate_limit="api", require_auth=True, handler=logout, error_context="Logout",
)), methods=["POST"])

router.add_api_route("/change-password", create_api_handler(RoutePolicy(
    rate_limit="auth", require_auth=True, body=ChangePasswordRequest,
    handler=change_password, error_context="Change password",
)), methods=["POST"])

router.add_api_route("/activity", create_api_handler(RoutePolicy(
    rate_limit="api", require_auth=True, body=ActivityRequest,
    handler=track_activity, error_context="Track activity",
)), methods=["POST"])

router.add_api_route("/activities", create_api_handler(RoutePolicy(
    rate_limit="read", require_auth=True, handler=list_user_activities, error_context="Get activities",
)), methods=["GET"])

router.add_api_route("/session-policy", create_api_handler(RoutePolicy(
    rate_limit="read", needs_db=False, handler=session_policy, error_context="Session policy",
)), methods=["GET"])
