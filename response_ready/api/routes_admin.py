from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Request
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .pipeline import HandlerContext, RoutePolicy, create_api_handler
from ..accounts import find_account_by_identifier, format_user, get_account
from ..auth.core import hash_password, sanitize_email, validate_password
from ..errors import NotFound, ValidationFailed
from ..models import User
from ..schemas import AdminUserCreate, UserUpdate

logger = logging.getLogger("response_ready.admin")

router = APIRouter(prefix="/admin", tags=["admin"])

DUPLICATE_ACCOUNT = "An account with this email already exists"


def _target_user(request: Request, ctx: HandlerContext) -> User:
    user = get_account(ctx.db, request.path_params.get("user_id"))
    if user is None:
        raise NotFound("User not found")
    return user


def _checked_password(password: str) -> str:
    check = validate_password(password)
    if not check.valid:
        raise ValidationFailed(check.error)
    return hash_password(password)


def list_users(request: Request, ctx: HandlerContext) -> Dict[str, Any]:
    users = ctx.db.execute(select(User).order_by(User.created_at)).scalars().all()
    return {"users": [format_user(u) for u in users]}


def create_user(request: Request, ctx: HandlerContext) -> Dict[str, Any]:
    """Provision an account; the holder must change the password on first use."""
    body: AdminUserCreate = ctx.body
    username = sanitize_email(body.username)
    if not username:
        raise ValidationFailed("Username must be a valid email address")
    password_hash = _checked_password(body.password)

    if find_account_by_identifier(ctx.db, username) is not None:
        raise ValidationFailed(DUPLICATE_ACCOUNT)

    user = User(
        username=username,
        email=sanitize_email(body.email) or username,
        password_hash=password_hash,
        is_active=True,
        is_admin=body.is_admin,
        must_change_password=True,
    )
    ctx.db.add(user)
    try:
        ctx.db.flush()
    except IntegrityError:
        raise ValidationFailed(DUPLICATE_ACCOUNT)
    ctx.db.refresh(user)

    logger.info("Admin %s created user %s (is_admin=%s)", ctx.user_id, user.id, user.is_admin)
    return {"user": format_user(user)}


def update_user(request: Request, ctx: HandlerContext) -> Dict[str, Any]:
    body: UserUpdate = ctx.body
    user = _target_user(request, ctx)

    if str(user.id) == ctx.user_id and (body.is_active is False or body.is_admin is False):
        raise ValidationFailed("Admins cannot deactivate or demote their own account")

    if body.username is not None:
        username = sanitize_email(body.username)
        if not username:
            raise ValidationFailed("Username must be a valid email address")
        existing = find_account_by_identifier(ctx.db, username)
        if existing is not None and existing.id != user.id:
            raise ValidationFailed("Username already exists")
        if username != user.username:
            # Failures recorded under the old identifier no longer apply
            ctx.security.lockout.clear_failed_attempts(user.username)
            user.username = username

    if body.email is not None:
        email = sanitize_email(body.email)
        if not email:
            raise ValidationFailed("Invalid email format")
        user.email = email

    if body.password is not None and body.password.strip():
        user.password_hash = _checked_password(body.password)
        user.must_change_password = True

    if body.is_active is not None:
        if body.is_active and not user.is_active:
            # A reactivated account starts with a clean lockout record
            ctx.security.lockout.clear_failed_attempts(user.username)
        user.is_active = body.is_active
    if body.is_admin is not None:
        user.is_admin = body.is_admin

    try:
        ctx.db.flush()
    except IntegrityError:
        raise ValidationFailed("Username already exists")
    logger.info(
        "Admin %s updated user %s (is_active=%s, is_admin=%s)",
        ctx.user_id, user.id, user.is_active, user.is_admin,
    )
    return {"user": format_user(user)}


def delete_user(request: Request, ctx: HandlerContext) -> Dict[str, Any]:
    """Soft delete: the account is deactivated, its history kept."""
    if str(request.path_params.get("user_id")) == ctx.user_id:
        raise ValidationFailed("Cannot delete your own account")
    user = _target_user(request, ctx)
    user.is_active = False
    ctx.db.flush()
    logger.info("Admin %s deactivated user %s", ctx.user_id, user.id)
    return {"success": True, "message": "User deactivated"}


router.add_api_route("/users", create_api_handler(RoutePolicy(
    rate_limit="read", require_admin=True, handler=list_users, error_context="List users",
)), methods=["GET"])

router.add_api_route("/users", create_api_handler(RoutePolicy(
    rate_limit="api", require_admin=True, body=AdminUserCreate,
    handler=create_user, success_status=201, error_context="Create user",
)), methods=["POST"])

router.add_api_route("/users/{user_id}", create_api_handler(RoutePolicy(
    rate_limit="api", require_admin=True, body=UserUpdate,
    handler=update_user, error_context="Update user",
)), methods=["PUT", "PATCH"])

router.add_api_route("/users/{user_id}", create_api_handler(RoutePolicy(
    rate_limit="api", require_admin=True, handler=delete_user, error_context="Delete user",
)), methods=["DELETE"])
