from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

from .tokens import get_token_from_request
from ..accounts import get_account
from ..errors import AuthenticationFailed, PermissionDenied

if TYPE_CHECKING:
    from ..api.pipeline import HandlerContext


# ---------------------------------------------------------------------------
# Resolve current user from the bearer token
# ---------------------------------------------------------------------------

def authenticate_request(request: Request, ctx: "HandlerContext", check_active: bool = True) -> None:
    """
    Fill ``ctx`` with the caller's identity or raise 401.

    With ``check_active`` the account is re-read so a deactivated account
    is rejected and the admin flag reflects the current account rather
    than the token.
    """
    token = get_token_from_request(request)
    if not token:
        raise AuthenticationFailed("Authentication required")

    claims = ctx.security.tokens.verify_token(token)
    if claims is None:
        raise AuthenticationFailed("Invalid or expired token")

    if not check_active:
        ctx.user_id = claims.user_id
        ctx.is_admin = claims.is_admin
        ctx.email = claims.email
        return

    user = get_account(ctx.db, claims.user_id)
    if user is None or not user.is_active:
        raise AuthenticationFailed("User account is inactive")

    ctx.account = user
    ctx.user_id = str(user.id)
    ctx.is_admin = bool(user.is_admin)
    ctx.email = user.username


# ---------------------------------------------------------------------------
# Role guard
# ---------------------------------------------------------------------------

def require_admin(ctx: "HandlerContext") -> None:
    if not ctx.is_admin:
        raise PermissionDenied("Admin access required")
