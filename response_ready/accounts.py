"""
accounts.py — Account lookups used by the request pipeline
==========================================================
The two lookups authentication depends on (by normalized identifier and
by id), the public projection of an account, and the activity trail.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import User, UserActivity

ACTIVITY_LIMIT = 1000


def find_account_by_identifier(session: Session, identifier: str) -> Optional[User]:
    """Look up by normalized (lower-cased) email. Returns active and inactive accounts."""
    return session.execute(
        select(User).where(User.username == identifier)
    ).scalar_one_or_none()


def get_account(session: Session, user_id: Any) -> Optional[User]:
    try:
        pk = int(user_id)
    except (TypeError, ValueError):
        return None
    return session.get(User, pk)


def record_activity(
    session: Session,
    user_id: int,
    action: str,
    *,
    user_agent: Optional[str] = None,
    url: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    session.add(UserActivity(
        user_id=user_id,
        action=action[:64],
        details=details,
        user_agent=(user_agent or "")[:512] or None,
        url=(url or "")[:1024] or None,
    ))


def list_activities(session: Session, user_id: int, limit: int = ACTIVITY_LIMIT) -> List[UserActivity]:
    """Newest first."""
    return list(session.execute(
        select(UserActivity)
        .where(UserActivity.user_id == user_id)
        .order_by(UserActivity.created_at.desc(), UserActivity.id.desc())
        .limit(limit)
    ).scalars())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def format_activity(activity: UserActivity) -> Dict[str, Any]:
    return {
        "userId": str(activity.user_id),
        "action": activity.action,
        "timestamp": _iso(activity.created_at),
        "metadata": activity.details or {},
        "userAgent": activity.user_agent,
        "url": activity.url,
    }


def format_user(user: User) -> Dict[str, Any]:
    """Client-facing account shape. Never includes the password hash."""
    return {
        "id": str(user.id),
        "username": user.username,
        "email": user.email,
        "createdAt": _iso(user.created_at),
        "lastLoginAt": _iso(user.last_login_at),
        "isActive": bool(user.is_active),
        "isAdmin": bool(user.is_admin),
        "mustChangePassword": bool(user.must_change_password),
    }
