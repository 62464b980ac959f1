from __future__ import annotations

import logging

from sqlalchemy import select

from .core import hash_password, sanitize_email
from ..config import settings
from ..database import db_session
from ..models import User

logger = logging.getLogger("response_ready.seed")

_DEFAULT_PASSWORD = "changeme"


def seed_admin() -> None:
    """
    Create a default admin account on first startup if no users exist.
    Credentials come from settings so they can be overridden before
    deployment:

      RESPONSE_READY_ADMIN_USERNAME = admin@responseready.local
      RESPONSE_READY_ADMIN_PASSWORD = changeme

    The seeded account must change its password on first login.
    """
    username = sanitize_email(settings.admin_username)
    if not username:
        logger.error("Admin username %r is not a valid email; skipping seed.", settings.admin_username)
        return

    with db_session() as session:
        existing = session.execute(select(User).limit(1)).scalar_one_or_none()
        if existing:
            return  # Users already seeded, don't overwrite

        if settings.admin_password == _DEFAULT_PASSWORD:
            logger.warning(
                "Seeding admin with DEFAULT password. "
                "Set RESPONSE_READY_ADMIN_PASSWORD before deploying to production."
            )
            if not settings.is_development:
                logger.error(
                    "Refusing to seed default password in non-development environment (%s).",
                    settings.environment,
                )
                return

        admin = User(
            username=username,
            email=sanitize_email(settings.admin_email) or username,
            password_hash=hash_password(settings.admin_password),
            is_active=True,
            is_admin=True,
            must_change_password=True,
        )
        session.add(admin)
        logger.info("Default admin created: %s", username)
