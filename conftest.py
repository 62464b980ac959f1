"""
pytest configuration – point the app at a throwaway SQLite file, make
bcrypt cheap, and give every test fresh counters and lockout state.
"""
import os

# Must be set before response_ready.config is imported anywhere.
os.environ.setdefault("RESPONSE_READY_DATABASE_URL", "sqlite:///./test_response_ready.db")
os.environ.setdefault("RESPONSE_READY_BCRYPT_ROUNDS", "4")
os.environ.setdefault("RESPONSE_READY_LOG_FORMAT", "text")
os.environ.setdefault("RESPONSE_READY_ENVIRONMENT", "development")

import pytest
from sqlalchemy import delete

from response_ready.config import settings
from response_ready.database import Base, db_session, engine
from response_ready import models  # noqa: F401 – registers ORM mappings with Base.metadata
from response_ready.auth.core import hash_password
from response_ready.main import app
from response_ready.models import User, UserActivity
from response_ready.security import build_security


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True, scope="session")
def create_tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    path = settings.database_url.replace("sqlite:///", "", 1)
    if settings.database_url.startswith("sqlite:///") and os.path.exists(path):
        os.remove(path)


@pytest.fixture(autouse=True)
def fresh_security():
    """New counter store, limiter, lockout tracker and token service per test."""
    app.state.security = build_security(settings)
    yield app.state.security


@pytest.fixture(autouse=True)
def clean_accounts():
    yield
    with db_session() as session:
        session.execute(delete(UserActivity))
        session.execute(delete(User).where(User.username != settings.admin_username))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_user():
    """Create an account directly in the database and return its id."""

    def _make(
        username: str = "agent@example.com",
        password: str = "Str0ng!Password",
        *,
        is_admin: bool = False,
        is_active: bool = True,
    ) -> int:
        with db_session() as session:
            user = User(
                username=username,
                email=username,
                password_hash=hash_password(password),
                is_active=is_active,
                is_admin=is_admin,
            )
            session.add(user)
            session.flush()
            return user.id

    return _make
