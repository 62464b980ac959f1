"""
database.py — Engine and per-request sessions
=============================================
The request pipeline opens at most one ``db_session()`` per request and
closes it when the response is ready. SQLite is shared between the
threadpool workers that run handlers, so thread checks are off and
writers wait on a busy timeout instead of failing immediately.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase, Session

from .config import settings

_SQLITE_BUSY_TIMEOUT_MS = 5000


class Base(DeclarativeBase):
    pass


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _engine_options(url: str) -> Dict[str, Any]:
    if _is_sqlite(url):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


engine = create_engine(
    settings.database_url,
    echo=settings.log_sql,
    future=True,
    **_engine_options(settings.database_url),
)

if _is_sqlite(settings.database_url):

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, _record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA busy_timeout = {_SQLITE_BUSY_TIMEOUT_MS}")
        cursor.close()


SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@contextmanager
def db_session() -> Iterator[Session]:
    """Commit on clean exit, roll back (and re-raise) on any error."""
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
