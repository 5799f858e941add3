from __future__ import annotations

import os
from collections.abc import Iterator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

_ENGINE: Engine | None = None
_ENGINE_URL: str | None = None
_SESSIONMAKER: sessionmaker | None = None

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _default_db_url() -> str:
    # Local-only default. Production must provide DATABASE_URL explicitly (PostgreSQL).
    return "sqlite+pysqlite:///.local/ami.db"


def get_engine() -> Engine:
    """Return a cached SQLAlchemy engine.

    Cached per DATABASE_URL so tests can point each case at its own SQLite file.
    """

    global _ENGINE, _ENGINE_URL, _SESSIONMAKER

    url = os.getenv("DATABASE_URL", _default_db_url())

    if _ENGINE is not None and _ENGINE_URL == url:
        return _ENGINE

    if _ENGINE is not None:
        _ENGINE.dispose()

    connect_args = {}
    if url.startswith("sqlite"):
        # Dispatcher threads share the file; wait for the write lock instead of failing.
        connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS}
    _ENGINE = create_engine(url, future=True, connect_args=connect_args)
    if _ENGINE.dialect.name == "sqlite":
        event.listen(_ENGINE, "connect", _enable_sqlite_foreign_keys)
    _ENGINE_URL = url
    _SESSIONMAKER = sessionmaker(bind=_ENGINE, class_=Session, autocommit=False, autoflush=False)
    return _ENGINE


def db_session() -> Session:
    get_engine()  # ensure _SESSIONMAKER is created
    assert _SESSIONMAKER is not None
    return _SESSIONMAKER()


def get_db() -> Iterator[Session]:
    """FastAPI dependency: one session per request, always closed."""

    db = db_session()
    try:
        yield db
    finally:
        db.close()


def is_postgres(db: Session) -> bool:
    return db.get_bind().dialect.name == "postgresql"
