"""Sampler - Database engine and session factory.

One SQLite file holds samples, tags, chains and chain links. The API process
and every worker thread use it at the same time, so connections run in WAL
mode (readers never block the single writer) with a generous busy timeout,
and each unit of work opens its own short-lived session.
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import sessionmaker

from sampler.config import DB_PATH
from sampler.models import Base

# Seconds a connection waits for a competing writer before "database is locked"
SQLITE_BUSY_TIMEOUT_SECONDS = 30


def database_url(db_path: str | Path | None = None) -> str:
    """SQLite URL for db_path (default: config.DB_PATH)."""
    return f"sqlite:///{db_path if db_path is not None else DB_PATH}"


def _configure_connection(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
    finally:
        cursor.close()


def create_db_engine(db_path: str | Path | None = None, echo: bool = False) -> Engine:
    """Engine whose connections may be handed between threads.

    A connection is only ever used by one session at a time; the pool hands
    it to whichever thread checks it out next.
    """
    engine = create_engine(
        database_url(db_path),
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
    )
    event.listen(engine, "connect", _configure_connection)
    return engine


def init_db(db_path: str | Path | None = None, echo: bool = False) -> tuple[Engine, sessionmaker]:
    """Create the engine, the session factory and any missing tables.

    Idempotent. Sessions do not expire on commit, so rows the store returns
    stay readable after their session has closed.

    Returns:
        Tuple of (engine, SessionFactory).
    """
    target = Path(db_path) if db_path is not None else DB_PATH
    target.parent.mkdir(parents=True, exist_ok=True)

    engine = create_db_engine(target, echo=echo)
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
