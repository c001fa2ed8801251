from __future__ import annotations

import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", "sqlite:///./data/ledgersync.db")


def enable_sqlite_savepoints(engine: Engine) -> Engine:
    """
    Let SQLAlchemy emit BEGIN itself so SAVEPOINT/ROLLBACK TO work under pysqlite.

    Per-record and transfer isolation rely on `session.begin_nested()`.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # pragma: no cover - driver hook
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):  # pragma: no cover - driver hook
        conn.exec_driver_sql("BEGIN")

    return engine


def make_engine(url: str) -> Engine:
    is_sqlite = url.startswith("sqlite")
    connect_args = {"check_same_thread": False} if is_sqlite else {}
    engine = create_engine(url, future=True, connect_args=connect_args)
    if is_sqlite:
        enable_sqlite_savepoints(engine)
    return engine


_ENGINE: Engine | None = None
_SESSION_FACTORY: sessionmaker | None = None


def get_engine() -> Engine:
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = make_engine(get_database_url())
    return _ENGINE


def get_session() -> Session:
    # Built on first use so DATABASE_URL from .env is honored.
    global _SESSION_FACTORY
    if _SESSION_FACTORY is None:
        _SESSION_FACTORY = sessionmaker(bind=get_engine(), class_=Session, autoflush=False, autocommit=False)
    return _SESSION_FACTORY()
