from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine import make_url

from ledgersync.db.models import Base
from ledgersync.db.session import get_database_url, get_engine


def _ensure_sqlite_dir(url: str) -> None:
    u = make_url(url)
    if not u.drivername.startswith("sqlite"):
        return
    db = u.database or ""
    if db and db != ":memory:":
        Path(db).expanduser().parent.mkdir(parents=True, exist_ok=True)


def init_db() -> None:
    _ensure_sqlite_dir(get_database_url())
    Base.metadata.create_all(bind=get_engine())
