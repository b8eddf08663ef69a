"""
core/database.py -- SQLAlchemy engine construction shared by the stores.

Both auth/store.py (users) and auth/ledger.py (refresh sessions) build their
engines here so SQLite connection handling stays identical across stores.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and a busy timeout on every new connection.

    WAL lets readers proceed while a writer holds the lock. The busy timeout
    makes a second writer wait for the lock instead of failing immediately,
    which matters when two refresh requests race on the same session row.
    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA busy_timeout=5000")


def make_engine(db_url: str) -> Engine:
    """Create an engine for db_url with SQLite-specific settings applied."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        # TestClient and uvicorn run sync handlers in a thread pool.
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine
