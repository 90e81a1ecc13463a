"""
core/db.py -- SQLAlchemy engine construction shared by every store.

Both auth/store.py and audit/store.py build their engines here so the SQLite
handling (thread checks, in-memory pooling, WAL) lives in one place.
"""

from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def build_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite tweaks every store in this repo needs."""
    connect_args: dict = {}
    engine_kwargs: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    if db_url == "sqlite:///:memory:":
        # One connection shared by every thread, or each thread sees a blank DB.
        engine_kwargs["poolclass"] = StaticPool
    engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
    if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
        event.listen(engine, "connect", _set_wal_mode)
    return engine
