from __future__ import annotations

import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Connection, Engine

from curator.config import load_env_once

_engine: Engine | None = None

# Fixed-width UTC timestamps sort lexicographically in TEXT columns.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def get_engine() -> Engine:
    global _engine

    if _engine is not None:
        return _engine

    load_env_once()

    db_url = os.getenv("DATABASE_URL") or os.getenv("DB_URL")
    if not db_url:
        backend_api_dir = Path(__file__).resolve().parents[1]
        tried = [
            f"ENV_PATH={os.getenv('ENV_PATH')}",
            str(backend_api_dir / ".env"),
            str(Path.cwd() / ".env"),
        ]
        raise RuntimeError(
            "DATABASE_URL is not set. Ensure it exists in backend/api/.env or set ENV_PATH.\n"
            f"Tried: {', '.join(tried)}"
        )

    _engine = make_engine(db_url)
    return _engine


def make_engine(db_url: str) -> Engine:
    if db_url.startswith("sqlite"):
        # Concurrent bot processes share one file; wait for the write lock instead of failing.
        engine = create_engine(db_url, future=True, connect_args={"timeout": 30})
        _begin_immediate(engine)
        return engine
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _begin_immediate(engine: Engine) -> None:
    """
    Makes every SQLite transaction take the write lock up front.

    pysqlite otherwise opens transactions lazily and upgrades a read lock to a
    write lock mid-transaction, which deadlocks two threads that both read
    before writing (the busy timeout does not help there).
    """

    @event.listens_for(engine, "connect")
    def _no_implicit_begin(dbapi_conn, _record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def db_ping(engine: Engine) -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def is_postgres(engine: Engine) -> bool:
    return engine.dialect.name == "postgresql"


@contextmanager
def transaction(engine: Engine, conn: Optional[Connection] = None) -> Iterator[Connection]:
    """
    Yields `conn` when the caller already holds a transaction, otherwise opens one.

    Lets the orchestrator compose content write + ledger append + queue update
    into a single commit while each component stays usable on its own.
    """
    if conn is not None:
        yield conn
        return
    with engine.begin() as c:
        yield c
