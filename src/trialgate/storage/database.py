"""Async database engine and session lifecycle.

On SQLite every transaction starts with ``BEGIN IMMEDIATE`` so that write
transactions are serialized by the database. PostgreSQL relies on row
locks taken with ``SELECT ... FOR UPDATE`` instead.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from trialgate.storage.models import Base

logger = logging.getLogger("trialgate.storage")

_engine: AsyncEngine | None = None
_session_factory: sessionmaker | None = None


def _configure_sqlite(engine: AsyncEngine) -> None:
    # Take over transaction control from pysqlite so BEGIN is emitted by us
    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):  # type: ignore[no-untyped-def]
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN IMMEDIATE")


async def init_db(database_url: str) -> None:
    """Create the engine and any missing tables."""
    global _engine, _session_factory

    url = make_url(database_url)
    is_sqlite = url.get_backend_name() == "sqlite"
    connect_args: dict = {}
    if is_sqlite and url.database:
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        # Seconds to wait for the write lock held by a concurrent transaction
        connect_args["timeout"] = 30

    _engine = create_async_engine(url, echo=False, connect_args=connect_args)
    if is_sqlite:
        _configure_sqlite(_engine)

    _session_factory = sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)  # type: ignore[call-overload]

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database initialized at %s", url.render_as_string(hide_password=True))


async def close_db() -> None:
    """Close the database connection."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session() -> AsyncSession:
    """Get a new database session."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory()


@asynccontextmanager
async def transaction() -> AsyncIterator[AsyncSession]:
    """Session wrapped in a single transaction: commit on success, roll back on error."""
    async with get_session() as session:
        async with session.begin():
            yield session
