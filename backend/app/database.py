"""Database configuration for the Stitch engine.

Runs, entities and flows live here; the engine keeps no run state in
process memory between requests. Async SQLAlchemy with SQLite (dev/test)
or PostgreSQL (prod), selected by DATABASE_URL.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./stitch.db",
)

# Heroku-style URLs → asyncpg driver
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql+asyncpg://", 1)
elif DATABASE_URL.startswith("postgresql://"):
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)

IS_SQLITE = DATABASE_URL.startswith("sqlite")

# How long a SQLite connection waits for the write lock before "database is locked"
SQLITE_BUSY_TIMEOUT_SECS = float(os.getenv("SQLITE_BUSY_TIMEOUT_SECS", "30"))


def configure_sqlite(target: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock when it begins.

    pysqlite/aiosqlite defer BEGIN until the first write, so two
    read-modify-write transactions can both read the same row version.
    Emitting BEGIN IMMEDIATE ourselves serializes them; WAL keeps plain
    readers from blocking on the writer.
    """

    @event.listens_for(target.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={int(SQLITE_BUSY_TIMEOUT_SECS * 1000)}")
        cursor.close()

    @event.listens_for(target.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


engine: AsyncEngine = create_async_engine(
    DATABASE_URL,
    echo=os.getenv("DB_ECHO", "false").lower() == "true",
    **({} if IS_SQLITE else {"pool_size": 10, "max_overflow": 20}),
)
if IS_SQLITE:
    configure_sqlite(engine)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


@asynccontextmanager
async def get_session_ctx() -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: commit on exit, roll back on error.

    Looks up ``async_session_factory`` at call time so tests can swap it.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create all tables. Schema migrations are managed outside the engine."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
