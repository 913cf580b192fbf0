"""
Database configuration and session management.

SQLite vs PostgreSQL Notes:
---------------------------
SQLite (development/tests) and PostgreSQL (production) are both supported.

Rotation relies on the revoke of the presented refresh token being
linearizable per token:

1. PostgreSQL - the conditional ``UPDATE ... WHERE revoked_at IS NULL`` takes a
   row lock; a second racing rotation blocks on it and then matches zero rows.
2. SQLite - pysqlite/aiosqlite defer BEGIN until the first write, which lets two
   transactions read the same token as active. Every transaction is therefore
   opened with ``BEGIN IMMEDIATE`` so writers are serialised from their first
   statement and the loser of a race reads the token as already revoked.
"""

import logging

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from refresh_rotation.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def _configure_sqlite(engine: AsyncEngine) -> None:
    """Enable foreign keys and serialise transactions on a SQLite engine."""

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        # Hand transaction control to the "begin" listener below
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with driver-specific settings applied."""
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    is_sqlite = database_url.startswith("sqlite")
    engine_kwargs: dict = {"echo": echo}

    if is_sqlite:
        # Waiting writers block up to this many seconds on BEGIN IMMEDIATE
        engine_kwargs["connect_args"] = {"timeout": 30}
    else:
        # pool_pre_ping: verify connections are alive before using them.
        # pool_size + max_overflow = 15 connections at most; keep this under
        # PostgreSQL's max_connections.
        engine_kwargs["pool_pre_ping"] = True
        engine_kwargs["pool_size"] = 5
        engine_kwargs["max_overflow"] = 10

    engine = create_async_engine(database_url, **engine_kwargs)
    if is_sqlite:
        _configure_sqlite(engine)
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings.async_database_url)
AsyncSessionLocal = build_session_factory(engine)


async def get_db():
    """
    Dependency that yields a database session.

    Services commit their own writes; the rollback on exception is a safety net.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db(target: AsyncEngine | None = None):
    """Create tables for all registered models."""
    # Import models so they register with Base.metadata
    from refresh_rotation.models import auth_audit, refresh_token  # noqa: F401

    target = target or engine
    async with target.begin() as conn:
        # For PostgreSQL: advisory lock so concurrently starting workers don't race
        if target.dialect.name == "postgresql":
            await conn.execute(text("SELECT pg_advisory_xact_lock(1)"))
            logger.info("Acquired database migration lock")

        await conn.run_sync(Base.metadata.create_all, checkfirst=True)

    logger.info("Database initialized successfully")
