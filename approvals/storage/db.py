# ==== DATABASE CONNECTION AND SESSION MANAGEMENT ==== #

"""
Database connection and session management for the approval workflow service.

This module provides async SQLAlchemy engine construction for PostgreSQL
(asyncpg) and SQLite (aiosqlite), schema bootstrap and the application
level session factory used to build the SQL request store.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator
from uuid import uuid4

import asyncpg
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
    AsyncEngine
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from approvals.observability.metrics import db_connections_active
from approvals.settings import get_settings


# ==== SQLALCHEMY CONFIGURATION ==== #

# SQLAlchemy base for model definitions
Base = declarative_base()

# Application-level engine and session factory
engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


class _UniqueStmtConnection(asyncpg.Connection):
    """asyncpg Connection with UUID-based prepared-statement IDs (PgBouncer safe)."""

    def _get_unique_id(self, prefix: str) -> str:
        return f"__asyncpg_{prefix}_{uuid4().hex}__"


# ==== ENGINE CONSTRUCTION ==== #


def normalize_database_url(db_url: str) -> str:
    """Force async drivers for PostgreSQL and SQLite URLs."""
    if db_url.startswith("postgresql://") or db_url.startswith("postgresql+psycopg://"):
        db_url = db_url.replace("postgresql+psycopg://", "postgresql+asyncpg://")
        db_url = db_url.replace("postgresql://", "postgresql+asyncpg://")
    elif db_url.startswith("sqlite://"):
        db_url = db_url.replace("sqlite://", "sqlite+aiosqlite://", 1)

    # Fix SSL parameter for asyncpg compatibility
    if "sslmode=require" in db_url:
        db_url = db_url.replace("sslmode=require", "ssl=require")

    return db_url


def build_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for ``db_url``.

    PostgreSQL connections behind a pooler use NullPool and unique
    prepared-statement names. SQLite connections get a busy timeout so
    concurrent writers wait instead of failing immediately.

    Args:
        db_url (str): Database URL (sync or async driver form)
        echo (bool): Log SQL statements

    Returns:
        AsyncEngine: Configured engine
    """
    db_url = normalize_database_url(db_url)

    if db_url.startswith("sqlite+aiosqlite://"):
        sqlite_engine = create_async_engine(
            db_url,
            echo=echo,
            connect_args={"timeout": 30},
        )

        @event.listens_for(sqlite_engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return sqlite_engine

    is_pooler = "pooler" in db_url
    return create_async_engine(
        db_url,
        echo=echo,
        # Use NullPool for PgBouncer to avoid double pooling
        poolclass=NullPool if is_pooler else None,
        isolation_level="READ_COMMITTED",
        connect_args={
            "statement_cache_size": 0,
            "connection_class": _UniqueStmtConnection,
            "server_settings": {
                "application_name": "approvals_api",
                "timezone": "UTC"
            }
        },
    )


def build_session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory the request store runs its transactions on."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_schema(db_engine: AsyncEngine) -> None:
    """Create all workflow tables that do not exist yet."""
    # Register models on Base.metadata
    from approvals.storage import models  # noqa: F401

    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ==== APPLICATION DATABASE LIFECYCLE ==== #


def init_database() -> async_sessionmaker[AsyncSession]:
    """
    Initialize the application engine and session factory from settings.

    Returns:
        async_sessionmaker[AsyncSession]: Application session factory
    """
    global engine, SessionLocal

    if SessionLocal is not None:
        return SessionLocal

    settings = get_settings()
    engine = build_engine(settings.DATABASE_URL, echo=settings.APP_ENV == "dev")
    SessionLocal = build_session_factory(engine)
    return SessionLocal


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session with automatic commit, rollback and cleanup.

    Yields:
        AsyncSession: Database session
    """
    session_factory = SessionLocal or init_database()

    async with session_factory() as session:
        try:
            db_connections_active.inc()
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            db_connections_active.dec()


async def close_database() -> None:
    """Close database connections on shutdown."""
    global engine, SessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    SessionLocal = None
