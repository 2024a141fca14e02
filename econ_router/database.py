"""
Database engine and session management (SQLAlchemy 2.0 async).

Only the durable budget ledger touches the database. The engine is created
during application startup when ``ledger_backend == "database"``; with the
in-memory ledger nothing here is initialized.

Design decisions:
- All models import Base from here to keep metadata centralized
- Tables are created on startup (create_all) - the schema is one append-only
  table and needs no migration tooling
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from econ_router.config import Settings, get_settings

log = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""

    type_annotation_map: dict[Any, Any] = {}


def _build_engine(settings: Settings, *, for_test: bool = False) -> AsyncEngine:
    """Create an async SQLAlchemy engine from settings.

    Uses NullPool in test mode (and for SQLite) to avoid connection leaks
    between test cases.
    """
    kwargs: dict[str, Any] = {"echo": settings.db_echo_sql}
    if for_test or settings.database_url.startswith("sqlite"):
        kwargs["poolclass"] = NullPool
    else:
        kwargs.update(
            {
                "pool_size": 5,
                "max_overflow": 10,
                "pool_pre_ping": True,
                "pool_recycle": 300,  # Recycle connections every 5 minutes
            }
        )
    return create_async_engine(settings.database_url, **kwargs)


# Module-level handles, initialized in lifespan
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_db(settings: Settings | None = None, *, for_test: bool = False) -> None:
    """Initialize the database engine and session factory.

    Called once during application startup (or test setup).
    """
    global _engine, _session_factory
    cfg = settings or get_settings()
    _engine = _build_engine(cfg, for_test=for_test)
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    log.info("database.initialized", url=cfg.database_url.split("@")[-1])


async def create_tables() -> None:
    """Create ledger tables if they do not exist."""
    from econ_router.models import ledger  # noqa: F401  (populate metadata)

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("database.tables_ready", tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    """Dispose the engine and release all connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        log.info("database.closed")
        _engine = None
        _session_factory = None


def get_engine() -> AsyncEngine:
    """Return the initialized engine (raises if not initialized)."""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
