"""
Database engine and session management (SQLAlchemy 2.0 async).

The durable cache tier is the only SQL consumer in this package. It receives
an async_sessionmaker explicitly, so several stores (for example one per test)
can coexist; the module-level engine below is the process-wide default used by
Router.from_settings().
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

from framesense.config import Settings, get_settings

log = structlog.get_logger(__name__)

# Pool sizing for a server-backed durable tier; SQLite gets SQLAlchemy defaults.
_SERVER_POOL: dict[str, Any] = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_pre_ping": True,
    "pool_recycle": 300,
}


class Base(DeclarativeBase):
    """Metadata root for the cache_storage table (and Alembic autogenerate)."""


def _pool_options(url: str, for_test: bool) -> dict[str, Any]:
    if for_test:
        return {"poolclass": NullPool}
    if url.startswith("sqlite"):
        return {}
    return dict(_SERVER_POOL)


def build_engine(settings: Settings, *, for_test: bool = False) -> AsyncEngine:
    """Create an async engine for the durable tier.

    ``for_test`` selects NullPool so no connection outlives a test case.
    """
    return create_async_engine(
        settings.database_url,
        echo=settings.db_echo_sql,
        **_pool_options(settings.database_url, for_test),
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_db(settings: Settings | None = None, *, for_test: bool = False) -> None:
    """Create the process-wide engine and session factory."""
    global _engine, _session_factory
    cfg = settings or get_settings()
    _engine = build_engine(cfg, for_test=for_test)
    _session_factory = build_session_factory(_engine)
    log.info("database.initialized", url=cfg.database_url.split("@")[-1])


async def close_db() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _session_factory
    engine, _engine, _session_factory = _engine, None, None
    if engine is not None:
        await engine.dispose()
        log.info("database.closed")


def _require(value: Any) -> Any:
    if value is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return value


def get_engine() -> AsyncEngine:
    return _require(_engine)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return _require(_session_factory)


async def create_tables(engine: AsyncEngine) -> None:
    """Create the durable tier schema without Alembic (tests, local runs)."""
    import framesense.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
