"""SQLAlchemy async engine and session factory."""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from jobfleet.config import Settings


def _build_engine_kwargs(settings: Settings) -> dict:
    """Return engine kwargs appropriate for the configured dialect."""
    if settings.is_postgres:
        return {
            "echo": settings.DEBUG,
            "pool_size": settings.FLEET_DB_POOL_SIZE,
            "max_overflow": settings.FLEET_DB_MAX_OVERFLOW,
            "pool_timeout": settings.FLEET_DB_POOL_TIMEOUT,
            "pool_pre_ping": True,   # ensure stale connections are recycled
            "pool_recycle": 1800,    # recycle connections older than 30 min
        }
    return {
        "echo": settings.DEBUG,
        "connect_args": {"check_same_thread": False},
    }


def build_engine(settings: Settings) -> AsyncEngine:
    """Create the engine for ``settings.FLEET_DB_URL``.

    Called once by the composition root; the engine is then shared by
    reference with every record store.
    """
    engine = create_async_engine(settings.FLEET_DB_URL, **_build_engine_kwargs(settings))

    if settings.is_sqlite:
        # WAL lets heartbeat reads proceed alongside the single writer;
        # busy_timeout makes SQLite wait up to 5 s before raising
        # "database is locked" when several heartbeats write at once.
        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragmas(dbapi_conn, _conn_rec):  # type: ignore[misc]
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
