"""Engine and session factory configuration."""

import logging
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.orm import Session, close_all_sessions, sessionmaker
from sqlalchemy.pool import QueuePool

from app.core.config import get_settings
from app.db.base import Base

logger = logging.getLogger(__name__)

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _create_engine() -> Engine:
    settings = get_settings()

    if settings.is_sqlite:
        # SQLite is used for local runs and tests; workers share the file.
        sqlite_engine = create_engine(
            settings.database_url,
            echo=False,
            future=True,
            connect_args={"check_same_thread": False},
        )

        # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves.
        @event.listens_for(sqlite_engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(sqlite_engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")

        return sqlite_engine

    # Configure engine with connection pooling for long-running tasks
    # pool_pre_ping: Test connections before using (handles stale connections)
    # pool_recycle: Recycle connections after 30 minutes (prevents timeout)
    pool_kwargs: dict[str, Any] = {
        "poolclass": QueuePool,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
        "pool_size": 5,
        "max_overflow": 10,
    }
    return create_engine(
        settings.database_url,
        echo=False,
        future=True,
        connect_args={
            "connect_timeout": 10,  # 10 second connection timeout
            "keepalives": 1,  # Send keepalive packets
            "keepalives_idle": 30,  # Start keepalives after 30 seconds idle
            "keepalives_interval": 10,  # Send keepalive every 10 seconds
            "keepalives_count": 5,  # Close connection after 5 failed keepalives
        },
        **pool_kwargs,
    )


def get_engine() -> Engine:
    """Return (and lazily initialize) the shared engine."""
    global _engine
    if _engine is None:
        _engine = _create_engine()
    return _engine


def init_db() -> None:
    """Create tables for every mapped model."""
    # Register models on the metadata before create_all.
    from app.db import models  # noqa: F401

    Base.metadata.create_all(bind=get_engine())


def get_session_factory() -> sessionmaker[Session]:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_engine(),
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
        )
    return _session_factory


def SessionLocal() -> Session:
    """Open a new session bound to the shared engine."""
    return get_session_factory()()


def get_fresh_session() -> Session:
    """Get a fresh database session, handling connection errors.

    This is useful for long-running tasks where connections might timeout.
    """
    try:
        return SessionLocal()
    except (OperationalError, DisconnectionError) as e:
        logger.warning(f"Connection error creating session: {e}, retrying...")
        # Force pool to reconnect
        get_engine().dispose()
        return SessionLocal()


def reset_engine() -> None:
    """Drop the cached engine and session factory (settings changed, tests)."""
    global _engine, _session_factory
    if _session_factory is not None:
        close_all_sessions()
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
