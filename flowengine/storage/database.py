"""Database connection and session management."""

import os
from typing import Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..core.logging import get_logger

logger = get_logger(__name__)

_engine: Optional[Engine] = None

# Base class for all database models
Base = declarative_base()

# Session factory, bound by configure_database
SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def _is_memory_sqlite(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in database_url


def configure_database(database_url: Optional[str] = None,
                       echo: bool = False,
                       connect_args: Optional[dict] = None,
                       pool_size: Optional[int] = None,
                       max_overflow: Optional[int] = None) -> Engine:
    """Create the database engine and bind the session factory to it.

    Replaces any previously configured engine. In-memory SQLite shares one
    connection through StaticPool; file databases use the regular pool.
    Pool sizes only apply to server databases.
    """
    global _engine

    if database_url is None:
        database_url = os.getenv("FLOWENGINE_DATABASE_URL", "sqlite:///./flowengine.db")

    if connect_args is None:
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
        else:
            connect_args = {}

    reset_database_engine()

    if _is_memory_sqlite(database_url):
        _engine = create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool,
            echo=echo
        )
    else:
        pool_options = {}
        if not database_url.startswith("sqlite"):
            if pool_size is not None:
                pool_options["pool_size"] = pool_size
            if max_overflow is not None:
                pool_options["max_overflow"] = max_overflow
        _engine = create_engine(
            database_url,
            echo=echo,
            connect_args=connect_args,
            **pool_options
        )

    SessionLocal.configure(bind=_engine)
    logger.debug(f"Database configured: {_engine.url.render_as_string(hide_password=True)}")
    return _engine


def get_database_engine() -> Engine:
    """Return the configured engine, configuring from the environment if needed."""
    if _engine is None:
        configure_database()
    return _engine


def reset_database_engine():
    """Dispose of the global database engine (mainly for testing)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


def get_db():
    """Dependency to get database session."""
    if _engine is None:
        configure_database()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """Create all database tables."""
    from . import models  # noqa: F401  registers the mapped classes
    Base.metadata.create_all(bind=get_database_engine())


def drop_tables():
    """Drop all database tables."""
    from . import models  # noqa: F401
    Base.metadata.drop_all(bind=get_database_engine())
