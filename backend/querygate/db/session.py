# backend/querygate/db/session.py
from __future__ import annotations

"""
Database session and Base ORM declarations.

This module depends on:
- querygate.config.settings.get_settings for the DATABASE_URL
It is imported by:
- querygate.models (for Base)
- any code needing a DB session (via SessionLocal or get_db)

The engine is created lazily so importing the models (for example from the
sandbox child process or from tests running on SQLite) never opens a
connection to the configured application database.
"""

from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from querygate.config import get_settings

# Base class for all ORM models
Base = declarative_base()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """SQLAlchemy engine for the application database."""
    settings = get_settings()
    return create_engine(settings.database_url, future=True, pool_pre_ping=True)


@lru_cache(maxsize=1)
def _session_factory() -> sessionmaker:
    return sessionmaker(
        bind=get_engine(),
        autoflush=False,
        autocommit=False,
        future=True,
    )


def SessionLocal() -> Session:
    """Open a session bound to the application engine."""
    return _session_factory()()


def get_db():
    """
    Dependency that yields a DB session and ensures it is closed.

    Example usage in a route:
        from querygate.db.session import get_db
        def endpoint(db: Session = Depends(get_db)): ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
