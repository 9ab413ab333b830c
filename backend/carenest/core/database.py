"""
Database layer — SQLAlchemy 2.0 engine, session factory and ORM base.

Provides:
    • Engine construction from settings.DATABASE_URL
    • Session factory bound to that engine
    • Base model for ORM entities
    • Table creation / disposal helpers

Usage:
    from backend.carenest.core.database import Base, build_engine, build_session_factory

    engine = build_engine("sqlite://")
    init_db(engine)
    Session = build_session_factory(engine)
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backend.carenest.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──
def build_engine(url: Optional[str] = None, *, echo: Optional[bool] = None) -> Engine:
    """
    Create an engine for ``url`` (defaults to settings.DATABASE_URL).

    In-memory SQLite shares one connection across threads so every
    session sees the same database.
    """
    url = url or settings.DATABASE_URL
    echo = settings.DATABASE_ECHO if echo is None else echo

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, future=True, **kwargs)
    else:
        engine = create_engine(url, echo=echo, future=True, pool_pre_ping=True)

    logger.info("Database engine created: %s", url.split("@")[-1])
    return engine


# ── Session Factory ──
def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(engine, class_=Session, expire_on_commit=False)


# ── Lifecycle ──
def init_db(engine: Engine) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    Base.metadata.create_all(engine)
    logger.info("Database tables initialised")


def close_db(engine: Engine) -> None:
    """Dispose engine connections."""
    engine.dispose()
    logger.info("Database connections closed")
