"""Database session configuration for the SQL relay."""

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from xchat_core.core.settings import settings


class Base(DeclarativeBase):
    """Declarative base shared by all ORM models."""


# Ensure model modules are imported so that metadata is populated when create_all runs.
import xchat_core.models  # noqa: E402,F401

engine = create_engine(
    settings.relay_database_url,
    pool_pre_ping=True,
    echo=settings.sql_debug,
)


def make_session_factory(bind: Engine) -> sessionmaker[Session]:
    """Return a session factory configured like ``SessionLocal`` for another engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=bind, expire_on_commit=False)


SessionLocal = make_session_factory(engine)


def create_tables(bind: Engine | None = None) -> None:
    """Create all relay tables."""
    Base.metadata.create_all(bind=bind or engine)


def drop_tables(bind: Engine | None = None) -> None:
    """Drop all relay tables."""
    Base.metadata.drop_all(bind=bind or engine)
