"""Database configuration for the SQL relay store."""

from .session import SessionLocal, make_session_factory

__all__ = ["SessionLocal", "make_session_factory"]
