"""SQLAlchemy models for the SQL relay."""

from .relay_row import RelayRow

__all__ = ["RelayRow"]
