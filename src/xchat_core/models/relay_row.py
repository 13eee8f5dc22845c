# src/xchat_core/models/relay_row.py
"""Relay table holding opaque envelope rows."""

from datetime import UTC, datetime

from sqlalchemy import Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from xchat_core.db.session import Base


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


class RelayRow(Base):
    """One JSON envelope waiting to be picked up by the peer.

    The relay never sees plaintext: ``data`` holds either a direct envelope
    or a single chunk of a larger ciphertext.
    """

    __tablename__ = "xchat_relay"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    data: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
