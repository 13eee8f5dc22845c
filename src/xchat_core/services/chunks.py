# src/xchat_core/services/chunks.py
"""Splitting and reassembly of ciphertexts too large for a single relay row."""

from __future__ import annotations

import logging
import math
import secrets
import string
import threading
import time
from collections.abc import Hashable
from dataclasses import dataclass, field

from xchat_core.core.settings import settings
from xchat_core.schemas.envelope import ChunkEnvelope

logger = logging.getLogger(__name__)

MESSAGE_ID_LENGTH = 6
_MESSAGE_ID_ALPHABET = string.ascii_lowercase + string.digits

RowKey = Hashable


@dataclass
class ChunkBuffer:
    """Partially received chunked message."""

    total: int
    first_seen_at: float
    received_chunks: dict[int, str] = field(default_factory=dict)
    source_row_keys: list[RowKey] = field(default_factory=list)


@dataclass(frozen=True)
class Complete:
    """All chunks of a message have arrived."""

    message_id: str
    assembled: str
    source_row_keys: list[RowKey]


@dataclass(frozen=True)
class Pending:
    """More chunks are needed before the message can be assembled."""

    message_id: str
    received: int
    total: int


IngestResult = Complete | Pending


def new_message_id() -> str:
    """Return a random 6-character lowercase alphanumeric token."""
    return "".join(secrets.choice(_MESSAGE_ID_ALPHABET) for _ in range(MESSAGE_ID_LENGTH))


class ChunkAssembler:
    """Reassembles chunk envelopes delivered out of order or more than once.

    All access to the buffer map is serialized by a lock, so ingestion of
    chunks for the same message never loses an update.
    """

    def __init__(
        self,
        chunk_size: int | None = None,
        max_age_seconds: float | None = None,
    ) -> None:
        self.chunk_size = chunk_size if chunk_size is not None else settings.chunk_size
        self.max_age_seconds = (
            max_age_seconds if max_age_seconds is not None else settings.chunk_timeout_seconds
        )
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._buffers: dict[str, ChunkBuffer] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffers)

    def needs_chunking(self, ciphertext: str) -> bool:
        return len(ciphertext) > self.chunk_size

    def split(self, ciphertext: str, sender_fingerprint: str) -> list[ChunkEnvelope]:
        """Cut a ciphertext into ordered chunk envelopes.

        Returns an empty list when the ciphertext fits in one row; the caller
        then sends a direct envelope instead.
        """
        if not self.needs_chunking(ciphertext):
            return []

        message_id = new_message_id()
        total = math.ceil(len(ciphertext) / self.chunk_size)
        envelopes = [
            ChunkEnvelope(
                sender_fingerprint=sender_fingerprint,
                message_id=message_id,
                sequence=seq,
                total=total,
                data=ciphertext[seq * self.chunk_size:(seq + 1) * self.chunk_size],
            )
            for seq in range(total)
        ]
        logger.info(
            "Split %d chars into %d chunks (mid=%s)", len(ciphertext), total, message_id
        )
        return envelopes

    def ingest(
        self, envelope: ChunkEnvelope, source_row_key: RowKey, now: float | None = None
    ) -> IngestResult:
        """Record one chunk and assemble the message once every sequence is present.

        A repeated sequence number overwrites the earlier data and does not
        count twice toward completion.

        Raises:
            ValueError: If the envelope disagrees with the buffered total
        """
        now = time.time() if now is None else now
        with self._lock:
            buf = self._buffers.get(envelope.message_id)
            if buf is None:
                buf = ChunkBuffer(total=envelope.total, first_seen_at=now)
                self._buffers[envelope.message_id] = buf
            elif buf.total != envelope.total:
                raise ValueError(
                    f"Chunk total {envelope.total} does not match buffered total {buf.total} "
                    f"for mid={envelope.message_id}"
                )

            buf.received_chunks[envelope.sequence] = envelope.data
            if source_row_key not in buf.source_row_keys:
                buf.source_row_keys.append(source_row_key)

            received = len(buf.received_chunks)
            logger.debug(
                "Chunk %d/%d for mid=%s", envelope.sequence + 1, buf.total, envelope.message_id
            )
            if received < buf.total:
                return Pending(message_id=envelope.message_id, received=received, total=buf.total)

            del self._buffers[envelope.message_id]

        assembled = "".join(buf.received_chunks[seq] for seq in range(buf.total))
        logger.info(
            "All chunks received for mid=%s, assembled %d chars",
            envelope.message_id,
            len(assembled),
        )
        return Complete(
            message_id=envelope.message_id,
            assembled=assembled,
            source_row_keys=list(buf.source_row_keys),
        )

    def evict_stale(
        self, now: float | None = None, max_age: float | None = None
    ) -> list[RowKey]:
        """Drop buffers first seen more than ``max_age`` seconds ago.

        Returns:
            Every row key accumulated by the evicted buffers, for deletion
            from the relay
        """
        now = time.time() if now is None else now
        max_age = self.max_age_seconds if max_age is None else max_age
        cutoff = now - max_age

        evicted: list[RowKey] = []
        with self._lock:
            for message_id, buf in list(self._buffers.items()):
                if buf.first_seen_at < cutoff:
                    logger.warning(
                        "Chunk buffer expired for mid=%s (%d/%d received)",
                        message_id,
                        len(buf.received_chunks),
                        buf.total,
                    )
                    evicted.extend(buf.source_row_keys)
                    del self._buffers[message_id]
        return evicted

    def clear(self) -> None:
        with self._lock:
            self._buffers.clear()
