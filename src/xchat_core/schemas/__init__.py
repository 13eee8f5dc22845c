"""Pydantic schemas for the xchat wire formats."""

from .envelope import ChunkEnvelope, DirectEnvelope, Envelope, encode_envelope, parse_envelope
from .payload import Attachment, MessagePayload

__all__ = [
    "Attachment",
    "MessagePayload",
    "ChunkEnvelope", "DirectEnvelope", "Envelope",
    "encode_envelope", "parse_envelope",
]
