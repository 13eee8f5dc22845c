# src/xchat_core/services/__init__.py
"""Cryptographic and transport services for the xchat core."""

from .chunks import ChunkAssembler
from .codec import AuthenticationFailure, MalformedPayloadError, MessageCodec
from .delivery_sync import DeliverySync
from .messenger import Conversation
from .ratchet import RatchetEngine, RatchetSession

__all__ = [
    "AuthenticationFailure",
    "ChunkAssembler",
    "Conversation",
    "DeliverySync",
    "MalformedPayloadError",
    "MessageCodec",
    "RatchetEngine",
    "RatchetSession",
]
