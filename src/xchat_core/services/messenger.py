# src/xchat_core/services/messenger.py
"""Conversation facade tying the ratchet, codec and delivery layers together."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from xchat_core.core.errors import TransportError
from xchat_core.schemas.payload import Attachment, MessagePayload
from xchat_core.services.chunks import ChunkAssembler
from xchat_core.services.delivery_sync import DeliverySync, ProgressCallback
from xchat_core.services.events import ChatEventType, ChatObserver, LoggingObserver, emit
from xchat_core.services.identity import (
    KeyPair,
    decode_public_key,
    fingerprint,
)
from xchat_core.services.ratchet import RatchetEngine, RatchetState
from xchat_core.services.row_store import RowStore

logger = logging.getLogger(__name__)

MessageCallback = Callable[[MessagePayload], Awaitable[None] | None]


class Conversation:
    """One end-to-end encrypted conversation with a single peer.

    Sends are serialized: the ratchet commit, the relay insert and, if the
    insert fails, the rollback happen as one unit, so two sends never
    interleave their chain updates.
    """

    def __init__(
        self,
        identity: KeyPair,
        store: RowStore,
        *,
        on_message: MessageCallback | None = None,
        observer: ChatObserver | None = None,
        engine: RatchetEngine | None = None,
        **sync_options: Any,
    ) -> None:
        self.identity = identity
        self.fingerprint = fingerprint(identity.public_key)
        self.on_message = on_message
        self.observer = observer if observer is not None else LoggingObserver()
        self.engine = engine or RatchetEngine()
        self.peer_public: bytes | None = None
        self._send_lock = asyncio.Lock()
        self.sync = DeliverySync(
            store,
            self.fingerprint,
            self.receive,
            observer=self.observer,
            **sync_options,
        )

    @property
    def assembler(self) -> ChunkAssembler:
        return self.sync.assembler

    @property
    def established(self) -> bool:
        return self.engine.state is RatchetState.ESTABLISHED

    def connect(self, invite: str) -> None:
        """Complete the handshake with the peer's invite string.

        Raises:
            InvalidKeyError: If the invite is not a valid public key
        """
        peer_public = decode_public_key(invite)
        self.engine.establish(self.identity, peer_public)
        self.peer_public = peer_public
        emit(
            self.observer,
            ChatEventType.HANDSHAKE_COMPLETED,
            peer=fingerprint(peer_public),
        )

    async def send(
        self,
        text: str | None = None,
        attachments: list[Attachment] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Encrypt and transport one message.

        Raises:
            TransportError: If the relay rejected the message; the ratchet has
                been rolled back and the send can be retried
        """
        async with self._send_lock:
            sealed = self.engine.encrypt(text=text, attachments=attachments)
            try:
                await self.sync.send(sealed.ciphertext, on_progress=on_progress)
            except TransportError as err:
                self.engine.rollback(sealed.ticket)
                emit(self.observer, ChatEventType.MESSAGE_SEND_FAILED, error=str(err))
                raise

        session = self.engine.session
        emit(
            self.observer,
            ChatEventType.MESSAGE_SENT,
            count=session.sent_count if session else 0,
            chars=len(sealed.ciphertext),
            attachments=len(attachments or ()),
        )

    async def receive(self, ciphertext: str) -> bool:
        """Decrypt one incoming ciphertext and hand the payload to ``on_message``.

        Returns:
            True if the message was decrypted and applied
        """
        if not self.established:
            logger.warning("Received a message before the handshake completed")
            return False

        outcome = self.engine.decrypt(ciphertext)
        if not isinstance(outcome, MessagePayload):
            emit(self.observer, ChatEventType.MESSAGE_REJECTED, reason=outcome.reason)
            return False

        session = self.engine.session
        emit(
            self.observer,
            ChatEventType.MESSAGE_RECEIVED,
            count=session.recv_count if session else 0,
            attachments=len(outcome.attachments or ()),
        )
        if self.on_message is not None:
            try:
                result = self.on_message(outcome)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.error("Message callback failed", exc_info=True)
        return True

    async def start_sync(self) -> None:
        await self.sync.start()

    async def stop_sync(self) -> None:
        await self.sync.stop()

    async def reset(self) -> None:
        """Stop syncing and destroy the ratchet session."""
        await self.sync.stop()
        self.engine.reset()
        self.peer_public = None
