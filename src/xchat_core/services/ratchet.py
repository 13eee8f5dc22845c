# src/xchat_core/services/ratchet.py
"""Chain-key ratchet for a two-party conversation.

Each direction has its own chain. Every message steps the chain once
(symmetric ratchet, forward secrecy) and then folds in a fresh X25519 output
between the sender's new ephemeral key and the receiver's current ratchet key
(DH ratchet, post-compromise security). Messages must be processed in order:
there is no storage of skipped message keys, so a lost message leaves the two
chains permanently out of step.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum

from xchat_core.core.errors import InvalidKeyError, XChatError
from xchat_core.schemas.payload import Attachment, MessagePayload
from xchat_core.services.codec import DecryptOutcome, MalformedPayloadError, MessageCodec
from xchat_core.services.identity import (
    KEY_LENGTH_BYTES,
    KeyPair,
    compute_shared_secret,
    generate_key_pair,
)

logger = logging.getLogger(__name__)

CHAIN_KEY_LENGTH = 32
NEXT_CHAIN_TAG = b"\x01"
MESSAGE_KEY_TAG = b"\x02"


def kdf(data: bytes) -> bytes:
    """SHA-512 truncated to 32 bytes."""
    return hashlib.sha512(data).digest()[:CHAIN_KEY_LENGTH]


@dataclass(frozen=True)
class ChainKeys:
    """Initial chain keys for one side of a conversation."""

    send_chain: bytes
    recv_chain: bytes


@dataclass(frozen=True)
class ChainStep:
    """Result of advancing a chain by one message."""

    next_chain_key: bytes
    message_key: bytes


def derive_chain_keys(shared_secret: bytes, our_public: bytes, their_public: bytes) -> ChainKeys:
    """Derive complementary send/receive chains from the handshake secret.

    Both peers run this with the same secret. Whoever owns the
    lexicographically smaller public key sends on the ``0x01`` chain; the
    other peer receives on it, so no extra round trip is needed to agree on
    roles.

    Raises:
        InvalidKeyError: If any input has the wrong length, or both public
            keys are identical
    """
    for label, value in (
        ("shared secret", shared_secret),
        ("our public key", our_public),
        ("their public key", their_public),
    ):
        if len(value) != KEY_LENGTH_BYTES:
            raise InvalidKeyError(f"{label} must be {KEY_LENGTH_BYTES} bytes")
    if our_public == their_public:
        raise InvalidKeyError("Cannot derive chains against our own public key")

    chain_a = kdf(shared_secret + NEXT_CHAIN_TAG)
    chain_b = kdf(shared_secret + MESSAGE_KEY_TAG)

    # bytes comparison is lexicographic, most significant byte first
    if our_public < their_public:
        return ChainKeys(send_chain=chain_a, recv_chain=chain_b)
    return ChainKeys(send_chain=chain_b, recv_chain=chain_a)


def symmetric_step(chain_key: bytes) -> ChainStep:
    """Advance a chain key and derive the message key for this step.

    Pure: the caller decides whether ``next_chain_key`` is committed.
    """
    return ChainStep(
        next_chain_key=kdf(chain_key + NEXT_CHAIN_TAG),
        message_key=kdf(chain_key + MESSAGE_KEY_TAG),
    )


def dh_ratchet_step(
    chain_key: bytes, our_ephemeral_secret: bytes, their_ephemeral_public: bytes
) -> bytes:
    """Fold a fresh X25519 output into a chain key."""
    dh_output = compute_shared_secret(our_ephemeral_secret, their_ephemeral_public)
    return kdf(chain_key + dh_output)


@dataclass(frozen=True)
class RatchetSession:
    """Complete ratchet state for one peer.

    Instances are immutable; the owning ``RatchetEngine`` swaps in a new
    value for every committed step.
    """

    our_identity: KeyPair
    peer_identity_public: bytes
    send_chain_key: bytes
    recv_chain_key: bytes
    our_ratchet_key_pair: KeyPair
    peer_ratchet_public: bytes
    sent_count: int = 0
    recv_count: int = 0

    def __repr__(self) -> str:
        return (
            f"RatchetSession(sent_count={self.sent_count}, recv_count={self.recv_count}, "
            f"our_ratchet_key_pair={self.our_ratchet_key_pair!r})"
        )


@dataclass(frozen=True)
class SendTicket:
    """Pre-send snapshot used to undo a send whose transport failed."""

    send_chain_key: bytes
    our_ratchet_key_pair: KeyPair
    sent_count: int
    committed_chain_key: bytes


@dataclass(frozen=True)
class SealedMessage:
    """Ciphertext produced by ``RatchetEngine.encrypt``."""

    ciphertext: str
    ticket: SendTicket


class RatchetState(Enum):
    """Lifecycle of a ratchet engine."""

    UNINITIALIZED = "uninitialized"
    ESTABLISHED = "established"


class RatchetEngine:
    """Single owner of a ``RatchetSession``.

    ``encrypt``, ``decrypt`` and ``rollback`` are the only operations that
    change the session. Each runs under a lock, so the engine may be shared
    with worker threads.
    """

    def __init__(self, codec: MessageCodec | None = None) -> None:
        self._codec = codec or MessageCodec()
        self._session: RatchetSession | None = None
        self._lock = threading.Lock()

    @property
    def state(self) -> RatchetState:
        if self._session is None:
            return RatchetState.UNINITIALIZED
        return RatchetState.ESTABLISHED

    @property
    def session(self) -> RatchetSession | None:
        """Current session value (read-only snapshot)."""
        return self._session

    def establish(self, our_identity: KeyPair, peer_identity_public: bytes) -> RatchetSession:
        """Complete the handshake and bootstrap both chains.

        Raises:
            InvalidKeyError: If the peer key is malformed
            XChatError: If a session is already established
        """
        shared_secret = compute_shared_secret(our_identity.secret_key, peer_identity_public)
        chains = derive_chain_keys(
            shared_secret, our_identity.public_key, peer_identity_public
        )
        session = RatchetSession(
            our_identity=our_identity,
            peer_identity_public=peer_identity_public,
            send_chain_key=chains.send_chain,
            recv_chain_key=chains.recv_chain,
            our_ratchet_key_pair=our_identity,
            peer_ratchet_public=peer_identity_public,
        )
        with self._lock:
            if self._session is not None:
                raise XChatError("Ratchet session already established")
            self._session = session
        logger.info("Ratchet session established")
        return session

    def reset(self) -> None:
        """Destroy the session; the engine returns to the uninitialized state."""
        with self._lock:
            self._session = None
        logger.info("Ratchet session reset")

    def _require_session(self) -> RatchetSession:
        if self._session is None:
            raise XChatError("No ratchet session established")
        return self._session

    def encrypt(
        self,
        text: str | None = None,
        attachments: list[Attachment] | None = None,
    ) -> SealedMessage:
        """Seal a message and commit the send-chain advance immediately.

        The returned ticket must be passed to ``rollback`` if the ciphertext
        never reaches the relay.
        """
        with self._lock:
            session = self._require_session()
            step = symmetric_step(session.send_chain_key)
            ephemeral = generate_key_pair()
            payload = MessagePayload(
                text=text,
                attachments=attachments or None,
                ratchet_public_key=ephemeral.public_key,
            )
            ciphertext = self._codec.encrypt(step.message_key, payload)
            new_chain = dh_ratchet_step(
                step.next_chain_key, ephemeral.secret_key, session.peer_ratchet_public
            )

            ticket = SendTicket(
                send_chain_key=session.send_chain_key,
                our_ratchet_key_pair=session.our_ratchet_key_pair,
                sent_count=session.sent_count,
                committed_chain_key=new_chain,
            )
            self._session = replace(
                session,
                send_chain_key=new_chain,
                our_ratchet_key_pair=ephemeral,
                sent_count=session.sent_count + 1,
            )
            logger.debug("Send chain advanced to step %d", self._session.sent_count)
            return SealedMessage(ciphertext=ciphertext, ticket=ticket)

    def rollback(self, ticket: SendTicket) -> None:
        """Restore the send chain, ratchet key pair and counter from a ticket.

        Raises:
            XChatError: If another send was committed after the ticket
        """
        with self._lock:
            session = self._require_session()
            if session.send_chain_key != ticket.committed_chain_key:
                raise XChatError("Send ticket is stale; a later send was committed")
            self._session = replace(
                session,
                send_chain_key=ticket.send_chain_key,
                our_ratchet_key_pair=ticket.our_ratchet_key_pair,
                sent_count=ticket.sent_count,
            )
        logger.info("Send rolled back to step %d", ticket.sent_count)

    def decrypt(self, ciphertext: str) -> DecryptOutcome:
        """Open a received message, committing the receive chain only on success.

        Returns:
            The payload, or a typed failure with the session left untouched
        """
        with self._lock:
            session = self._require_session()
            step = symmetric_step(session.recv_chain_key)
            outcome = self._codec.decrypt(step.message_key, ciphertext)
            if not isinstance(outcome, MessagePayload):
                logger.info("Discarding undecryptable message: %s", outcome.reason)
                return outcome

            try:
                new_chain = dh_ratchet_step(
                    step.next_chain_key,
                    session.our_ratchet_key_pair.secret_key,
                    outcome.ratchet_public_key,
                )
            except InvalidKeyError as err:
                logger.warning("Peer ratchet key rejected: %s", err)
                return MalformedPayloadError(f"invalid ratchet key: {err}")

            self._session = replace(
                session,
                recv_chain_key=new_chain,
                peer_ratchet_public=outcome.ratchet_public_key,
                recv_count=session.recv_count + 1,
            )
            logger.debug("Receive chain advanced to step %d", self._session.recv_count)
            return outcome
