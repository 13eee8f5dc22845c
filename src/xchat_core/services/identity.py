# src/xchat_core/services/identity.py
"""Identity key pairs and the raw X25519 exchange."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)

from xchat_core.core.errors import InvalidKeyError

KEY_LENGTH_BYTES = 32
FINGERPRINT_LENGTH = 8


@dataclass(frozen=True)
class KeyPair:
    """An X25519 key pair as raw 32-byte strings."""

    public_key: bytes
    secret_key: bytes

    def __repr__(self) -> str:
        return f"KeyPair(public_key={encode_public_key(self.public_key)!r})"


def generate_key_pair() -> KeyPair:
    """Generate a fresh X25519 key pair from the OS random source."""
    private_key = X25519PrivateKey.generate()

    secret = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return KeyPair(public_key=public, secret_key=secret)


def compute_shared_secret(our_secret: bytes, their_public: bytes) -> bytes:
    """Return the raw (unhashed) X25519 output for a secret and a peer key.

    Args:
        our_secret: Our 32-byte secret scalar
        their_public: The peer's 32-byte public point

    Returns:
        The 32-byte Diffie-Hellman output

    Raises:
        InvalidKeyError: If either key has the wrong length or the peer key
            is a low-order point
    """
    if len(our_secret) != KEY_LENGTH_BYTES:
        raise InvalidKeyError("X25519 secret keys must be 32 bytes")
    if len(their_public) != KEY_LENGTH_BYTES:
        raise InvalidKeyError("X25519 public keys must be 32 bytes")

    try:
        private_key = X25519PrivateKey.from_private_bytes(bytes(our_secret))
        public_key = X25519PublicKey.from_public_bytes(bytes(their_public))
        return private_key.exchange(public_key)
    except ValueError as err:
        # cryptography rejects exchanges that produce the all-zero secret
        raise InvalidKeyError(f"Invalid X25519 public key: {err}") from err


def encode_public_key(public_key: bytes) -> str:
    """Encode a public key as the standard base64 invite string."""
    return base64.b64encode(public_key).decode("ascii")


def decode_public_key(invite: str) -> bytes:
    """Decode an invite string back into a 32-byte public key.

    Raises:
        InvalidKeyError: If the text is not base64 or not 32 bytes long
    """
    cleaned = invite.strip()
    try:
        raw = base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as err:
        raise InvalidKeyError(f"Invalid base64 encoding: {err}") from err
    if len(raw) != KEY_LENGTH_BYTES:
        raise InvalidKeyError("X25519 public keys must be 32 bytes")
    return raw


def fingerprint(public_key: bytes) -> str:
    """Return the short sender tag used to recognise our own relay rows.

    This is a base64 prefix, not an authenticator.
    """
    return encode_public_key(public_key)[:FINGERPRINT_LENGTH]
