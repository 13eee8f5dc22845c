# src/xchat_core/services/codec.py
"""Authenticated encryption of message payloads under one-time message keys."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass

import nacl.utils
from nacl.exceptions import CryptoError
from nacl.secret import SecretBox
from pydantic import ValidationError

from xchat_core.schemas.payload import MessagePayload

logger = logging.getLogger(__name__)

NONCE_LENGTH = SecretBox.NONCE_SIZE
MIN_SEALED_LENGTH = SecretBox.NONCE_SIZE + SecretBox.MACBYTES


@dataclass(frozen=True)
class AuthenticationFailure:
    """Returned when the ciphertext does not authenticate under the key."""

    reason: str = "authentication failed"


@dataclass(frozen=True)
class MalformedPayloadError:
    """Returned when authenticated plaintext is not a valid payload."""

    reason: str = "malformed payload"


DecryptOutcome = MessagePayload | AuthenticationFailure | MalformedPayloadError


class MessageCodec:
    """Seal and open ``MessagePayload`` values with XSalsa20-Poly1305."""

    @staticmethod
    def encrypt(message_key: bytes, payload: MessagePayload) -> str:
        """Encrypt a payload and return ``base64(nonce || ciphertext)``.

        A fresh random nonce is drawn for every call.

        Args:
            message_key: 32-byte one-time message key
            payload: Payload to seal

        Returns:
            Base64 text ready to be placed in an envelope
        """
        plaintext = payload.to_wire()
        nonce = nacl.utils.random(NONCE_LENGTH)
        sealed = SecretBox(message_key).encrypt(plaintext, nonce)
        encoded = base64.b64encode(bytes(sealed)).decode("ascii")
        logger.debug(
            "Encrypted payload: %d plaintext bytes, %d attachments, %d base64 chars",
            len(plaintext),
            len(payload.attachments or ()),
            len(encoded),
        )
        return encoded

    @staticmethod
    def decrypt(message_key: bytes, encoded: str) -> DecryptOutcome:
        """Open a sealed payload.

        Args:
            message_key: 32-byte one-time message key
            encoded: Text produced by ``encrypt``

        Returns:
            The payload, or a typed failure. Nothing is raised for bad input.
        """
        try:
            combined = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            return AuthenticationFailure("ciphertext is not valid base64")
        # reject non-zero padding bits so every ciphertext has one encoding
        if base64.b64encode(combined).decode("ascii") != encoded:
            return AuthenticationFailure("ciphertext is not canonical base64")

        if len(combined) < MIN_SEALED_LENGTH:
            return AuthenticationFailure("ciphertext too short")

        nonce = combined[:NONCE_LENGTH]
        ciphertext = combined[NONCE_LENGTH:]
        try:
            plaintext = SecretBox(message_key).decrypt(ciphertext, nonce)
        except CryptoError:
            logger.debug("Decryption failed: wrong key or tampered data")
            return AuthenticationFailure()

        try:
            record = json.loads(plaintext.decode("utf-8"))
            payload = MessagePayload.model_validate(record)
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as err:
            logger.warning("Authenticated payload failed validation: %s", err)
            return MalformedPayloadError(str(err))

        return payload
