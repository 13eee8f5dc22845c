# src/xchat_core/schemas/payload.py
"""Pydantic schemas for the decrypted message payload."""

from __future__ import annotations

import base64
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

AttachmentKind = Literal["audio", "image", "file"]


class Attachment(BaseModel):
    """A binary attachment carried inside an encrypted payload."""

    kind: AttachmentKind = Field(..., alias="type")
    mime_type: str = Field(..., alias="mime", min_length=1)
    data: str = Field(..., description="Base64-encoded attachment bytes")
    name: str | None = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("data")
    @classmethod
    def validate_data(cls, value: str) -> str:
        """Reject attachment data that is not valid base64."""
        try:
            base64.b64decode(value, validate=True)
        except ValueError as err:
            raise ValueError(f"Attachment data is not base64: {err}") from err
        return value

    @classmethod
    def from_bytes(
        cls,
        kind: AttachmentKind,
        mime_type: str,
        raw: bytes,
        name: str | None = None,
    ) -> Attachment:
        """Build an attachment from raw bytes."""
        return cls(
            kind=kind,
            mime_type=mime_type,
            data=base64.b64encode(raw).decode("ascii"),
            name=name,
        )

    def to_bytes(self) -> bytes:
        """Return the decoded attachment bytes."""
        return base64.b64decode(self.data)


class MessagePayload(BaseModel):
    """Structured plaintext sealed under a single message key."""

    text: str | None = None
    attachments: list[Attachment] | None = None
    ratchet_public_key: bytes = Field(..., alias="ratchetKey")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("ratchet_public_key", mode="before")
    @classmethod
    def decode_ratchet_key(cls, value: str | bytes) -> bytes:
        """Accept the base64 wire form as well as raw bytes."""
        if isinstance(value, str):
            try:
                value = base64.b64decode(value, validate=True)
            except ValueError as err:
                raise ValueError(f"ratchetKey is not base64: {err}") from err
        if not isinstance(value, bytes) or len(value) != 32:
            raise ValueError("ratchetKey must encode a 32-byte public key")
        return value

    @field_serializer("ratchet_public_key")
    def serialize_ratchet_key(self, value: bytes) -> str:
        """Encode the ratchet key as base64."""
        return base64.b64encode(value).decode("ascii")

    def to_wire(self) -> bytes:
        """Return the canonical UTF-8 JSON form with wire field names."""
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")
