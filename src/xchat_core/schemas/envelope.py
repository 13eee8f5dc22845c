# src/xchat_core/schemas/envelope.py
"""Wire envelopes stored in the relay payload column.

A relay row holds exactly one JSON envelope, either a direct message or one
chunk of a larger ciphertext. The ``"t": "chunk"`` tag is the only
discriminator; direct envelopes carry no tag at all.
"""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

CHUNK_TAG = "chunk"


class DirectEnvelope(BaseModel):
    """A complete ciphertext in a single row."""

    sender_fingerprint: str = Field(..., alias="s", min_length=1)
    ciphertext: str = Field(..., alias="d", min_length=1)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ChunkEnvelope(BaseModel):
    """One ordered slice of a ciphertext too large for a single row."""

    sender_fingerprint: str = Field(..., alias="s", min_length=1)
    tag: Literal["chunk"] = Field(default=CHUNK_TAG, alias="t")
    message_id: str = Field(..., alias="mid", min_length=1)
    sequence: int = Field(..., alias="seq", ge=0)
    total: int = Field(..., ge=1)
    data: str = Field(..., alias="d")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def check_sequence(self) -> ChunkEnvelope:
        """Ensure the sequence number falls inside the announced total."""
        if self.sequence >= self.total:
            raise ValueError(f"seq {self.sequence} out of range for total {self.total}")
        return self


Envelope = DirectEnvelope | ChunkEnvelope


def encode_envelope(envelope: Envelope) -> str:
    """Serialize an envelope to its compact JSON wire form."""
    return envelope.model_dump_json(by_alias=True)


def parse_envelope(raw: str | bytes | dict[str, Any]) -> Envelope:
    """Classify and validate a stored envelope.

    Args:
        raw: JSON text, or an already decoded mapping (some relays return
            JSON columns pre-parsed)

    Returns:
        ChunkEnvelope when the record carries the chunk tag, else DirectEnvelope

    Raises:
        ValueError: If the record is not valid JSON or fails validation
    """
    if isinstance(raw, (str, bytes)):
        try:
            record = json.loads(raw)
        except json.JSONDecodeError as err:
            raise ValueError(f"Envelope is not valid JSON: {err}") from err
    else:
        record = raw

    if not isinstance(record, dict):
        raise ValueError("Envelope must be a JSON object")

    try:
        if record.get("t") == CHUNK_TAG:
            return ChunkEnvelope.model_validate(record)
        return DirectEnvelope.model_validate(record)
    except ValidationError as err:
        raise ValueError(f"Malformed envelope: {err}") from err
