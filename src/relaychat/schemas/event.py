# src/relaychat/schemas/event.py
"""Event schemas and tag accessors."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from relaychat.core.constants import (
    HEX_ID_LENGTH,
    HEX_SIGNATURE_LENGTH,
    MARKER_ROOT,
    TAG_EVENT,
    TAG_PUBKEY,
)
from relaychat.core.security import compute_event_id, is_hex


class Event(BaseModel):
    """Immutable signed protocol event.

    Identity and equality are by ``id``: two copies of the same event delivered
    by different relays compare equal and hash the same.
    """

    id: str = Field(..., description="Hex SHA-256 over the canonical serialization")
    pubkey: str = Field(..., description="Hex public key of the author")
    created_at: int = Field(..., ge=0, description="Unix seconds")
    kind: int = Field(..., ge=0, le=65535)
    tags: tuple[tuple[str, ...], ...] = ()
    content: str = ""
    sig: str = Field(..., description="Hex signature over the id")

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("id", "pubkey")
    @classmethod
    def _check_hex_key(cls, value: str) -> str:
        if not is_hex(value, HEX_ID_LENGTH):
            raise ValueError("expected 64 lower-case hex characters")
        return value

    @field_validator("sig")
    @classmethod
    def _check_signature(cls, value: str) -> str:
        if not is_hex(value, HEX_SIGNATURE_LENGTH):
            raise ValueError("expected 128 lower-case hex characters")
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _check_tags(cls, value: object) -> object:
        if value is None:
            return ()
        if not isinstance(value, list | tuple):
            raise ValueError("tags must be a list of string lists")
        for tag in value:
            if not isinstance(tag, list | tuple) or not tag:
                raise ValueError("each tag must be a non-empty list")
            if not all(isinstance(item, str) for item in tag):
                raise ValueError("tag entries must be strings")
        return value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Event):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    @property
    def computed_id(self) -> str:
        """Return the id these fields hash to."""
        return compute_event_id(self.pubkey, self.created_at, self.kind, self.tags, self.content)

    def tag_values(self, name: str) -> list[str]:
        """Return the second element of every tag called ``name``, in order."""
        return [tag[1] for tag in self.tags if tag[0] == name and len(tag) > 1 and tag[1]]

    def first_tag_value(self, name: str) -> str | None:
        values = self.tag_values(name)
        return values[0] if values else None

    @property
    def reply_to_id(self) -> str | None:
        """Id of the event this one answers: the first ``e`` tag."""
        return self.first_tag_value(TAG_EVENT)

    @property
    def channel_id(self) -> str | None:
        """Channel root for channel messages: the ``root``-marked ``e`` tag, else the first."""
        for tag in self.tags:
            if tag[0] == TAG_EVENT and len(tag) > 3 and tag[1] and tag[3] == MARKER_ROOT:
                return tag[1]
        return self.reply_to_id

    @property
    def referenced_ids(self) -> list[str]:
        return self.tag_values(TAG_EVENT)

    @property
    def mentioned_pubkeys(self) -> list[str]:
        return list(dict.fromkeys(self.tag_values(TAG_PUBKEY)))

    def to_wire(self) -> dict[str, Any]:
        """Return the JSON-ready wire form."""
        return self.model_dump(mode="json")


class EventDraft(BaseModel):
    """Unsigned event handed to the transport collaborator for signing and sending."""

    kind: int = Field(..., ge=0, le=65535)
    content: str = ""
    tags: list[list[str]] = Field(default_factory=list)
    created_at: int = Field(..., ge=0)
