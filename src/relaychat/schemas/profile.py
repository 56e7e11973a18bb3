"""Profile schema parsed from metadata events."""

from __future__ import annotations

import json

from pydantic import BaseModel, ConfigDict, Field

from relaychat.schemas.event import Event


class Profile(BaseModel):
    """Author metadata as published in a kind-0 event."""

    pubkey: str
    name: str | None = None
    display_name: str | None = None
    about: str | None = None
    picture: str | None = None
    nip05: str | None = None
    updated_at: int = Field(default=0, ge=0)

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_event(cls, event: Event) -> Profile:
        """Build a profile from a metadata event.

        Raises:
            ValueError: If the content is not a JSON object.
        """
        try:
            data = json.loads(event.content or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError(f"metadata content is not JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("metadata content must be a JSON object")
        data.pop("pubkey", None)
        data.pop("updated_at", None)
        return cls.model_validate({**data, "pubkey": event.pubkey, "updated_at": event.created_at})

    @property
    def label(self) -> str:
        """Best human-readable name, falling back to a short key."""
        return self.display_name or self.name or f"{self.pubkey[:8]}..."
