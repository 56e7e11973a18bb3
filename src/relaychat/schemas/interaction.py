"""Interaction count schema reported by the network."""

from pydantic import BaseModel, Field


class InteractionCounts(BaseModel):
    """Network-confirmed interaction counts for a single post.

    ``user_liked`` and ``user_reposted`` are ``None`` when the reporting source
    does not know the viewer's own state; those fields are then left untouched
    on reconciliation.
    """

    like_count: int = Field(default=0, ge=0)
    repost_count: int = Field(default=0, ge=0)
    reply_count: int = Field(default=0, ge=0)
    user_liked: bool | None = None
    user_reposted: bool | None = None
