"""Relay transport collaborator boundary.

The engine never talks to relays directly. Everything network-facing goes
through an object satisfying :class:`RelayClient`, which the host application
constructs (connection pooling, signing and reconnect policy live there) and
injects into :class:`relaychat.services.session.ClientSession`.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import Any, Protocol

from relaychat.schemas import ConnectionStatus, Event, EventDraft, InteractionCounts, Profile

Filter = Mapping[str, Any]
RawEvent = Mapping[str, Any]
EventCallback = Callable[[RawEvent | Event], None]


class RelayError(RuntimeError):
    """Base exception raised for relay collaborator failures."""


class PublishFailedError(RelayError):
    """Raised when publishing a locally-initiated event fails or times out.

    The failure is recoverable: optimistic state has already been rolled back
    and the user may retry the same logical action.
    """

    def __init__(self, message: str, *, local_id: str | None = None) -> None:
        super().__init__(message)
        self.local_id = local_id


class RelayClient(Protocol):
    """Contract consumed from the relay/transport collaborator."""

    async def query(self, filter: Filter) -> Sequence[RawEvent | Event]:
        """Run a one-shot bulk query across connected relays."""
        ...

    def subscribe(
        self,
        filter: Filter,
        on_event: EventCallback,
        *,
        on_end_of_stored: Callable[[], None] | None = None,
    ) -> str:
        """Open a live subscription and return its id.

        ``on_end_of_stored`` is called once the relays have sent every stored
        match and only new events will follow.
        """
        ...

    def unsubscribe(self, subscription_id: str) -> None:
        """Close a live subscription; closing twice is a no-op."""
        ...

    async def publish(self, draft: EventDraft) -> RawEvent | Event:
        """Sign and send ``draft``, returning the confirmed signed event."""
        ...

    async def get_profile(self, author_key: str) -> Profile | None:
        ...

    async def get_interaction_counts(
        self, post_ids: Sequence[str]
    ) -> Mapping[str, InteractionCounts]:
        ...

    def connection_status(self) -> ConnectionStatus:
        ...
