"""Thread assembly from a flat event set."""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable
from dataclasses import dataclass, field

from relaychat.schemas import Event

logger = logging.getLogger(__name__)


@dataclass
class ThreadNode:
    """A root post plus its direct replies.

    ``original`` is ``None`` when the root is not in the working set (pruned or
    not fetched yet); renderers show that as unavailable context.
    """

    root_id: str
    original: Event | None = None
    followed_replies: list[Event] = field(default_factory=list)
    unfollowed_replies: list[Event] = field(default_factory=list)

    @property
    def has_context(self) -> bool:
        return self.original is not None

    @property
    def replies(self) -> list[Event]:
        return [*self.followed_replies, *self.unfollowed_replies]


class ThreadAssembler:
    """Builds ``root id -> ThreadNode`` mappings.

    Each event is placed once, so feeding the same event twice (or rebuilding
    from a superset of an earlier input) yields the same mapping as a single
    pass over the distinct events.
    """

    def build(
        self,
        events: Iterable[Event],
        followed_authors: Collection[str],
    ) -> dict[str, ThreadNode]:
        """Partition ``events`` into threads.

        Args:
            events: Flat event set; reply lists keep this order, so pass a
                chronologically sorted snapshot when reply order matters.
            followed_authors: Authors whose replies go to ``followed_replies``.

        Returns:
            Mapping from root id to its thread.
        """
        distinct: dict[str, Event] = {}
        for event in events:
            distinct.setdefault(event.id, event)
        followed = set(followed_authors)

        threads: dict[str, ThreadNode] = {}
        for event in distinct.values():
            parent_id = event.reply_to_id
            if parent_id is None:
                node = threads.setdefault(event.id, ThreadNode(root_id=event.id))
                node.original = event
                continue

            node = threads.get(parent_id)
            if node is None:
                node = ThreadNode(root_id=parent_id, original=distinct.get(parent_id))
                threads[parent_id] = node
            if event.pubkey in followed:
                node.followed_replies.append(event)
            else:
                node.unfollowed_replies.append(event)

        gaps = sum(1 for node in threads.values() if node.original is None)
        if gaps:
            logger.debug("Built %d threads, %d without root context", len(threads), gaps)
        return threads
