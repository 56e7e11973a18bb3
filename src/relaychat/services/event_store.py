"""Deduplicated, bounded collection of protocol events.

The same event routinely arrives more than once: from a bulk query and again
from a live subscription, or from two relays. Insertion is therefore keyed by
event id and idempotent, and presentation order is always derived by sorting
on ``created_at`` (ties broken by id) rather than on arrival order.
"""

from __future__ import annotations

import heapq
import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable, Iterator

from relaychat.core.constants import EventKind
from relaychat.core.settings import settings
from relaychat.schemas import Event

logger = logging.getLogger(__name__)

EventPredicate = Callable[[Event], bool]


_HEAP_SLACK = 64


def _sort_key(event: Event) -> tuple[int, str]:
    return (event.created_at, event.id)


class EventStore:
    """Working set of events keyed by id.

    Retention is bounded by count (oldest events are evicted first) and
    optionally by age via :meth:`prune`. Deletion events are stored like any
    other event; an event counts as deleted once a deletion event from the
    *same author* references it, whichever of the two arrives first.
    """

    def __init__(
        self,
        max_events: int | None = None,
        max_age_seconds: int | None = None,
    ) -> None:
        self.max_events = max_events if max_events is not None else settings.store_max_events
        self.max_age_seconds = (
            max_age_seconds if max_age_seconds is not None else settings.store_max_age_seconds
        )
        self._events: dict[str, Event] = {}
        self._by_age: list[tuple[int, str]] = []
        # target id -> authors who asked for its deletion, oldest request first
        self._deletion_requests: OrderedDict[str, set[str]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._events)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._events

    def __iter__(self) -> Iterator[Event]:
        return iter(self._events.values())

    def has(self, event_id: str) -> bool:
        return event_id in self._events

    def get(self, event_id: str) -> Event | None:
        return self._events.get(event_id)

    def insert(self, event: Event) -> bool:
        """Insert ``event`` unless an event with the same id is already held.

        Returns:
            True if the event was added, False if it was a duplicate.
        """
        if event.id in self._events:
            logger.debug("Duplicate event %s ignored", event.id[:12])
            return False

        self._events[event.id] = event
        heapq.heappush(self._by_age, _sort_key(event))
        if event.kind == EventKind.DELETION:
            self._record_deletion(event)

        self._evict_overflow()
        return True

    def merge(self, events: Iterable[Event]) -> int:
        """Insert every event and return how many were new."""
        return sum(1 for event in events if self.insert(event))

    def is_deleted(self, event_id: str) -> bool:
        event = self._events.get(event_id)
        if event is None:
            return False
        return event.pubkey in self._deletion_requests.get(event_id, ())

    def snapshot(
        self,
        predicate: EventPredicate | None = None,
        *,
        descending: bool = False,
        include_deleted: bool = False,
    ) -> list[Event]:
        """Return matching events sorted by ``created_at``.

        Args:
            predicate: Optional filter applied to each event.
            descending: Newest first (feeds) instead of oldest first (transcripts).
            include_deleted: Keep events retracted by their author.
        """
        selected = [
            event
            for event in self._events.values()
            if (predicate is None or predicate(event))
            and (include_deleted or not self.is_deleted(event.id))
        ]
        selected.sort(key=_sort_key, reverse=descending)
        return selected

    def latest(self, kind: int, author: str) -> Event | None:
        """Return the newest event of ``kind`` by ``author`` (replaceable events)."""
        matches = self.snapshot(
            lambda event: event.kind == kind and event.pubkey == author,
            descending=True,
        )
        return matches[0] if matches else None

    def remove(self, event_id: str) -> bool:
        """Drop a single event; its age-heap entry is discarded lazily.

        The heap is rebuilt once stale entries outnumber live events. Deletion
        requests recorded from a removed deletion event stay in force until
        ``max_events`` newer requests push them out.
        """
        if self._events.pop(event_id, None) is None:
            return False
        if len(self._by_age) > 2 * len(self._events) + _HEAP_SLACK:
            self._compact()
        return True

    def prune(self, now: int | None = None) -> int:
        """Evict events older than ``max_age_seconds`` and return how many went."""
        if self.max_age_seconds is None:
            return 0
        cutoff = (int(time.time()) if now is None else now) - self.max_age_seconds
        removed = 0
        while self._by_age and self._by_age[0][0] < cutoff:
            _, event_id = heapq.heappop(self._by_age)
            if self.remove(event_id):
                removed += 1
        if removed:
            logger.debug("Pruned %d events older than %d", removed, cutoff)
        return removed

    def _evict_overflow(self) -> None:
        while len(self._events) > self.max_events and self._by_age:
            _, event_id = heapq.heappop(self._by_age)
            if self.remove(event_id):
                logger.debug("Evicted event %s to stay within %d", event_id[:12], self.max_events)

    def _record_deletion(self, event: Event) -> None:
        for target_id in event.referenced_ids:
            self._deletion_requests.setdefault(target_id, set()).add(event.pubkey)
            self._deletion_requests.move_to_end(target_id)
        # Requests outlive the deletion event but not without bound.
        while len(self._deletion_requests) > self.max_events:
            self._deletion_requests.popitem(last=False)

    def _compact(self) -> None:
        self._by_age = [_sort_key(event) for event in self._events.values()]
        heapq.heapify(self._by_age)
