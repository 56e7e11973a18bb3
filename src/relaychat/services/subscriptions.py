"""Live subscriptions bound to logical feeds.

A logical feed (one open channel, the direct-message inbox, the followed
authors' posts) maps to exactly one relay subscription, however many local
listeners attach to it. Incoming events pass through a sink, normally the
session's ingest step, which stores them and hands back the validated
event. Each feed remembers the ids it has delivered, so a listener sees an
event once even when another feed, or the session's own publish, stored it
first.
"""

from __future__ import annotations

import itertools
import json
import logging
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from relaychat.schemas import Event
from relaychat.services.relay import Filter, RawEvent, RelayClient

logger = logging.getLogger(__name__)

# Returns the validated event, already held or not, or None when malformed.
EventSink = Callable[[RawEvent | Event], Event | None]
EventListener = Callable[[Event], None]

_SEEN_LIMIT = 5000


class FeedState(str, Enum):
    """Lifecycle of a logical feed: Idle -> Subscribing -> Live -> Closed."""

    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    LIVE = "live"
    CLOSED = "closed"


@dataclass(frozen=True)
class SubscriptionHandle:
    """Token identifying one local listener on one logical feed."""

    handle_id: int
    feed_key: str


@dataclass
class _Feed:
    key: str
    filter: dict[str, Any]
    state: FeedState = FeedState.IDLE
    subscription_id: str | None = None
    listeners: dict[int, EventListener] = field(default_factory=dict)
    seen: OrderedDict[str, None] = field(default_factory=OrderedDict)

    def first_sight(self, event_id: str) -> bool:
        """Record ``event_id`` and report whether this feed had not delivered it yet."""
        if event_id in self.seen:
            return False
        self.seen[event_id] = None
        if len(self.seen) > _SEEN_LIMIT:
            self.seen.popitem(last=False)
        return True


def feed_key_for(filter: Filter) -> str:
    """Derive a stable feed identity from a filter."""
    return json.dumps(filter, sort_keys=True, separators=(",", ":"), default=list)


class SubscriptionRouter:
    """Opens, fans out and tears down live subscriptions."""

    def __init__(self, relay: RelayClient, sink: EventSink) -> None:
        self._relay = relay
        self._sink = sink
        self._feeds: dict[str, _Feed] = {}
        self._handles: dict[int, str] = {}
        self._ids = itertools.count(1)

    def open(
        self,
        filter: Filter,
        on_event: EventListener,
        *,
        feed_key: str | None = None,
    ) -> SubscriptionHandle:
        """Attach ``on_event`` to the feed described by ``filter``.

        The relay subscription is opened only for the first listener of a feed.
        If the relay refuses it, the error propagates and the feed is not
        registered, so the next ``open`` tries again.
        """
        key = feed_key or feed_key_for(filter)
        feed = self._feeds.get(key)
        if feed is None:
            feed = _Feed(key=key, filter=dict(filter))
            self._feeds[key] = feed
            feed.state = FeedState.SUBSCRIBING
            try:
                feed.subscription_id = self._relay.subscribe(
                    feed.filter,
                    lambda raw, key=key: self._deliver(key, raw),
                    on_end_of_stored=lambda key=key: self.acknowledge(key),
                )
            except Exception:
                self._feeds.pop(key, None)
                feed.state = FeedState.CLOSED
                logger.warning("Subscribing feed %s failed", key)
                raise
            logger.info("Opened feed %s as subscription %s", key, feed.subscription_id)

        handle = SubscriptionHandle(next(self._ids), key)
        feed.listeners[handle.handle_id] = on_event
        self._handles[handle.handle_id] = key
        return handle

    def close(self, handle: SubscriptionHandle | None) -> None:
        """Detach a listener; closing twice or closing an unknown handle is a no-op."""
        if handle is None:
            return
        key = self._handles.pop(handle.handle_id, None)
        if key is None:
            return
        feed = self._feeds.get(key)
        if feed is None:
            return
        feed.listeners.pop(handle.handle_id, None)
        if not feed.listeners:
            self._teardown(feed)

    def close_all(self) -> None:
        for feed in list(self._feeds.values()):
            for handle_id in list(feed.listeners):
                self._handles.pop(handle_id, None)
            feed.listeners.clear()
            self._teardown(feed)

    def acknowledge(self, feed_key: str) -> None:
        """Mark a feed live once the relay reports the end of stored events."""
        feed = self._feeds.get(feed_key)
        if feed is not None and feed.state is FeedState.SUBSCRIBING:
            feed.state = FeedState.LIVE
            logger.debug("Feed %s acknowledged", feed_key)

    def state(self, feed_key: str) -> FeedState:
        feed = self._feeds.get(feed_key)
        return feed.state if feed is not None else FeedState.CLOSED

    def listener_count(self, feed_key: str) -> int:
        feed = self._feeds.get(feed_key)
        return len(feed.listeners) if feed is not None else 0

    @property
    def open_feeds(self) -> Mapping[str, FeedState]:
        return {key: feed.state for key, feed in self._feeds.items()}

    def _teardown(self, feed: _Feed) -> None:
        self._feeds.pop(feed.key, None)
        feed.state = FeedState.CLOSED
        if feed.subscription_id is not None:
            self._relay.unsubscribe(feed.subscription_id)
        logger.info("Closed feed %s", feed.key)

    def _deliver(self, feed_key: str, raw: RawEvent | Event) -> None:
        feed = self._feeds.get(feed_key)
        if feed is None:
            # Late delivery after close: still ingest, nobody to notify.
            self._sink(raw)
            return
        if feed.state is FeedState.SUBSCRIBING:
            feed.state = FeedState.LIVE

        event = self._sink(raw)
        if event is None or not feed.first_sight(event.id):
            return
        for handle_id, listener in list(feed.listeners.items()):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Listener %d on feed %s failed for event %s",
                    handle_id,
                    feed_key,
                    event.id[:12],
                )
