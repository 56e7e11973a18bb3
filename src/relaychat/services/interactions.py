"""Per-post interaction counters and their reconciliation.

Counters combine three sources:

- network counts (``record_network_counts``), authoritative once they arrive;
- the persisted local like/repost id caches, consulted only for posts with no
  network data yet (typically right after start-up);
- optimistic toggles, applied immediately and either confirmed or inverted.

When network data and a local toggle disagree, whichever resolved most
recently wins: a network refresh overwrites a confirmed toggle, and rolling
back a toggle after a newer network refresh leaves the network values alone.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace

from relaychat.core.constants import LIKE_CONTENT, EventKind
from relaychat.core.settings import Settings, settings as default_settings
from relaychat.schemas import Event, InteractionCounts
from relaychat.services.storage import KeyValueStore, load_json, save_json

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InteractionCounter:
    """Rendered interaction state for one post. Counts are never negative."""

    post_id: str
    like_count: int = 0
    user_liked: bool = False
    repost_count: int = 0
    user_reposted: bool = False
    reply_count: int = 0
    from_network: bool = False


class InteractionHandle:
    """Confirmation handle returned by a toggle.

    ``confirm(True)`` keeps the optimistic state; ``confirm(False)`` restores the
    exact prior state. Only the first call has any effect.
    """

    def __init__(
        self,
        reconciler: InteractionReconciler,
        counter: InteractionCounter,
        previous: InteractionCounter | None,
        revision: int,
        field_name: str,
    ) -> None:
        self.counter = counter
        self._reconciler = reconciler
        self._previous = previous
        self._revision = revision
        self._field_name = field_name
        self._settled = False

    @property
    def changed(self) -> bool:
        """False when the toggle was a no-op (e.g. reposting twice)."""
        return self._previous is not None

    @property
    def settled(self) -> bool:
        return self._settled

    def confirm(self, success: bool) -> InteractionCounter:
        if self._settled:
            return self._reconciler.counter(self.counter.post_id)
        self._settled = True
        if success or self._previous is None:
            return self._reconciler.counter(self.counter.post_id)
        return self._reconciler._rollback(self._previous, self._revision, self._field_name)


class InteractionReconciler:
    """Owns interaction counters for every post on screen."""

    def __init__(self, storage: KeyValueStore, settings: Settings | None = None) -> None:
        self._settings = settings or default_settings
        self._storage = storage
        self._counters: dict[str, InteractionCounter] = {}
        self._revisions: dict[str, int] = defaultdict(int)
        self._liked_cache: set[str] = set(
            load_json(storage, self._settings.liked_posts_key, [])
        )
        self._reposted_cache: set[str] = set(
            load_json(storage, self._settings.reposted_posts_key, [])
        )

    @property
    def liked_cache(self) -> frozenset[str]:
        return frozenset(self._liked_cache)

    @property
    def reposted_cache(self) -> frozenset[str]:
        return frozenset(self._reposted_cache)

    def counter(self, post_id: str) -> InteractionCounter:
        """Return the current counter, falling back to the local cache."""
        current = self._counters.get(post_id)
        if current is not None:
            return current
        return InteractionCounter(
            post_id=post_id,
            user_liked=post_id in self._liked_cache,
            user_reposted=post_id in self._reposted_cache,
        )

    def counters(self, post_ids: Iterable[str]) -> dict[str, InteractionCounter]:
        return {post_id: self.counter(post_id) for post_id in post_ids}

    def has_network_data(self, post_id: str) -> bool:
        current = self._counters.get(post_id)
        return current is not None and current.from_network

    def record_network_counts(self, post_id: str, counts: InteractionCounts) -> InteractionCounter:
        """Overwrite the network-known fields for ``post_id``."""
        current = self.counter(post_id)
        updated = replace(
            current,
            like_count=counts.like_count,
            repost_count=counts.repost_count,
            reply_count=counts.reply_count,
            user_liked=current.user_liked if counts.user_liked is None else counts.user_liked,
            user_reposted=(
                current.user_reposted if counts.user_reposted is None else counts.user_reposted
            ),
            from_network=True,
        )
        self._counters[post_id] = updated
        self._revisions[post_id] += 1
        self._sync_caches(updated)
        return updated

    def record_many(self, counts: Mapping[str, InteractionCounts]) -> None:
        for post_id, post_counts in counts.items():
            self.record_network_counts(post_id, post_counts)

    def record_reply(self, post_id: str) -> InteractionCounter:
        """Count a reply the viewer just published."""
        current = self.counter(post_id)
        updated = replace(current, reply_count=current.reply_count + 1)
        self._counters[post_id] = updated
        return updated

    def toggle_like(self, post_id: str) -> InteractionHandle:
        """Flip ``user_liked`` and adjust ``like_count`` by one, clamped at zero."""
        previous = self.counter(post_id)
        liked = not previous.user_liked
        count = previous.like_count + 1 if liked else max(0, previous.like_count - 1)
        updated = replace(previous, user_liked=liked, like_count=count)
        self._apply(updated)
        logger.debug("Optimistic %s on %s", "like" if liked else "unlike", post_id[:12])
        return InteractionHandle(self, updated, previous, self._revisions[post_id], "like")

    def toggle_repost(self, post_id: str) -> InteractionHandle:
        """Mark the post reposted; reposting an already-reposted post is a no-op."""
        previous = self.counter(post_id)
        if previous.user_reposted:
            return InteractionHandle(self, previous, None, self._revisions[post_id], "repost")
        updated = replace(previous, user_reposted=True, repost_count=previous.repost_count + 1)
        self._apply(updated)
        logger.debug("Optimistic repost on %s", post_id[:12])
        return InteractionHandle(self, updated, previous, self._revisions[post_id], "repost")

    def _apply(self, counter: InteractionCounter) -> None:
        self._counters[counter.post_id] = counter
        self._sync_caches(counter)

    def _rollback(
        self, previous: InteractionCounter, revision: int, field_name: str
    ) -> InteractionCounter:
        post_id = previous.post_id
        if self._revisions[post_id] != revision:
            # Network data resolved after the toggle and is the newer truth.
            logger.debug("Rollback on %s superseded by network data", post_id[:12])
            return self.counter(post_id)
        current = self.counter(post_id)
        if field_name == "like":
            restored = replace(
                current, user_liked=previous.user_liked, like_count=previous.like_count
            )
        else:
            restored = replace(
                current,
                user_reposted=previous.user_reposted,
                repost_count=previous.repost_count,
            )
        self._apply(restored)
        logger.info("Rolled back %s on %s", field_name, post_id[:12])
        return restored

    def _sync_caches(self, counter: InteractionCounter) -> None:
        liked_before = counter.post_id in self._liked_cache
        reposted_before = counter.post_id in self._reposted_cache
        if counter.user_liked:
            self._liked_cache.add(counter.post_id)
        else:
            self._liked_cache.discard(counter.post_id)
        if counter.user_reposted:
            self._reposted_cache.add(counter.post_id)
        else:
            self._reposted_cache.discard(counter.post_id)

        if liked_before != counter.user_liked:
            save_json(self._storage, self._settings.liked_posts_key, sorted(self._liked_cache))
        if reposted_before != counter.user_reposted:
            save_json(
                self._storage, self._settings.reposted_posts_key, sorted(self._reposted_cache)
            )


def tally_interactions(
    events: Iterable[Event],
    post_ids: Iterable[str],
    own_key: str | None = None,
) -> dict[str, InteractionCounts]:
    """Count reactions, reposts and replies targeting ``post_ids``.

    Each event counts towards the post named by its first ``e`` tag. Only ``+``
    (or empty) reactions count as likes, and the viewer's own replies are not
    counted.
    """
    wanted = set(post_ids)
    likes: dict[str, set[str]] = defaultdict(set)
    reposts: dict[str, set[str]] = defaultdict(set)
    replies: dict[str, set[str]] = defaultdict(set)
    liked_by_me: set[str] = set()
    reposted_by_me: set[str] = set()

    for event in events:
        target = event.reply_to_id
        if target not in wanted:
            continue
        if event.kind == EventKind.REACTION and event.content in (LIKE_CONTENT, ""):
            likes[target].add(event.id)
            if event.pubkey == own_key:
                liked_by_me.add(target)
        elif event.kind == EventKind.REPOST:
            reposts[target].add(event.id)
            if event.pubkey == own_key:
                reposted_by_me.add(target)
        elif event.kind == EventKind.TEXT_NOTE and event.pubkey != own_key:
            replies[target].add(event.id)

    return {
        post_id: InteractionCounts(
            like_count=len(likes[post_id]),
            repost_count=len(reposts[post_id]),
            reply_count=len(replies[post_id]),
            user_liked=post_id in liked_by_me if own_key else None,
            user_reposted=post_id in reposted_by_me if own_key else None,
        )
        for post_id in wanted
    }
