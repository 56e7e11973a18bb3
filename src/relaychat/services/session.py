"""Session-scoped client context.

A :class:`ClientSession` owns one instance of every state container (event
store, interaction counters, pending actions, reference cache, live feeds and
conversations) for a signed-in viewer. Views receive the session instead of
rebuilding their own maps, and every network call goes through the injected
:class:`~relaychat.services.relay.RelayClient` with a timeout, so nothing is
ever left pending forever.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Collection, Iterable, Sequence

from relaychat.core.constants import (
    LIKE_CONTENT,
    MARKER_REPLY,
    MARKER_ROOT,
    TAG_EVENT,
    TAG_PUBKEY,
    EventKind,
)
from relaychat.core.settings import Settings, settings as default_settings
from relaychat.schemas import ConnectionStatus, Event, EventDraft, Profile
from relaychat.services.conversations import Conversation, ConversationBook
from relaychat.services.event_store import EventStore
from relaychat.services.ingest import MalformedEventError, coerce_event, coerce_events, parse_event
from relaychat.services.interactions import (
    InteractionCounter,
    InteractionReconciler,
    tally_interactions,
)
from relaychat.services.optimistic import (
    ActionKind,
    OptimisticActionManager,
    PendingAction,
    interleave,
)
from relaychat.services.references import Reference, ReferenceResolver, ResolvedReference
from relaychat.services.relay import (
    Filter,
    PublishFailedError,
    RawEvent,
    RelayClient,
    RelayError,
)
from relaychat.services.storage import KeyValueStore
from relaychat.services.subscriptions import (
    EventListener,
    SubscriptionHandle,
    SubscriptionRouter,
    feed_key_for,
)
from relaychat.services.threads import ThreadAssembler, ThreadNode

logger = logging.getLogger(__name__)

DIRECT_MESSAGES_FEED = "direct-messages"

_INTERACTION_KINDS = (EventKind.TEXT_NOTE, EventKind.REPOST, EventKind.REACTION)


def followed_authors(store: EventStore, author: str) -> set[str]:
    """Return the authors ``author`` follows according to their newest contact list."""
    contacts = store.latest(EventKind.CONTACTS, author)
    if contacts is None:
        return set()
    return set(contacts.mentioned_pubkeys)


class ClientSession:
    """Shared client state for one viewer, plus the user-facing operations."""

    def __init__(
        self,
        relay: RelayClient,
        storage: KeyValueStore,
        own_key: str,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.relay = relay
        self.own_key = own_key
        self.store = EventStore(
            max_events=self.settings.store_max_events,
            max_age_seconds=self.settings.store_max_age_seconds,
        )
        self.threads = ThreadAssembler()
        self.interactions = InteractionReconciler(storage, self.settings)
        self.actions = OptimisticActionManager()
        self.references = ReferenceResolver(
            relay, self.store, timeout_seconds=self.settings.fetch_timeout_seconds
        )
        self.router = SubscriptionRouter(relay, self._accept)
        self.conversations = ConversationBook(own_key, storage, self.settings)

    # Ingestion

    def ingest(self, raw: RawEvent | Event) -> Event | None:
        """Validate and store one event.

        Returns:
            The event if it was new, ``None`` if it was malformed or already held.
        """
        event = coerce_event(raw, verify_id=self.settings.verify_event_ids)
        if event is None or not self._store(event):
            return None
        return event

    def _accept(self, raw: RawEvent | Event) -> Event | None:
        """Live-feed sink: store the event and return it even if it was already held."""
        event = coerce_event(raw, verify_id=self.settings.verify_event_ids)
        if event is not None:
            self._store(event)
        return event

    def _store(self, event: Event) -> bool:
        self.store.prune()
        if not self.store.insert(event):
            return False
        if event.kind == EventKind.ENCRYPTED_DM:
            self.conversations.add(event)
        return True

    def ingest_many(self, raws: Iterable[RawEvent | Event]) -> list[Event]:
        accepted = [event for event in map(self.ingest, raws) if event is not None]
        if accepted:
            logger.debug("Ingested %d new events", len(accepted))
        return accepted

    # Feed

    async def load_feed(
        self,
        authors: Collection[str] | None = None,
        limit: int | None = None,
    ) -> dict[str, ThreadNode]:
        """Fetch recent posts by ``authors`` and return the feed threads.

        Defaults to the viewer's followed authors. Interaction counts for every
        thread root are refreshed before returning.
        """
        wanted = set(authors) if authors is not None else followed_authors(self.store, self.own_key)
        if not wanted:
            return {}
        events = await self._query(
            {
                "kinds": [int(EventKind.TEXT_NOTE)],
                "authors": sorted(wanted),
                "limit": limit or self.settings.feed_query_limit,
            }
        )
        self.ingest_many(events)
        threads = self.feed_threads(wanted)
        await self.refresh_interactions(list(threads))
        return threads

    def feed_threads(self, followed: Collection[str] | None = None) -> dict[str, ThreadNode]:
        if followed is None:
            followed = followed_authors(self.store, self.own_key)
        notes = self.store.snapshot(lambda event: event.kind == EventKind.TEXT_NOTE)
        return self.threads.build(notes, followed)

    async def refresh_interactions(self, post_ids: Iterable[str]) -> dict[str, InteractionCounter]:
        """Pull interaction counts for ``post_ids`` and return the updated counters.

        Posts the network omits are tallied from the events already held. When
        the network call itself fails, posts that already carry network counts
        keep them, since a tally of a partial local store is not newer data.
        """
        wanted = list(dict.fromkeys(post_ids))
        if not wanted:
            return {}
        failed = False
        try:
            counts = dict(
                await asyncio.wait_for(
                    self.relay.get_interaction_counts(wanted),
                    self.settings.fetch_timeout_seconds,
                )
            )
        except TimeoutError:
            logger.warning("Interaction counts timed out for %d posts", len(wanted))
            counts, failed = {}, True
        except RelayError as exc:
            logger.warning("Interaction counts failed: %s", exc)
            counts, failed = {}, True

        missing = [
            post_id
            for post_id in wanted
            if post_id not in counts
            and not (failed and self.interactions.has_network_data(post_id))
        ]
        if missing:
            held = self.store.snapshot(lambda event: event.kind in _INTERACTION_KINDS)
            for post_id, tallied in tally_interactions(held, missing, self.own_key).items():
                # Absence of a held reaction is not evidence; keep cached flags.
                counts[post_id] = tallied.model_copy(
                    update={
                        "user_liked": tallied.user_liked or None,
                        "user_reposted": tallied.user_reposted or None,
                    }
                )

        self.interactions.record_many(
            {post_id: counts[post_id] for post_id in wanted if post_id in counts}
        )
        return self.interactions.counters(wanted)

    # Live feeds

    def open_channel(self, channel_id: str, on_event: EventListener) -> SubscriptionHandle:
        return self.router.open(
            {"kinds": [int(EventKind.CHANNEL_MESSAGE)], "#e": [channel_id]}, on_event
        )

    def open_direct_messages(self, on_event: EventListener) -> SubscriptionHandle:
        return self.router.open(
            {"kinds": [int(EventKind.ENCRYPTED_DM)], "#p": [self.own_key]},
            on_event,
            feed_key=DIRECT_MESSAGES_FEED,
        )

    def open_feed(self, authors: Collection[str], on_event: EventListener) -> SubscriptionHandle:
        return self.router.open(
            {"kinds": [int(EventKind.TEXT_NOTE)], "authors": sorted(set(authors))}, on_event
        )

    def close(self, handle: SubscriptionHandle | None) -> None:
        self.router.close(handle)

    def close_all(self) -> None:
        """Tear down every live feed. Pending actions keep resolving."""
        self.router.close_all()

    # Channels

    async def load_channel(
        self, channel_id: str, limit: int | None = None
    ) -> Sequence[Event | PendingAction]:
        """Fetch channel history and the viewer's moderation actions, then return the transcript."""
        messages = await self._query(
            {
                "kinds": [int(EventKind.CHANNEL_MESSAGE)],
                "#e": [channel_id],
                "limit": limit or self.settings.feed_query_limit,
            }
        )
        moderation = await self._query(
            {
                "kinds": [int(EventKind.CHANNEL_HIDE_MESSAGE), int(EventKind.CHANNEL_MUTE_USER)],
                "authors": [self.own_key],
            }
        )
        self.ingest_many([*messages, *moderation])
        return self.channel_messages(channel_id)

    def channel_messages(self, channel_id: str) -> Sequence[Event | PendingAction]:
        """Return the channel transcript, oldest first, pending sends included."""
        hidden, muted = self._moderation()
        confirmed = self.store.snapshot(
            lambda event: event.kind == EventKind.CHANNEL_MESSAGE
            and event.channel_id == channel_id
            and event.id not in hidden
            and event.pubkey not in muted
        )
        pending = self.actions.pending(
            ActionKind.SEND_MESSAGE,
            lambda action: action.payload.get("channel_id") == channel_id,
        )
        return interleave(confirmed, pending)

    async def send_channel_message(
        self,
        channel_id: str,
        text: str,
        reply_to: Event | None = None,
    ) -> Event:
        tags = [[TAG_EVENT, channel_id, "", MARKER_ROOT]]
        if reply_to is not None:
            tags.append([TAG_EVENT, reply_to.id, "", MARKER_REPLY])
            tags.append([TAG_PUBKEY, reply_to.pubkey])
        now = int(time.time())
        action = self.actions.begin(
            ActionKind.SEND_MESSAGE,
            {"channel_id": channel_id, "content": text},
            created_at=now,
        )
        draft = EventDraft(
            kind=EventKind.CHANNEL_MESSAGE, content=text, tags=tags, created_at=now
        )
        return await self._publish(action, draft)

    # Direct messages

    def conversation_messages(self, contact_key: str) -> Sequence[Event | PendingAction]:
        conversation = self.conversations.get(contact_key)
        confirmed = conversation.messages if conversation is not None else []
        pending = self.actions.pending(
            ActionKind.SEND_MESSAGE,
            lambda action: action.payload.get("contact_key") == contact_key,
        )
        return interleave(confirmed, pending)

    async def send_direct_message(self, contact_key: str, content: str) -> Event:
        """Publish an already-encrypted direct message to ``contact_key``."""
        now = int(time.time())
        action = self.actions.begin(
            ActionKind.SEND_MESSAGE,
            {"contact_key": contact_key, "content": content},
            created_at=now,
        )
        draft = EventDraft(
            kind=EventKind.ENCRYPTED_DM,
            content=content,
            tags=[[TAG_PUBKEY, contact_key]],
            created_at=now,
        )
        return await self._publish(action, draft)

    def mark_conversation_read(self, contact_key: str) -> Conversation | None:
        self.conversations.mark_as_read(contact_key)
        return self.conversations.get(contact_key)

    # Posts

    async def reply(self, post: Event, text: str) -> Event:
        now = int(time.time())
        action = self.actions.begin(
            ActionKind.REPLY,
            {"post_id": post.id, "content": text},
            target_id=post.id,
            created_at=now,
        )
        draft = EventDraft(
            kind=EventKind.TEXT_NOTE,
            content=text,
            tags=[[TAG_EVENT, post.id], [TAG_PUBKEY, post.pubkey]],
            created_at=now,
        )
        try:
            event = await self._publish(action, draft)
        finally:
            self._settle_abandoned(action)
        self.interactions.record_reply(post.id)
        return event

    async def toggle_like(self, post: Event) -> InteractionCounter:
        """Like ``post``, or unlike it when the viewer already does.

        Raises:
            ActionInProgressError: A like or unlike of this post is still pending.
            PublishFailedError: The network rejected the change; counters are restored.
        """
        liked = self.interactions.counter(post.id).user_liked
        kind = ActionKind.UNLIKE if liked else ActionKind.LIKE
        action = self.actions.begin(kind, {"post_id": post.id}, target_id=post.id)
        handle = self.interactions.toggle_like(post.id)

        succeeded = False
        try:
            if liked:
                await self._retract_likes(action, post)
            else:
                draft = EventDraft(
                    kind=EventKind.REACTION,
                    content=LIKE_CONTENT,
                    tags=[[TAG_EVENT, post.id], [TAG_PUBKEY, post.pubkey]],
                    created_at=action.created_at,
                )
                await self._publish(action, draft)
            succeeded = True
        finally:
            self._settle_abandoned(action)
            handle.confirm(succeeded)
        return self.interactions.counter(post.id)

    async def repost(self, post: Event) -> InteractionCounter:
        """Repost ``post``; reposting twice is a no-op."""
        current = self.interactions.counter(post.id)
        if current.user_reposted:
            return current
        action = self.actions.begin(ActionKind.REPOST, {"post_id": post.id}, target_id=post.id)
        handle = self.interactions.toggle_repost(post.id)
        draft = EventDraft(
            kind=EventKind.REPOST,
            content=json.dumps(post.to_wire(), separators=(",", ":"), ensure_ascii=False),
            tags=[[TAG_EVENT, post.id], [TAG_PUBKEY, post.pubkey]],
            created_at=action.created_at,
        )

        succeeded = False
        try:
            await self._publish(action, draft)
            succeeded = True
        finally:
            self._settle_abandoned(action)
            handle.confirm(succeeded)
        return self.interactions.counter(post.id)

    # References and profiles

    async def resolve_references(self, content: str) -> list[tuple[Reference, ResolvedReference]]:
        return await self.references.resolve_content(content)

    async def profile(self, author_key: str) -> Profile | None:
        return await self.references.profile(author_key)

    def connection_status(self) -> ConnectionStatus:
        return self.relay.connection_status()

    # Internals

    def _moderation(self) -> tuple[set[str], set[str]]:
        hidden: set[str] = set()
        muted: set[str] = set()
        for event in self.store.snapshot(lambda event: event.pubkey == self.own_key):
            if event.kind == EventKind.CHANNEL_HIDE_MESSAGE:
                hidden.update(event.referenced_ids)
            elif event.kind == EventKind.CHANNEL_MUTE_USER:
                muted.update(event.mentioned_pubkeys)
        return hidden, muted

    def _settle_abandoned(self, action: PendingAction) -> None:
        # Cancellation or an error before the publish step leaves the action open.
        if action.local_id in self.actions:
            logger.warning("Abandoned %s %s", action.kind.value, action.local_id)
            self.actions.resolve(action.local_id, False)

    async def _retract_likes(self, action: PendingAction, post: Event) -> None:
        """Publish a deletion of the viewer's reactions to ``post``.

        When no reaction can be found there is nothing to retract and the
        unlike settles as confirmed.
        """

        def is_own_like(event: Event) -> bool:
            return (
                event.kind == EventKind.REACTION
                and event.pubkey == self.own_key
                and event.reply_to_id == post.id
            )

        reactions = self.store.snapshot(is_own_like)
        if not reactions:
            fetched = await self._query(
                {
                    "kinds": [int(EventKind.REACTION)],
                    "authors": [self.own_key],
                    "#e": [post.id],
                    "limit": 10,
                }
            )
            self.ingest_many(fetched)
            reactions = [event for event in fetched if is_own_like(event)]

        if not reactions:
            logger.info("No reaction to retract for %s", post.id[:12])
            self.actions.resolve(action.local_id, True)
            return

        draft = EventDraft(
            kind=EventKind.DELETION,
            content="",
            tags=[[TAG_EVENT, reaction.id] for reaction in reactions],
            created_at=action.created_at,
        )
        await self._publish(action, draft)

    async def _query(self, filter: Filter) -> list[Event]:
        try:
            raws = await asyncio.wait_for(
                self.relay.query(filter), self.settings.fetch_timeout_seconds
            )
        except TimeoutError:
            logger.warning("Query timed out: %s", feed_key_for(filter))
            return []
        except RelayError as exc:
            logger.warning("Query failed: %s", exc)
            return []
        return coerce_events(raws, verify_id=self.settings.verify_event_ids)

    async def _publish(self, action: PendingAction, draft: EventDraft) -> Event:
        """Publish ``draft`` on behalf of ``action`` and settle the action.

        On success the confirmed event is stored in the same step that settles
        the action, so a view never sees both the pending and the confirmed copy.

        Raises:
            PublishFailedError: If the collaborator fails, times out or returns
                an invalid event. The action has been settled as failed.
        """
        try:
            raw = await asyncio.wait_for(
                self.relay.publish(draft), self.settings.publish_timeout_seconds
            )
            event = parse_event(raw, verify_id=self.settings.verify_event_ids)
        except (TimeoutError, RelayError, MalformedEventError, OSError) as exc:
            self.actions.resolve(action.local_id, False)
            if isinstance(exc, TimeoutError):
                reason = "timed out"
            else:
                reason = str(exc) or type(exc).__name__
            logger.warning(
                "Publishing %s %s failed: %s", action.kind.value, action.local_id, reason
            )
            raise PublishFailedError(
                f"{action.kind.value} failed: {reason}", local_id=action.local_id
            ) from exc
        except BaseException:
            # Cancellation of the caller still settles the action.
            self.actions.resolve(action.local_id, False)
            raise

        self.actions.resolve(action.local_id, True, event)
        self.ingest(event)
        logger.info("Published %s as %s", action.kind.value, event.id[:12])
        return event
