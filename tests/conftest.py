# tests/conftest.py
from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Callable, Iterator, Mapping, Sequence
from itertools import count
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from relaychat.core.constants import EventKind
from relaychat.core.security import compute_event_id
from relaychat.core.settings import Settings
from relaychat.db.session import Base, make_session_factory
from relaychat.schemas import ConnectionStatus, Event, EventDraft, InteractionCounts, Profile
from relaychat.services.session import ClientSession
from relaychat.services.storage import MemoryKeyValueStore

TEST_DB_URL = "sqlite://"
TEST_SIGNATURE = "ab" * 64

_CLOCK = count(1_700_000_000)

EventFactory = Callable[..., Event]


def _key(label: str) -> str:
    return hashlib.sha256(label.encode()).hexdigest()


def build_event(
    *,
    pubkey: str,
    kind: int = EventKind.TEXT_NOTE,
    content: str = "",
    tags: Sequence[Sequence[str]] = (),
    created_at: int | None = None,
) -> Event:
    """Build an event whose id matches its content."""
    created = next(_CLOCK) if created_at is None else created_at
    tag_list = [list(tag) for tag in tags]
    return Event(
        id=compute_event_id(pubkey, created, int(kind), tag_list, content),
        pubkey=pubkey,
        created_at=created,
        kind=int(kind),
        tags=tag_list,
        content=content,
        sig=TEST_SIGNATURE,
    )


def _matches(filter: Mapping[str, Any], event: Event) -> bool:
    if "ids" in filter and event.id not in filter["ids"]:
        return False
    if "kinds" in filter and event.kind not in filter["kinds"]:
        return False
    if "authors" in filter and event.pubkey not in filter["authors"]:
        return False
    if "#e" in filter and not set(filter["#e"]) & set(event.referenced_ids):
        return False
    if "#p" in filter and not set(filter["#p"]) & set(event.mentioned_pubkeys):
        return False
    return True


class FakeRelay:
    """In-process transport collaborator that signs with the viewer's key."""

    def __init__(self, own_key: str) -> None:
        self.own_key = own_key
        self.events: list[Event] = []
        self.profiles: dict[str, Profile] = {}
        self.counts: dict[str, InteractionCounts] = {}
        self.subscriptions: dict[str, tuple[dict[str, Any], Callable[[Any], None]]] = {}
        self.end_of_stored: dict[str, Callable[[], None]] = {}
        self.subscribe_error: Exception | None = None
        self.unsubscribed: list[str] = []
        self.queries: list[dict[str, Any]] = []
        self.published: list[EventDraft] = []
        self.profile_requests: list[str] = []
        self.publish_error: Exception | None = None
        self.publish_delay = 0.0
        self.query_delay = 0.0
        self.counts_error: Exception | None = None
        self._subscription_ids = count(1)

    async def query(self, filter: Mapping[str, Any]) -> list[dict[str, Any]]:
        self.queries.append(dict(filter))
        if self.query_delay:
            await asyncio.sleep(self.query_delay)
        matched = [event for event in self.events if _matches(filter, event)]
        return [event.to_wire() for event in matched[: filter.get("limit", len(matched))]]

    def subscribe(
        self,
        filter: Mapping[str, Any],
        on_event: Callable[[Any], None],
        *,
        on_end_of_stored: Callable[[], None] | None = None,
    ) -> str:
        if self.subscribe_error is not None:
            raise self.subscribe_error
        subscription_id = f"sub-{next(self._subscription_ids)}"
        self.subscriptions[subscription_id] = (dict(filter), on_event)
        if on_end_of_stored is not None:
            self.end_of_stored[subscription_id] = on_end_of_stored
        return subscription_id

    def finish_stored(self, subscription_id: str) -> None:
        """Signal that every stored match for ``subscription_id`` has been sent."""
        self.end_of_stored[subscription_id]()

    def unsubscribe(self, subscription_id: str) -> None:
        self.subscriptions.pop(subscription_id, None)
        self.unsubscribed.append(subscription_id)

    def emit(self, raw: Any) -> None:
        """Deliver ``raw`` to every open subscription."""
        for _, on_event in list(self.subscriptions.values()):
            on_event(raw)

    async def publish(self, draft: EventDraft) -> dict[str, Any]:
        self.published.append(draft)
        if self.publish_delay:
            await asyncio.sleep(self.publish_delay)
        if self.publish_error is not None:
            raise self.publish_error
        event = build_event(
            pubkey=self.own_key,
            kind=draft.kind,
            content=draft.content,
            tags=draft.tags,
            created_at=draft.created_at,
        )
        self.events.append(event)
        return event.to_wire()

    async def get_profile(self, author_key: str) -> Profile | None:
        self.profile_requests.append(author_key)
        return self.profiles.get(author_key)

    async def get_interaction_counts(
        self, post_ids: Sequence[str]
    ) -> dict[str, InteractionCounts]:
        if self.counts_error is not None:
            raise self.counts_error
        return {post_id: self.counts[post_id] for post_id in post_ids if post_id in self.counts}

    def connection_status(self) -> ConnectionStatus:
        return ConnectionStatus(is_connected=True, connected_endpoints=["wss://relay.test"])


@pytest.fixture()
def alice() -> str:
    return _key("alice")


@pytest.fixture()
def bob() -> str:
    return _key("bob")


@pytest.fixture()
def carol() -> str:
    return _key("carol")


@pytest.fixture()
def viewer() -> str:
    """Public key of the signed-in user."""
    return _key("viewer")


@pytest.fixture()
def make_event(alice: str) -> EventFactory:
    """Return a factory for valid events, authored by alice unless told otherwise."""

    def _make(**kwargs: Any) -> Event:
        kwargs.setdefault("pubkey", alice)
        return build_event(**kwargs)

    return _make


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        store_max_events=5000,
        verify_event_ids=True,
        publish_timeout_seconds=0.2,
        fetch_timeout_seconds=0.2,
    )


@pytest.fixture()
def storage() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture()
def relay(viewer: str) -> FakeRelay:
    return FakeRelay(viewer)


@pytest.fixture()
def session(
    relay: FakeRelay,
    storage: MemoryKeyValueStore,
    viewer: str,
    test_settings: Settings,
) -> ClientSession:
    return ClientSession(relay, storage, viewer, test_settings)


@pytest.fixture(scope="session")
def engine() -> Iterator[Engine]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> Iterator[sessionmaker[Session]]:
    factory = make_session_factory(engine)
    try:
        yield factory
    finally:
        # Ensure each test sees a clean database even if commits occurred.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())
