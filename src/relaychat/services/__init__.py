# src/relaychat/services/__init__.py
"""State containers and session logic for the relaychat client engine."""

from .conversations import Conversation, ConversationBook
from .event_store import EventStore
from .ingest import MalformedEventError, coerce_event, coerce_events, parse_event
from .interactions import (
    InteractionCounter,
    InteractionHandle,
    InteractionReconciler,
    tally_interactions,
)
from .optimistic import (
    ActionInProgressError,
    ActionKind,
    ActionState,
    OptimisticActionManager,
    PendingAction,
    interleave,
)
from .references import (
    Reference,
    ReferenceResolver,
    ReferenceType,
    Tombstone,
    parse_references,
)
from .relay import PublishFailedError, RelayClient, RelayError
from .session import ClientSession, followed_authors
from .storage import KeyValueStore, MemoryKeyValueStore, SqlKeyValueStore
from .subscriptions import FeedState, SubscriptionHandle, SubscriptionRouter
from .threads import ThreadAssembler, ThreadNode

__all__ = [
    "ActionInProgressError",
    "ActionKind",
    "ActionState",
    "ClientSession",
    "Conversation",
    "ConversationBook",
    "EventStore",
    "FeedState",
    "InteractionCounter",
    "InteractionHandle",
    "InteractionReconciler",
    "KeyValueStore",
    "MalformedEventError",
    "MemoryKeyValueStore",
    "OptimisticActionManager",
    "PendingAction",
    "PublishFailedError",
    "Reference",
    "ReferenceResolver",
    "ReferenceType",
    "RelayClient",
    "RelayError",
    "SqlKeyValueStore",
    "SubscriptionHandle",
    "SubscriptionRouter",
    "ThreadAssembler",
    "ThreadNode",
    "Tombstone",
    "coerce_event",
    "coerce_events",
    "followed_authors",
    "interleave",
    "parse_event",
    "parse_references",
    "tally_interactions",
]
