"""Tests for the pending-action state machine."""

from __future__ import annotations

import pytest

from relaychat.core.constants import HEX_ID_LENGTH
from relaychat.services.event_store import EventStore
from relaychat.services.optimistic import (
    ActionInProgressError,
    ActionKind,
    ActionState,
    OptimisticActionManager,
    interleave,
)

POST = "b" * 64


def _visible(store: EventStore, manager: OptimisticActionManager):
    return interleave(store.snapshot(), manager.pending(ActionKind.SEND_MESSAGE))


def test_pending_send_is_visible_immediately() -> None:
    manager = OptimisticActionManager()

    action = manager.begin("send-message", {"content": "hi"})

    assert action.state is ActionState.PENDING
    assert manager.pending() == [action]
    assert action.local_id.startswith("local:")
    assert len(action.local_id) != HEX_ID_LENGTH


def test_successful_send_leaves_exactly_one_message(make_event) -> None:
    store = EventStore()
    manager = OptimisticActionManager()
    action = manager.begin(ActionKind.SEND_MESSAGE, {"content": "hi"}, created_at=100)
    assert len(_visible(store, manager)) == 1

    confirmed = make_event(content="hi", created_at=100)
    settled = manager.resolve(action.local_id, True, confirmed)
    store.insert(confirmed)

    assert settled.state is ActionState.CONFIRMED
    assert settled.event == confirmed
    assert _visible(store, manager) == [confirmed]


def test_failed_send_leaves_nothing() -> None:
    store = EventStore()
    manager = OptimisticActionManager()
    action = manager.begin(ActionKind.SEND_MESSAGE, {"content": "hi"})

    settled = manager.resolve(action.local_id, False)

    assert settled.state is ActionState.FAILED
    assert _visible(store, manager) == []


def test_resolve_unknown_id_is_ignored() -> None:
    manager = OptimisticActionManager()
    action = manager.begin(ActionKind.REPLY, {"content": "hi"})
    manager.resolve(action.local_id, True)

    assert manager.resolve(action.local_id, False) is None
    assert manager.resolve("local:missing", True) is None


def test_second_toggle_on_same_target_is_rejected() -> None:
    manager = OptimisticActionManager()
    manager.begin(ActionKind.LIKE, target_id=POST)

    with pytest.raises(ActionInProgressError) as excinfo:
        manager.begin(ActionKind.LIKE, target_id=POST)

    assert excinfo.value.target_id == POST
    assert len(manager) == 1


def test_like_and_unlike_share_a_slot() -> None:
    manager = OptimisticActionManager()
    manager.begin(ActionKind.LIKE, target_id=POST)

    with pytest.raises(ActionInProgressError):
        manager.begin(ActionKind.UNLIKE, target_id=POST)
    assert manager.in_progress(ActionKind.UNLIKE, POST)


def test_slot_frees_after_resolution() -> None:
    manager = OptimisticActionManager()
    first = manager.begin(ActionKind.REPOST, target_id=POST)
    manager.resolve(first.local_id, False)

    second = manager.begin(ActionKind.REPOST, target_id=POST)

    assert second.local_id != first.local_id
    assert not manager.in_progress(ActionKind.LIKE, POST)


def test_sends_and_replies_are_not_limited() -> None:
    manager = OptimisticActionManager()

    manager.begin(ActionKind.REPLY, target_id=POST)
    manager.begin(ActionKind.REPLY, target_id=POST)
    manager.begin(ActionKind.SEND_MESSAGE)
    manager.begin(ActionKind.SEND_MESSAGE)

    assert len(manager.pending()) == 4


def test_toggle_requires_target() -> None:
    with pytest.raises(ValueError):
        OptimisticActionManager().begin(ActionKind.LIKE)


def test_interleave_orders_by_time_with_confirmed_first(make_event) -> None:
    manager = OptimisticActionManager()
    early = make_event(created_at=10)
    tied = make_event(created_at=20)
    pending_tied = manager.begin(ActionKind.SEND_MESSAGE, created_at=20)
    pending_late = manager.begin(ActionKind.SEND_MESSAGE, created_at=30)

    merged = interleave([tied, early], manager.pending())

    assert merged == [early, tied, pending_tied, pending_late]
    assert interleave([tied, early], manager.pending(), descending=True)[0] is pending_late
