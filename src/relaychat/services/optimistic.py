"""Tentative local actions awaiting network confirmation.

Every user intent (send, reply, like, unlike, repost) becomes a
:class:`PendingAction` the moment it is made, so renderers can show it before
the network answers. Resolution removes the entry: on success the confirmed
event takes its place in the event store, on failure the view simply returns
to what it was before the action.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from relaychat.schemas import Event

logger = logging.getLogger(__name__)


class ActionKind(str, Enum):
    """Kinds of locally-initiated actions."""

    SEND_MESSAGE = "send-message"
    LIKE = "like"
    UNLIKE = "unlike"
    REPOST = "repost"
    REPLY = "reply"

    @property
    def is_toggle(self) -> bool:
        return self in (ActionKind.LIKE, ActionKind.UNLIKE, ActionKind.REPOST)

    @property
    def slot_family(self) -> str:
        """Like and unlike flip the same state, so they share one in-flight slot."""
        if self in (ActionKind.LIKE, ActionKind.UNLIKE):
            return "like"
        return self.value


class ActionState(str, Enum):
    """Lifecycle states of a pending action."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ActionInProgressError(RuntimeError):
    """Raised when a toggle targets a post that already has one in flight."""

    def __init__(self, family: str, target_id: str) -> None:
        super().__init__(f"{family} already in progress for {target_id}")
        self.family = family
        self.target_id = target_id


@dataclass
class PendingAction:
    """A locally-initiated action that the network has not answered yet.

    ``local_id`` never collides with a protocol event id: protocol ids are
    64 hex characters, local ids carry a ``local:`` prefix.
    """

    local_id: str
    kind: ActionKind
    payload: dict[str, Any]
    target_id: str | None = None
    created_at: int = field(default_factory=lambda: int(time.time()))
    state: ActionState = ActionState.PENDING
    event: Event | None = None

    @property
    def is_pending(self) -> bool:
        return self.state is ActionState.PENDING


def new_local_id() -> str:
    return f"local:{uuid.uuid4().hex}"


class OptimisticActionManager:
    """Tracks pending actions and enforces one in-flight toggle per target."""

    def __init__(self) -> None:
        self._actions: dict[str, PendingAction] = {}
        self._slots: dict[tuple[str, str], str] = {}

    def __len__(self) -> int:
        return len(self._actions)

    def __contains__(self, local_id: object) -> bool:
        return local_id in self._actions

    def begin(
        self,
        kind: ActionKind | str,
        payload: Mapping[str, Any] | None = None,
        *,
        target_id: str | None = None,
        created_at: int | None = None,
    ) -> PendingAction:
        """Register a new pending action and return it.

        Raises:
            ActionInProgressError: If ``kind`` is a toggle and an action of the
                same family is already pending for ``target_id``.
            ValueError: If a toggle is begun without a target.
        """
        kind = ActionKind(kind)
        slot: tuple[str, str] | None = None
        if kind.is_toggle:
            if not target_id:
                raise ValueError(f"{kind.value} requires a target_id")
            slot = (kind.slot_family, target_id)
            if slot in self._slots:
                raise ActionInProgressError(kind.slot_family, target_id)

        action = PendingAction(
            local_id=new_local_id(),
            kind=kind,
            payload=dict(payload or {}),
            target_id=target_id,
        )
        if created_at is not None:
            action.created_at = created_at

        self._actions[action.local_id] = action
        if slot is not None:
            self._slots[slot] = action.local_id
        logger.debug("Began %s %s", kind.value, action.local_id)
        return action

    def resolve(
        self,
        local_id: str,
        success: bool,
        event: Event | None = None,
    ) -> PendingAction | None:
        """Settle a pending action and remove it.

        Args:
            local_id: Id returned by :meth:`begin`.
            success: Whether the network confirmed the action.
            event: The confirmed event, if any, for callers that want it back.

        Returns:
            The settled action, or ``None`` if ``local_id`` was unknown or
            already resolved.
        """
        action = self._actions.pop(local_id, None)
        if action is None:
            logger.debug("Resolve for unknown action %s ignored", local_id)
            return None

        if action.kind.is_toggle and action.target_id:
            self._slots.pop((action.kind.slot_family, action.target_id), None)

        action.state = ActionState.CONFIRMED if success else ActionState.FAILED
        action.event = event if success else None
        logger.info("Resolved %s %s as %s", action.kind.value, local_id, action.state.value)
        return action

    def get(self, local_id: str) -> PendingAction | None:
        return self._actions.get(local_id)

    def in_progress(self, kind: ActionKind | str, target_id: str) -> bool:
        return (ActionKind(kind).slot_family, target_id) in self._slots

    def pending(
        self,
        kind: ActionKind | str | None = None,
        predicate: Callable[[PendingAction], bool] | None = None,
    ) -> list[PendingAction]:
        """Return pending actions, oldest first."""
        wanted = ActionKind(kind) if kind is not None else None
        actions = [
            action
            for action in self._actions.values()
            if (wanted is None or action.kind is wanted)
            and (predicate is None or predicate(action))
        ]
        actions.sort(key=lambda action: action.created_at)
        return actions


def interleave(
    events: Iterable[Event],
    actions: Iterable[PendingAction],
    *,
    descending: bool = False,
) -> Sequence[Event | PendingAction]:
    """Merge confirmed events and pending actions by creation time.

    On equal timestamps confirmed events come before pending ones.
    """
    items: list[tuple[int, int, Event | PendingAction]] = []
    items.extend((event.created_at, 0, event) for event in events)
    items.extend((action.created_at, 1, action) for action in actions)
    items.sort(key=lambda item: (item[0], item[1]), reverse=descending)
    return [item[2] for item in items]
