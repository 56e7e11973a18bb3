"""Boundary validation for events arriving from relays.

Network input is untrusted: anything missing required fields, carrying the
wrong shapes, or whose id does not match its content is rejected here and
never reaches the event store.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from relaychat.core.settings import settings
from relaychat.schemas import Event

logger = logging.getLogger(__name__)


class MalformedEventError(ValueError):
    """Raised when raw input cannot be turned into a valid event."""


def parse_event(raw: Mapping[str, Any] | Event, *, verify_id: bool | None = None) -> Event:
    """Validate raw relay input and return an :class:`Event`.

    Args:
        raw: Decoded relay payload, or an already-built event.
        verify_id: Recompute the content hash and compare it with ``id``.
            Defaults to ``settings.verify_event_ids``.

    Raises:
        MalformedEventError: If required fields are missing or invalid, or the
            id does not match the event content.
    """
    if isinstance(raw, Event):
        event = raw
    else:
        if not isinstance(raw, Mapping):
            raise MalformedEventError(f"expected a mapping, got {type(raw).__name__}")
        try:
            event = Event.model_validate(dict(raw))
        except ValidationError as exc:
            raise MalformedEventError(f"invalid event: {exc.error_count()} field error(s)") from exc

    check = settings.verify_event_ids if verify_id is None else verify_id
    if check and event.computed_id != event.id:
        raise MalformedEventError(f"event id {event.id[:12]} does not match its content")
    return event


def coerce_event(raw: Mapping[str, Any] | Event, *, verify_id: bool | None = None) -> Event | None:
    """Return a validated event, or ``None`` after logging why it was dropped."""
    try:
        return parse_event(raw, verify_id=verify_id)
    except MalformedEventError as exc:
        raw_id = raw.get("id") if isinstance(raw, Mapping) else None
        logger.warning("Dropping malformed event %s: %s", raw_id, exc)
        return None


def coerce_events(
    raws: Iterable[Mapping[str, Any] | Event], *, verify_id: bool | None = None
) -> list[Event]:
    """Validate a batch, silently skipping (and logging) the malformed entries."""
    events: list[Event] = []
    for raw in raws:
        event = coerce_event(raw, verify_id=verify_id)
        if event is not None:
            events.append(event)
    return events
