"""Persistence collaborator boundary and adapters.

Only small JSON documents are persisted: the liked/reposted id caches that the
interaction reconciler falls back to before network data arrives, and the
per-contact read timestamps of direct-message conversations.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from relaychat.models import KeyValueItem

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Contract consumed from the persistence collaborator."""

    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...


class MemoryKeyValueStore:
    """Process-local store for tests and ephemeral sessions."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._items: dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value


class SqlKeyValueStore:
    """Key-value store persisted through SQLAlchemy."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get_item(self, key: str) -> str | None:
        with self._session_factory() as db:
            return db.scalars(select(KeyValueItem.value).where(KeyValueItem.key == key)).first()

    def set_item(self, key: str, value: str) -> None:
        with self._session_factory() as db:
            item = db.get(KeyValueItem, key)
            if item is None:
                db.add(KeyValueItem(key=key, value=value))
            else:
                item.value = value
            db.commit()


def load_json(store: KeyValueStore, key: str, default: Any) -> Any:
    """Return the JSON document under ``key``, or ``default`` if absent or corrupt."""
    raw = store.get_item(key)
    if raw is None:
        return default
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring corrupt JSON stored under %s", key)
        return default
    if not isinstance(value, type(default)):
        logger.warning("Ignoring %s stored under %s", type(value).__name__, key)
        return default
    return value


def save_json(store: KeyValueStore, key: str, value: Any) -> None:
    store.set_item(key, json.dumps(value, sort_keys=True))
