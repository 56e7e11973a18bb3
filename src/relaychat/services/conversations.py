"""Direct-message conversations and unread tracking."""

from __future__ import annotations

import bisect
import logging
import time
from dataclasses import dataclass, field

from relaychat.core.constants import EventKind
from relaychat.core.settings import Settings, settings as default_settings
from relaychat.schemas import Event
from relaychat.services.storage import KeyValueStore, load_json, save_json

logger = logging.getLogger(__name__)


@dataclass
class Conversation:
    """Messages exchanged with one contact, oldest first."""

    contact_key: str
    messages: list[Event] = field(default_factory=list)
    unread_count: int = 0

    @property
    def last_message(self) -> Event | None:
        return self.messages[-1] if self.messages else None


class ConversationBook:
    """Groups direct messages by contact and keeps unread counts.

    A message is unread when the contact sent it after the last time the
    conversation was marked as read. Read timestamps are persisted.
    """

    def __init__(
        self,
        own_key: str,
        storage: KeyValueStore,
        settings: Settings | None = None,
    ) -> None:
        self.own_key = own_key
        self._settings = settings or default_settings
        self._storage = storage
        self._conversations: dict[str, Conversation] = {}
        self._ids: set[str] = set()
        stored = load_json(storage, self._settings.dm_last_read_key, {})
        self._last_read: dict[str, int] = {
            key: int(value) for key, value in stored.items() if isinstance(value, int | float)
        }

    def contact_for(self, event: Event) -> str | None:
        """Return the other party of a direct message, or None if it is not one."""
        if event.kind != EventKind.ENCRYPTED_DM:
            return None
        if event.pubkey == self.own_key:
            recipients = event.mentioned_pubkeys
            return recipients[0] if recipients else None
        return event.pubkey

    def add(self, event: Event) -> Conversation | None:
        """File a direct message under its contact.

        Returns:
            The updated conversation, or None if the event is not a direct
            message for this viewer or was already filed.
        """
        contact = self.contact_for(event)
        if contact is None or event.id in self._ids:
            return None
        if event.pubkey != self.own_key and self.own_key not in event.mentioned_pubkeys:
            return None

        conversation = self._conversations.setdefault(contact, Conversation(contact_key=contact))
        keys = [(message.created_at, message.id) for message in conversation.messages]
        position = bisect.bisect(keys, (event.created_at, event.id))
        conversation.messages.insert(position, event)
        self._ids.add(event.id)
        conversation.unread_count = self._count_unread(conversation)
        return conversation

    def get(self, contact_key: str) -> Conversation | None:
        return self._conversations.get(contact_key)

    def conversations(self) -> list[Conversation]:
        """Return conversations, most recent last message first."""
        return sorted(
            self._conversations.values(),
            key=lambda conversation: (
                conversation.last_message.created_at if conversation.last_message else 0
            ),
            reverse=True,
        )

    @property
    def total_unread(self) -> int:
        return sum(conversation.unread_count for conversation in self._conversations.values())

    def last_read(self, contact_key: str) -> int:
        return self._last_read.get(contact_key, 0)

    def mark_as_read(self, contact_key: str, now: int | None = None) -> None:
        """Clear the unread count; messages dated after ``now`` are covered too."""
        timestamp = int(time.time()) if now is None else now
        conversation = self._conversations.get(contact_key)
        self._last_read[contact_key] = self._read_mark(conversation, timestamp)
        save_json(self._storage, self._settings.dm_last_read_key, self._last_read)
        if conversation is not None:
            conversation.unread_count = 0
        logger.debug("Marked conversation %s read at %d", contact_key[:8], timestamp)

    def mark_all_as_read(self, now: int | None = None) -> int:
        """Mark every conversation read and return how many there were."""
        timestamp = int(time.time()) if now is None else now
        for contact_key, conversation in self._conversations.items():
            self._last_read[contact_key] = self._read_mark(conversation, timestamp)
            conversation.unread_count = 0
        save_json(self._storage, self._settings.dm_last_read_key, self._last_read)
        return len(self._conversations)

    @staticmethod
    def _read_mark(conversation: Conversation | None, timestamp: int) -> int:
        if conversation is None or conversation.last_message is None:
            return timestamp
        return max(timestamp, conversation.last_message.created_at)

    def _count_unread(self, conversation: Conversation) -> int:
        cutoff = self._last_read.get(conversation.contact_key, 0)
        return sum(
            1
            for message in conversation.messages
            if message.pubkey != self.own_key and message.created_at > cutoff
        )
