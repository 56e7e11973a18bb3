"""Inline entity references embedded in event content.

Content may cite users and other events with bech32 entities, optionally
prefixed with ``nostr:`` (``npub1...``, ``nprofile1...``, ``note1...``,
``nevent1...``). :func:`parse_references` finds them; :class:`ReferenceResolver`
turns them into profiles and events, fetching each distinct reference at most
once and degrading to a :class:`Tombstone` instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from bech32 import CHARSET, bech32_verify_checksum, convertbits

from relaychat.core.settings import settings
from relaychat.schemas import Event, Profile
from relaychat.services.event_store import EventStore
from relaychat.services.ingest import coerce_events
from relaychat.services.relay import RelayClient

logger = logging.getLogger(__name__)

_REFERENCE_PATTERN = re.compile(
    r"(?:nostr:)?\b((npub|nprofile|note|nevent)1[" + re.escape(CHARSET) + r"]{6,})"
)

# TLV types used inside nprofile / nevent
_TLV_SPECIAL = 0
_TLV_RELAY = 1
_TLV_AUTHOR = 2
_TLV_KIND = 3

_KEY_BYTES = 32


class ReferenceType(str, Enum):
    """What a reference points at."""

    USER = "user"
    NOTE = "note"
    EVENT = "event"


_HRP_TYPES = {
    "npub": ReferenceType.USER,
    "nprofile": ReferenceType.USER,
    "note": ReferenceType.NOTE,
    "nevent": ReferenceType.EVENT,
}


@dataclass(frozen=True)
class Reference:
    """One citation found in content.

    ``data`` is the hex pubkey (users) or hex event id (notes and events); it
    is empty when the entity could not be decoded. ``end_index`` is exclusive.
    """

    type: ReferenceType
    data: str
    start_index: int
    end_index: int
    raw: str
    relays: tuple[str, ...] = ()
    author: str | None = None
    kind: int | None = None

    @property
    def key(self) -> str:
        return f"{self.type.value}:{self.data or self.raw}"

    @property
    def is_valid(self) -> bool:
        return bool(self.data)


@dataclass(frozen=True)
class Tombstone:
    """Placeholder rendered in place of a reference that could not be resolved."""

    key: str
    reason: str
    label: str = field(default="reference unavailable")


ResolvedReference = Profile | Event | Tombstone


def _decode_entity(entity: str) -> tuple[str, bytes] | None:
    """Return ``(hrp, payload)`` for a bech32 entity, or None if it is invalid.

    Entities carrying TLV payloads routinely exceed the 90-character limit of
    address-oriented bech32 decoders, so only the checksum and bit conversion
    are delegated to the library.
    """
    entity = entity.lower()
    separator = entity.rfind("1")
    if separator < 1 or separator + 7 > len(entity):
        return None
    hrp = entity[:separator]
    try:
        data = [CHARSET.index(char) for char in entity[separator + 1:]]
    except ValueError:
        return None
    if not bech32_verify_checksum(hrp, data):
        return None
    payload = convertbits(data[:-6], 5, 8, False)
    if payload is None:
        return None
    return hrp, bytes(payload)


def _parse_tlv(payload: bytes) -> dict[int, list[bytes]]:
    entries: dict[int, list[bytes]] = {}
    index = 0
    while index + 2 <= len(payload):
        tlv_type, length = payload[index], payload[index + 1]
        value = payload[index + 2:index + 2 + length]
        if len(value) != length:
            raise ValueError("truncated TLV entry")
        entries.setdefault(tlv_type, []).append(value)
        index += 2 + length
    return entries


def decode_reference(entity: str, start_index: int = 0) -> Reference:
    """Decode a single bech32 entity into a :class:`Reference`."""
    hrp_guess = entity[: entity.rfind("1")].lower()
    ref_type = _HRP_TYPES.get(hrp_guess, ReferenceType.EVENT)
    end_index = start_index + len(entity)
    invalid = Reference(ref_type, "", start_index, end_index, entity)

    decoded = _decode_entity(entity)
    if decoded is None:
        logger.debug("Could not decode reference %s", entity[:20])
        return invalid
    hrp, payload = decoded
    if hrp not in _HRP_TYPES:
        return invalid

    if hrp in ("npub", "note"):
        if len(payload) != _KEY_BYTES:
            return invalid
        return Reference(ref_type, payload.hex(), start_index, end_index, entity)

    try:
        tlv = _parse_tlv(payload)
    except ValueError:
        return invalid
    special = tlv.get(_TLV_SPECIAL, [])
    if not special or len(special[0]) != _KEY_BYTES:
        return invalid
    relays = tuple(value.decode("utf-8", errors="replace") for value in tlv.get(_TLV_RELAY, []))
    authors = [value for value in tlv.get(_TLV_AUTHOR, []) if len(value) == _KEY_BYTES]
    kinds = [value for value in tlv.get(_TLV_KIND, []) if len(value) == 4]
    return Reference(
        ref_type,
        special[0].hex(),
        start_index,
        end_index,
        entity,
        relays=relays,
        author=authors[0].hex() if authors else None,
        kind=int.from_bytes(kinds[0], "big") if kinds else None,
    )


def parse_references(content: str) -> list[Reference]:
    """Return every citation in ``content`` in order of appearance.

    Index ranges cover the whole marker including any ``nostr:`` prefix.
    """
    references: list[Reference] = []
    for match in _REFERENCE_PATTERN.finditer(content or ""):
        reference = decode_reference(match.group(1), match.start(1))
        references.append(
            Reference(
                reference.type,
                reference.data,
                match.start(),
                match.end(),
                reference.raw,
                reference.relays,
                reference.author,
                reference.kind,
            )
        )
    return references


class ReferenceResolver:
    """Memoized resolution of references against profiles and events.

    Results, tombstones included, are cached per reference key; concurrent
    resolutions of the same key share a single fetch.
    """

    def __init__(
        self,
        relay: RelayClient,
        store: EventStore | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self._relay = relay
        self._store = store
        self._timeout = (
            timeout_seconds if timeout_seconds is not None else settings.fetch_timeout_seconds
        )
        self._cache: dict[str, ResolvedReference] = {}
        self._inflight: dict[str, asyncio.Future[ResolvedReference]] = {}

    def cached(self, reference: Reference) -> ResolvedReference | None:
        return self._cache.get(reference.key)

    def invalidate(self, key: str) -> None:
        """Forget a cached result so the next resolve fetches again."""
        self._cache.pop(key, None)

    async def resolve(self, reference: Reference) -> ResolvedReference:
        key = reference.key
        if key in self._cache:
            return self._cache[key]
        if not reference.is_valid:
            tombstone = Tombstone(key, "undecodable reference")
            self._cache[key] = tombstone
            return tombstone

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch(reference))
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._settle(key, done))
        return await asyncio.shield(task)

    async def profile(self, author_key: str) -> Profile | None:
        """Resolve an author profile through the same cache as user references."""
        reference = Reference(ReferenceType.USER, author_key, 0, 0, author_key)
        result = await self.resolve(reference)
        return result if isinstance(result, Profile) else None

    async def resolve_content(self, content: str) -> list[tuple[Reference, ResolvedReference]]:
        references = parse_references(content)
        results = await asyncio.gather(*(self.resolve(reference) for reference in references))
        return list(zip(references, results, strict=True))

    def _settle(self, key: str, task: asyncio.Future[ResolvedReference]) -> None:
        self._inflight.pop(key, None)
        if not task.cancelled() and task.exception() is None:
            self._cache[key] = task.result()

    async def _fetch(self, reference: Reference) -> ResolvedReference:
        try:
            if reference.type is ReferenceType.USER:
                profile = await asyncio.wait_for(
                    self._relay.get_profile(reference.data), self._timeout
                )
                if profile is None:
                    return Tombstone(reference.key, "profile not found")
                return profile
            return await self._fetch_event(reference)
        except TimeoutError:
            logger.warning("Timed out resolving %s", reference.key)
            return Tombstone(reference.key, "timed out")
        except Exception as exc:
            logger.warning("Failed to resolve %s: %s", reference.key, exc)
            return Tombstone(reference.key, str(exc) or type(exc).__name__)

    async def _fetch_event(self, reference: Reference) -> ResolvedReference:
        if self._store is not None:
            held = self._store.get(reference.data)
            if held is not None:
                return held

        raws = await asyncio.wait_for(
            self._relay.query({"ids": [reference.data], "limit": 1}), self._timeout
        )
        for event in coerce_events(raws):
            if event.id != reference.data:
                continue
            if self._store is not None:
                self._store.insert(event)
            return event
        return Tombstone(reference.key, "event not found")
