"""Tests for reference parsing and resolution."""

from __future__ import annotations

import asyncio

import pytest
from bech32 import bech32_encode, convertbits

from relaychat.schemas import Profile
from relaychat.services.event_store import EventStore
from relaychat.services.references import (
    ReferenceResolver,
    ReferenceType,
    Tombstone,
    decode_reference,
    parse_references,
)
from relaychat.services.relay import RelayError


def _encode(hrp: str, payload: bytes) -> str:
    return bech32_encode(hrp, convertbits(payload, 8, 5))


def _tlv(*entries: tuple[int, bytes]) -> bytes:
    return b"".join(bytes([kind, len(value)]) + value for kind, value in entries)


def test_parse_npub_and_note_with_indices(alice) -> None:
    npub = _encode("npub", bytes.fromhex(alice))
    note = _encode("note", bytes.fromhex("c" * 64))
    content = f"hi nostr:{npub} see {note}!"

    references = parse_references(content)

    assert [reference.type for reference in references] == [ReferenceType.USER, ReferenceType.NOTE]
    user, cited = references
    assert user.data == alice
    assert content[user.start_index:user.end_index] == f"nostr:{npub}"
    assert cited.data == "c" * 64
    assert content[cited.start_index:cited.end_index] == note


def test_parse_long_tlv_entities(alice) -> None:
    event_id = bytes.fromhex("d" * 64)
    nevent = _encode(
        "nevent",
        _tlv(
            (0, event_id),
            (1, b"wss://relay.example.com"),
            (2, bytes.fromhex(alice)),
            (3, (1).to_bytes(4, "big")),
        ),
    )
    nprofile = _encode("nprofile", _tlv((0, bytes.fromhex(alice)), (1, b"wss://a.example")))
    assert len(nevent) > 90

    event_ref, profile_ref = parse_references(f"{nevent} by {nprofile}")

    assert event_ref.type is ReferenceType.EVENT
    assert event_ref.data == "d" * 64
    assert event_ref.relays == ("wss://relay.example.com",)
    assert event_ref.author == alice
    assert event_ref.kind == 1
    assert profile_ref.type is ReferenceType.USER
    assert profile_ref.data == alice


def test_bad_checksum_is_invalid_reference(alice) -> None:
    npub = _encode("npub", bytes.fromhex(alice))
    broken = npub[:-1] + ("q" if npub[-1] != "q" else "p")

    reference = decode_reference(broken)

    assert reference.is_valid is False
    assert reference.type is ReferenceType.USER


def test_plain_text_has_no_references() -> None:
    assert parse_references("no citations here, just npub talk") == []
    assert parse_references("") == []


@pytest.mark.asyncio
async def test_same_reference_fetched_once(relay, alice) -> None:
    relay.profiles[alice] = Profile(pubkey=alice, name="alice")
    resolver = ReferenceResolver(relay, timeout_seconds=1.0)
    reference = parse_references(_encode("npub", bytes.fromhex(alice)))[0]

    first = await resolver.resolve(reference)
    second = await resolver.resolve(reference)

    assert first == second
    assert first.name == "alice"
    assert relay.profile_requests == [alice]


@pytest.mark.asyncio
async def test_concurrent_resolutions_share_one_fetch(relay, alice) -> None:
    relay.profiles[alice] = Profile(pubkey=alice, name="alice")
    resolver = ReferenceResolver(relay, timeout_seconds=1.0)
    reference = parse_references(_encode("npub", bytes.fromhex(alice)))[0]

    results = await asyncio.gather(*(resolver.resolve(reference) for _ in range(5)))

    assert all(result.name == "alice" for result in results)
    assert relay.profile_requests == [alice]


@pytest.mark.asyncio
async def test_missing_entity_becomes_cached_tombstone(relay) -> None:
    resolver = ReferenceResolver(relay, timeout_seconds=1.0)
    reference = parse_references(_encode("note", bytes.fromhex("e" * 64)))[0]

    result = await resolver.resolve(reference)
    await resolver.resolve(reference)

    assert isinstance(result, Tombstone)
    assert result.label == "reference unavailable"
    assert len(relay.queries) == 1


@pytest.mark.asyncio
async def test_fetch_error_becomes_tombstone(relay, alice, mocker) -> None:
    mocker.patch.object(relay, "get_profile", side_effect=RelayError("relay down"))
    resolver = ReferenceResolver(relay, timeout_seconds=1.0)

    result = await resolver.resolve(parse_references(_encode("npub", bytes.fromhex(alice)))[0])

    assert isinstance(result, Tombstone)
    assert "relay down" in result.reason


@pytest.mark.asyncio
async def test_timeout_becomes_tombstone(relay, make_event) -> None:
    relay.query_delay = 0.5
    relay.events.append(make_event(content="slow"))
    resolver = ReferenceResolver(relay, timeout_seconds=0.01)
    reference = parse_references(_encode("note", bytes.fromhex(relay.events[0].id)))[0]

    result = await resolver.resolve(reference)

    assert isinstance(result, Tombstone)
    assert result.reason == "timed out"


@pytest.mark.asyncio
async def test_event_reference_uses_store_then_network(relay, make_event) -> None:
    held = make_event(content="held")
    remote = make_event(content="remote")
    relay.events.append(remote)
    store = EventStore()
    store.insert(held)
    resolver = ReferenceResolver(relay, store, timeout_seconds=1.0)

    from_store = await resolver.resolve(
        parse_references(_encode("note", bytes.fromhex(held.id)))[0]
    )
    from_relay = await resolver.resolve(
        parse_references(_encode("note", bytes.fromhex(remote.id)))[0]
    )

    assert from_store == held
    assert from_relay == remote
    assert store.has(remote.id)
    assert len(relay.queries) == 1


@pytest.mark.asyncio
async def test_invalidate_allows_retry(relay, alice) -> None:
    resolver = ReferenceResolver(relay, timeout_seconds=1.0)
    reference = parse_references(_encode("npub", bytes.fromhex(alice)))[0]
    assert isinstance(await resolver.resolve(reference), Tombstone)

    relay.profiles[alice] = Profile(pubkey=alice, name="alice")
    resolver.invalidate(reference.key)

    assert isinstance(await resolver.resolve(reference), Profile)
    assert relay.profile_requests == [alice, alice]
