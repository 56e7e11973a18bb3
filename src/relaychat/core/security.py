"""Event identity helpers built on SHA-256 content hashing."""
from __future__ import annotations

import hashlib
import json
from collections.abc import Sequence
from typing import Any


def serialize_for_id(
    pubkey: str,
    created_at: int,
    kind: int,
    tags: Sequence[Sequence[str]],
    content: str,
) -> bytes:
    """Return the canonical byte form that an event id commits to.

    The array layout ``[0, pubkey, created_at, kind, tags, content]`` is fixed by
    the protocol; separators are compact and non-ASCII text is kept verbatim.
    """
    payload: list[Any] = [0, pubkey, created_at, kind, [list(tag) for tag in tags], content]
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_event_id(
    pubkey: str,
    created_at: int,
    kind: int,
    tags: Sequence[Sequence[str]],
    content: str,
) -> str:
    """Return the hex SHA-256 id for the given event fields."""
    return hashlib.sha256(serialize_for_id(pubkey, created_at, kind, tags, content)).hexdigest()


def is_hex(value: str, length: int) -> bool:
    """Return True if ``value`` is lower-case hex of exactly ``length`` characters."""
    if len(value) != length:
        return False
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return value == value.lower()
