"""Protocol constants shared across the engine.

Kind numbers and tag names are fixed by the relay protocol; they are inputs to
the engine, not choices it makes.
"""

from enum import IntEnum


class EventKind(IntEnum):
    """Event kinds the client understands."""

    METADATA = 0
    TEXT_NOTE = 1
    CONTACTS = 3
    ENCRYPTED_DM = 4
    DELETION = 5
    REPOST = 6
    REACTION = 7

    # Public chat channels
    CHANNEL_CREATION = 40
    CHANNEL_METADATA = 41
    CHANNEL_MESSAGE = 42
    CHANNEL_HIDE_MESSAGE = 43
    CHANNEL_MUTE_USER = 44


# Single-letter tag names
TAG_EVENT = "e"
TAG_PUBKEY = "p"

# Markers carried in the fourth position of an ``e`` tag
MARKER_ROOT = "root"
MARKER_REPLY = "reply"

LIKE_CONTENT = "+"

HEX_ID_LENGTH = 64
HEX_SIGNATURE_LENGTH = 128

DEFAULT_RELAYS: tuple[str, ...] = (
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.nostr.band",
    "wss://relay.snort.social",
    "wss://nostr-pub.wellorder.net",
    "wss://relay.current.fyi",
    "wss://nostr.wine",
    "wss://eden.nostr.land",
)

# Persistence keys (kept compatible with existing client caches)
STORAGE_KEY_LIKED_POSTS = "user_liked_posts"
STORAGE_KEY_REPOSTED_POSTS = "user_reposted_posts"
STORAGE_KEY_DM_LAST_READ = "dm_last_read_timestamps"
