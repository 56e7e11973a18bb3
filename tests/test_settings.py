"""Settings load from the environment."""

from __future__ import annotations

from relaychat.core.constants import DEFAULT_RELAYS
from relaychat.core.settings import Settings


def test_defaults() -> None:
    settings = Settings()

    assert settings.store_max_events == 5000
    assert settings.store_max_age_seconds is None
    assert settings.relays == list(DEFAULT_RELAYS)
    assert settings.liked_posts_key == "user_liked_posts"


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("RELAYCHAT_STORE_MAX_EVENTS", "10")
    monkeypatch.setenv("RELAYCHAT_RELAYS", '["wss://one.example"]')
    monkeypatch.setenv("RELAYCHAT_VERIFY_EVENT_IDS", "false")

    settings = Settings()

    assert settings.store_max_events == 10
    assert settings.relays == ["wss://one.example"]
    assert settings.verify_event_ids is False


def test_field_names_are_accepted() -> None:
    settings = Settings(publish_timeout_seconds=1.5)

    assert settings.publish_timeout_seconds == 1.5
