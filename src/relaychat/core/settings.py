"""Client settings and configuration.

This module defines all configuration options for the relaychat engine.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from relaychat.core.constants import (
    DEFAULT_RELAYS,
    STORAGE_KEY_DM_LAST_READ,
    STORAGE_KEY_LIKED_POSTS,
    STORAGE_KEY_REPOSTED_POSTS,
)


class Settings(BaseSettings):
    """Engine settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files. Every
    component takes an explicit ``Settings`` instance as well, so tests never
    depend on the process environment.
    """

    # Relay endpoints handed to the transport collaborator
    relays: list[str] = Field(default=list(DEFAULT_RELAYS), alias="RELAYCHAT_RELAYS")

    # Event store retention
    store_max_events: int = Field(default=5000, ge=1, alias="RELAYCHAT_STORE_MAX_EVENTS")
    store_max_age_seconds: int | None = Field(
        default=None,
        ge=1,
        alias="RELAYCHAT_STORE_MAX_AGE_SECONDS",
    )
    verify_event_ids: bool = Field(default=True, alias="RELAYCHAT_VERIFY_EVENT_IDS")

    # Collaborator timeouts
    publish_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        alias="RELAYCHAT_PUBLISH_TIMEOUT_SECONDS",
    )
    fetch_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        alias="RELAYCHAT_FETCH_TIMEOUT_SECONDS",
    )
    feed_query_limit: int = Field(default=100, ge=1, alias="RELAYCHAT_FEED_QUERY_LIMIT")

    # Durable key-value storage
    storage_url: str = Field(default="sqlite:///./relaychat.db", alias="RELAYCHAT_STORAGE_URL")
    sql_debug: bool = Field(default=False, alias="RELAYCHAT_SQL_DEBUG")
    liked_posts_key: str = Field(
        default=STORAGE_KEY_LIKED_POSTS,
        alias="RELAYCHAT_LIKED_POSTS_KEY",
    )
    reposted_posts_key: str = Field(
        default=STORAGE_KEY_REPOSTED_POSTS,
        alias="RELAYCHAT_REPOSTED_POSTS_KEY",
    )
    dm_last_read_key: str = Field(
        default=STORAGE_KEY_DM_LAST_READ,
        alias="RELAYCHAT_DM_LAST_READ_KEY",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        populate_by_name=True,
        extra="ignore",
    )


settings = Settings()
