"""Database session configuration for durable client storage."""

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from relaychat.core.settings import settings


class Base(DeclarativeBase):
    """Declarative base shared by all ORM models."""


# Ensure model modules are imported so that metadata is populated when create_all runs.
import relaychat.models  # noqa: E402,F401


def create_storage_engine(url: str | None = None, *, echo: bool | None = None) -> Engine:
    """Create the engine backing the key-value store.

    Args:
        url: Database URL; defaults to ``settings.storage_url``.
        echo: SQL echo flag; defaults to ``settings.sql_debug``.
    """
    return create_engine(
        url or settings.storage_url,
        pool_pre_ping=True,
        echo=settings.sql_debug if echo is None else echo,
    )


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a session factory bound to ``engine``."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def create_tables(engine: Engine) -> None:
    """Create all database tables."""
    Base.metadata.create_all(bind=engine)


def drop_tables(engine: Engine) -> None:
    """Drop all database tables."""
    Base.metadata.drop_all(bind=engine)
