# src/relaychat/db/__init__.py
"""Database configuration and utilities."""

from .session import Base, create_storage_engine, create_tables, make_session_factory

__all__ = ["Base", "create_storage_engine", "create_tables", "make_session_factory"]
