"""SQLAlchemy models for durable client storage."""

from .key_value import KeyValueItem

__all__ = ["KeyValueItem"]
