# src/relaychat/models/key_value.py
"""Key-value rows backing the persistence collaborator."""

from sqlalchemy import Text
from sqlalchemy.orm import Mapped, mapped_column

from relaychat.db.session import Base


class KeyValueItem(Base):
    """One string value stored under a string key.

    Values are opaque to the table; callers store JSON documents such as the
    liked-post id cache or per-contact read timestamps.
    """

    __tablename__ = "key_value_item"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
