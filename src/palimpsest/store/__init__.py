"""Palimpsest persistence layer."""

from palimpsest.errors import (
    ConversationNotFoundError,
    ImmutableFieldError,
    MessageNotFoundError,
    StoreError,
)
from palimpsest.store.base import MessageStore
from palimpsest.store.pool import StorePool
from palimpsest.store.sqlite import SQLiteMessageStore

__all__ = [
    "MessageStore",
    "SQLiteMessageStore",
    "StorePool",
    "StoreError",
    "ConversationNotFoundError",
    "MessageNotFoundError",
    "ImmutableFieldError",
]
