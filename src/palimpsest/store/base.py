"""The message store interface consumed by the context pipeline."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from palimpsest.models.message import Conversation, Message


@runtime_checkable
class MessageStore(Protocol):
    """
    Read/write access to stored conversations.

    ``get_messages`` returns a snapshot in no particular order; threading is
    done by the caller. Implementations raise
    :class:`~palimpsest.errors.StoreError` subclasses on failure.
    """

    async def get_messages(self, conversation_id: str) -> list[Message]: ...

    async def get_message(self, message_id: str) -> Message: ...

    async def save_message(self, message: Message, *, user: str | None = None) -> Message: ...

    async def update_message(self, message_id: str, **fields: Any) -> None: ...

    async def save_conversation(
        self,
        user: str | None,
        conversation_id: str,
        *,
        endpoint: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Conversation: ...

    async def get_conversation(self, conversation_id: str) -> Conversation: ...
