"""Typed payload definitions for each PalimpsestEvent.

Usage example::

    from palimpsest.events.bus import EventBus, PalimpsestEvent
    from palimpsest.events.payloads import ContextBuiltPayload

    def on_built(event: PalimpsestEvent, payload: ContextBuiltPayload) -> None:
        print(f"{payload['message_count']} messages, {payload['prompt_tokens']} tokens")

    bus.subscribe(PalimpsestEvent.CONTEXT_BUILT, on_built)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import Any, NotRequired, TypedDict


class ContextBuiltPayload(TypedDict):
    """Payload for :attr:`PalimpsestEvent.CONTEXT_BUILT`."""

    conversation_id: str
    message_count: int
    """Number of formatted messages in the final payload."""
    prompt_tokens: int
    used_cached_summary: bool


class SummaryPayload(TypedDict):
    """Payload for :attr:`PalimpsestEvent.SUMMARY_REUSED` and ``SUMMARY_GENERATED``."""

    message_id: str | None
    """The boundary message the summary belongs to."""
    summary_token_count: int
    refined_messages: NotRequired[int]
    """Only on ``SUMMARY_GENERATED``: how many messages were summarised."""


class MessageSavedPayload(TypedDict):
    """Payload for :attr:`PalimpsestEvent.MESSAGE_SAVED`."""

    message_id: str
    conversation_id: str
    is_created_by_user: bool


class MessageUpdatedPayload(TypedDict):
    """Payload for :attr:`PalimpsestEvent.MESSAGE_UPDATED`."""

    message_id: str
    fields: dict[str, Any]


class ConversationSavedPayload(TypedDict):
    """Payload for :attr:`PalimpsestEvent.CONVERSATION_SAVED`."""

    conversation_id: str
    user: str | None
