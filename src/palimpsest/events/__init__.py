"""Palimpsest event bus."""

from palimpsest.events.bus import EventBus, Handler, PalimpsestEvent
from palimpsest.events.payloads import (
    ContextBuiltPayload,
    ConversationSavedPayload,
    MessageSavedPayload,
    MessageUpdatedPayload,
    SummaryPayload,
)

__all__ = [
    "ContextBuiltPayload",
    "ConversationSavedPayload",
    "EventBus",
    "Handler",
    "MessageSavedPayload",
    "MessageUpdatedPayload",
    "PalimpsestEvent",
    "SummaryPayload",
]
