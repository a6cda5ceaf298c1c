"""In-process pub/sub event bus for context assembly and persistence events."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["PalimpsestEvent", dict[str, Any]], None | Awaitable[None]]


class PalimpsestEvent(StrEnum):
    """All event types published by Palimpsest components.

    Typed payload definitions for each event live in
    :mod:`palimpsest.events.payloads`.

    **Payload schemas by event:**

    ``CONTEXT_BUILT``
        :class:`~palimpsest.events.payloads.ContextBuiltPayload`:
        ``conversation_id``, ``message_count``, ``prompt_tokens``,
        ``used_cached_summary``

    ``SUMMARY_REUSED``, ``SUMMARY_GENERATED``
        :class:`~palimpsest.events.payloads.SummaryPayload`:
        ``message_id`` of the boundary message and ``summary_token_count``

    ``MESSAGE_SAVED``
        :class:`~palimpsest.events.payloads.MessageSavedPayload`:
        ``message_id``, ``conversation_id``, ``is_created_by_user``

    ``MESSAGE_UPDATED``
        :class:`~palimpsest.events.payloads.MessageUpdatedPayload`:
        ``message_id``, ``fields``

    ``CONVERSATION_SAVED``
        :class:`~palimpsest.events.payloads.ConversationSavedPayload`:
        ``conversation_id``, ``user``
    """

    CONTEXT_BUILT = "context.built"

    SUMMARY_REUSED = "summary.reused"
    SUMMARY_GENERATED = "summary.generated"

    MESSAGE_SAVED = "message.saved"
    MESSAGE_UPDATED = "message.updated"
    CONVERSATION_SAVED = "conversation.saved"


class EventBus:
    """
    Simple in-process pub/sub event bus.

    Design decisions:
    - Sync handlers are called inline within ``publish()``.
    - Async handlers are scheduled via ``asyncio.create_task()`` (fire-and-forget).
    - Handler exceptions are logged but never propagate to the publisher.

    Example::

        bus = EventBus()

        def on_summary(event, payload):
            print(f"Summary of {payload['summary_token_count']} tokens")

        bus.subscribe(PalimpsestEvent.SUMMARY_GENERATED, on_summary)
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._handlers: dict[PalimpsestEvent, list[Handler]] = {}
        self._global_handlers: list[Handler] = []
        self._logger = logger or structlog.get_logger("palimpsest.events")

    def subscribe(self, event: PalimpsestEvent, handler: Handler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event: The event type to listen for.
            handler: Callable accepting ``(event, payload)``. May be sync or async.
        """
        self._handlers.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Register a handler for ALL event types."""
        self._global_handlers.append(handler)

    def unsubscribe(self, event: PalimpsestEvent, handler: Handler) -> None:
        """Remove a previously registered handler. No-op if not found."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: PalimpsestEvent, payload: dict[str, Any]) -> None:
        """
        Publish an event to all registered handlers.

        Sync handlers are called immediately in registration order.
        Async handlers are scheduled as background tasks (non-blocking).
        Exceptions from any handler are logged and swallowed.
        """
        all_handlers = list(self._handlers.get(event, [])) + list(self._global_handlers)
        for handler in all_handlers:
            try:
                result = handler(event, payload)
                if asyncio.iscoroutine(result):
                    try:
                        loop = asyncio.get_running_loop()
                        _task = loop.create_task(result)  # noqa: RUF006
                    except RuntimeError:
                        # No running event loop; skip async handler
                        result.close()
            except Exception as exc:
                self._logger.error(
                    "event_handler_error",
                    event=str(event),
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )
