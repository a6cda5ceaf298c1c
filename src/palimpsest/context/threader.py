"""Rebuild a linear conversation thread from a parent-pointer message tree."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from typing import Any

import structlog

from palimpsest.models.message import ROOT_PARENT_ID, Message, PreviousSummary

_logger = structlog.get_logger("palimpsest.threader")


def thread_messages(
    messages: Iterable[Message],
    start_id: str | None,
    *,
    stop_at_summary: bool = False,
    map_method: Callable[[Message], Any] | None = None,
) -> list[Any]:
    """
    Walk parent pointers from ``start_id`` up to the root and return the thread
    in chronological (root → leaf) order.

    The snapshot is indexed by id and the walk tracks visited ids, so broken
    chains (a parent that is not in the snapshot) and cycles simply end the
    thread. Neither is an error.

    When ``stop_at_summary`` is set, the first message carrying a cached
    summary becomes the synthetic root: it is replaced by a copy whose role is
    ``"system"``, whose text is the summary and whose token count is the
    summary token count, and the walk stops there. Snapshot objects are never
    mutated.

    Args:
        messages: Unordered snapshot of a conversation's messages.
        start_id: Id of the leaf message to start from.
        stop_at_summary: Truncate the thread at the newest summarised message.
        map_method: Optional projection applied to each message after the walk.

    Returns:
        The ordered thread, projected through ``map_method`` when given.
    """
    by_id: dict[str, Message] = {}
    for message in messages:
        by_id.setdefault(message.message_id, message)

    if not by_id:
        return []

    ordered: list[Message] = []
    visited: set[str] = set()
    current_id = start_id

    while current_id and current_id != ROOT_PARENT_ID:
        if current_id in visited:
            _logger.debug("thread_cycle_detected", message_id=current_id)
            break
        visited.add(current_id)

        message = by_id.get(current_id)
        if message is None:
            _logger.debug("thread_broken", missing_message_id=current_id)
            break

        if stop_at_summary and message.summary:
            update: dict[str, Any] = {"role": "system", "text": message.summary, "content": None}
            if message.summary_token_count:
                update["token_count"] = message.summary_token_count
            ordered.append(message.model_copy(update=update))
            break

        ordered.append(message)
        current_id = message.parent_message_id

    ordered.reverse()

    if map_method is not None:
        return [map_method(message) for message in ordered]
    return ordered


def find_latest_summary(thread: Sequence[Message]) -> PreviousSummary | None:
    """Return the newest message in ``thread`` that carries a summary, if any."""
    for message in reversed(thread):
        if message.summary:
            return PreviousSummary(
                message_id=message.message_id,
                content=message.summary,
                token_count=message.token_count or 0,
                summary_token_count=message.summary_token_count or 0,
            )
    return None
