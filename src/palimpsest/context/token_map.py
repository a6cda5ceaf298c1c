"""Build the id → token count map written back to the store."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from palimpsest.models.message import SummaryEntry, ThreadItem, TokenCountMap


def build_token_count_map(
    ordered: Sequence[ThreadItem],
    *,
    summary_message: dict[str, Any] | None = None,
    summary_token_count: int = 0,
    boundary_index: int = -1,
    used_cached_summary: bool = False,
) -> TokenCountMap:
    """
    Map every id-bearing item of ``ordered`` to its token count.

    When a fresh summary was generated (not reused), the item at
    ``boundary_index`` also gets a ``summary_message`` entry: the caller
    persists the summary fields onto that stored message rather than creating
    a new one. Items without an id, such as injected instructions, are skipped.
    """
    token_map = TokenCountMap()
    fresh_summary = summary_message is not None and not used_cached_summary

    for index, item in enumerate(ordered):
        message_id = item.message_id
        if not message_id:
            continue
        if fresh_summary and index == boundary_index:
            token_map.summary_message = SummaryEntry(
                message_id=message_id,
                role=summary_message.get("role", "system"),
                content=str(summary_message.get("content", "")),
                token_count=summary_token_count,
            )
        if item.token_count is not None:
            token_map.counts[message_id] = item.token_count

    return token_map


def prompt_tokens(max_context_tokens: int, remaining_tokens: int) -> int:
    """Tokens consumed by the final payload, reply priming included."""
    return max_context_tokens - remaining_tokens
