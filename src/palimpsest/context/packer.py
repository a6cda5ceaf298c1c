"""Greedy newest-first packing of an ordered thread into a token budget."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

REPLY_PRIMING_TOKENS = 3
"""Every reply is primed with ``<|start|>assistant<|message|>``."""


@dataclass
class PackResult:
    """Outcome of packing an ordered thread into a token budget."""

    context: list[Any]
    """Included items, chronological order."""
    remaining_tokens: int
    messages_to_refine: list[Any] = field(default_factory=list)
    """Excluded oldest prefix, chronological order."""
    boundary_index: int = -1
    """Index of the newest excluded item, -1 when nothing was excluded."""

    @property
    def used_tokens(self) -> int:
        return sum(_token_count(item) for item in self.context)


def pack_context(
    ordered: Sequence[Any],
    max_context_tokens: int,
    *,
    reserved_overhead: int = REPLY_PRIMING_TOKENS,
) -> PackResult:
    """
    Select the longest suffix of ``ordered`` that fits in ``max_context_tokens``.

    Items are considered newest → oldest and included while
    ``running_total + token_count <= max_context_tokens``. The first item that
    would overflow ends the scan: no older item is considered afterwards, even
    a smaller one, and nothing is reordered. The running total starts at
    ``reserved_overhead``.

    ``ordered`` is copied; the caller's sequence is never mutated.

    Example: token counts ``[20, 15, 10, 8, 5]`` with a budget of 40 yield a
    context of ``[10, 8, 5]``, ``messages_to_refine`` of ``[20, 15]``,
    ``boundary_index`` 1 and 14 remaining tokens.

    Args:
        ordered: Items oldest → newest, each with a ``token_count``.
        max_context_tokens: Total budget including the reserved overhead.
        reserved_overhead: Tokens reserved before any item is counted.

    Returns:
        PackResult with the context, remaining budget and excluded prefix.

    Raises:
        ValueError: If an examined item has no token count.
    """
    pending = list(ordered)
    context: list[Any] = []
    current_tokens = reserved_overhead

    while pending and current_tokens < max_context_tokens:
        candidate = pending[-1]
        tokens = _token_count(candidate)
        if current_tokens + tokens > max_context_tokens:
            break
        context.append(pending.pop())
        current_tokens += tokens

    context.reverse()
    return PackResult(
        context=context,
        remaining_tokens=max_context_tokens - current_tokens,
        messages_to_refine=pending,
        boundary_index=len(pending) - 1,
    )


def _token_count(item: Any) -> int:
    tokens = getattr(item, "token_count", None)
    if tokens is None and isinstance(item, dict):
        tokens = item.get("token_count")
    if tokens is None:
        raise ValueError(f"Cannot pack an item without a token count: {item!r}")
    return tokens
