"""Instruction injection that preserves the position of the latest turn."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, TypeVar

T = TypeVar("T")


def inject_instructions(items: Sequence[T], instructions: Any | None) -> Sequence[Any]:
    """
    Place ``instructions`` immediately before the last element of ``items``.

    Some provider protocols require the final element to carry the current
    turn's metadata, so the most recent item always stays last. Apply this to
    both the formatted payload and the canonical ordered thread so that token
    accounting and payload stay aligned.

    Args:
        items: Ordered messages (formatted dicts or canonical messages).
        instructions: The instructions item. ``None`` or an empty value leaves
            ``items`` untouched.

    Returns:
        ``items`` itself when there is nothing to inject, else a new list.
    """
    if _is_empty(instructions):
        return items

    payload: list[Any] = list(items[:-1])
    payload.append(instructions)
    if items:
        payload.append(items[-1])
    return payload


def _is_empty(instructions: Any | None) -> bool:
    if instructions is None:
        return True
    is_empty = getattr(instructions, "is_empty", None)
    if callable(is_empty):
        return bool(is_empty())
    return len(instructions) == 0
