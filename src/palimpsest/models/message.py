"""Core message, conversation and result models for Palimpsest."""

from __future__ import annotations

import time
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

ROOT_PARENT_ID = "00000000-0000-0000-0000-000000000000"
"""Parent id carried by the first message of a conversation."""

# ── Content Parts ──────────────────────────────────────────────────────────────


class TextPart(BaseModel):
    """A plain text segment of a structured message."""

    type: Literal["text"] = "text"
    text: str


class ImageURL(BaseModel):
    url: str
    detail: Literal["auto", "low", "high"] = "auto"


class ImagePart(BaseModel):
    """
    An image reference inside structured content.

    Image parts never contribute text tokens; the ``image_url`` key is skipped
    by :class:`~palimpsest.tokens.counter.TokenCounter`.
    """

    type: Literal["image_url"] = "image_url"
    image_url: ImageURL


ContentPart = Annotated[TextPart | ImagePart, Field(discriminator="type")]


# ── Message Models ─────────────────────────────────────────────────────────────


class Message(BaseModel):
    """
    A single stored message in a conversation tree.

    Messages point at their parent through ``parent_message_id``. The only
    fields mutated after creation are the cached token bookkeeping fields
    (``token_count``, ``summary``, ``summary_token_count``).
    """

    message_id: str
    conversation_id: str
    parent_message_id: str | None = ROOT_PARENT_ID
    sender: str = "User"
    role: str | None = None
    """Explicit role override. ``None`` derives the role from ``is_created_by_user``."""
    text: str = ""
    content: list[ContentPart] | None = None
    """Structured content. When set, it replaces ``text`` in the formatted payload."""
    is_created_by_user: bool = True
    model: str | None = None
    token_count: int | None = None
    summary: str | None = None
    summary_token_count: int | None = None
    prompt_tokens: int | None = None
    created_at: int = Field(default_factory=lambda: int(time.time() * 1000))
    """Unix millisecond timestamp."""

    @property
    def effective_role(self) -> str:
        if self.role:
            return self.role
        return "user" if self.is_created_by_user else "assistant"

    @property
    def is_root(self) -> bool:
        return not self.parent_message_id or self.parent_message_id == ROOT_PARENT_ID


class Instructions(BaseModel):
    """System instructions injected just before the most recent turn."""

    role: str = "system"
    content: str
    name: str | None = None
    token_count: int | None = None

    @property
    def message_id(self) -> None:
        """Instructions are never stored, so they never carry an id."""
        return None

    def is_empty(self) -> bool:
        return not self.content

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            payload["name"] = self.name
        return payload


ThreadItem = Message | Instructions
"""An element of an ordered thread once instructions have been injected."""


class Conversation(BaseModel):
    """A conversation row. Endpoint and metadata are opaque to the core."""

    conversation_id: str
    user: str | None = None
    endpoint: str | None = None
    title: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: int = Field(default_factory=lambda: int(time.time() * 1000))
    updated_at: int = Field(default_factory=lambda: int(time.time() * 1000))


# ── Summaries ──────────────────────────────────────────────────────────────────


class PreviousSummary(BaseModel):
    """The most recent summary found in a conversation thread."""

    message_id: str
    content: str
    token_count: int = 0
    summary_token_count: int = 0


class SummaryEntry(BaseModel):
    """
    A freshly generated summary to be persisted onto an existing message.

    ``message_id`` names the boundary message that receives the ``summary``
    and ``summary_token_count`` fields; no new message is created.
    """

    message_id: str
    role: str = "system"
    content: str
    token_count: int


# ── Token Bookkeeping ──────────────────────────────────────────────────────────


class TokenCountMap(BaseModel):
    """Message id → token count, plus an optional freshly generated summary."""

    counts: dict[str, int] = Field(default_factory=dict)
    summary_message: SummaryEntry | None = None

    def __getitem__(self, message_id: str) -> int:
        return self.counts[message_id]

    def __contains__(self, message_id: object) -> bool:
        return message_id in self.counts

    def __len__(self) -> int:
        return len(self.counts)

    def get(self, message_id: str, default: int | None = None) -> int | None:
        return self.counts.get(message_id, default)


class ContextResult(BaseModel):
    """The assembled, budget-bounded payload for one completion call."""

    payload: list[dict[str, Any]]
    token_count_map: TokenCountMap
    prompt_tokens: int
    ordered_messages: list[ThreadItem]
    used_cached_summary: bool = False
    summary_token_count: int = 0


class TokenUsage(BaseModel):
    """Prompt/completion token counts recorded for a completed turn."""

    prompt: int = 0
    completion: int = 0

    @property
    def total(self) -> int:
        return self.prompt + self.completion
