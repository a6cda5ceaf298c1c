"""Exception types raised by Palimpsest components."""

from __future__ import annotations


class PalimpsestError(Exception):
    """Base class for all Palimpsest errors."""


class BudgetExceededError(PalimpsestError):
    """Raised when the assembled prompt cannot fit within the token budget."""

    def __init__(self, token_count: int | None, max_context_tokens: int, *, what: str = "Prompt") -> None:
        super().__init__(
            f"{what} token count of {token_count} exceeds max token count of {max_context_tokens}."
        )
        self.token_count = token_count
        self.max_context_tokens = max_context_tokens


class SummarizerError(PalimpsestError):
    """Raised when a summary of the discarded prefix cannot be produced."""


class RequestAbortedError(PalimpsestError):
    """Raised when the caller aborted the request between pipeline stages."""

    def __init__(self, stage: str) -> None:
        super().__init__(f"Request aborted before {stage}")
        self.stage = stage


# ── Store ──────────────────────────────────────────────────────────────────────


class StoreError(PalimpsestError):
    """Base class for store errors."""


class ConversationNotFoundError(StoreError):
    """Raised when a conversation_id does not exist in the store."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation not found: {conversation_id!r}")
        self.conversation_id = conversation_id


class MessageNotFoundError(StoreError):
    """Raised when a message_id does not exist in the store."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message not found: {message_id!r}")
        self.message_id = message_id


class ImmutableFieldError(StoreError):
    """Raised when attempting to modify a field that identifies a message's place in its tree."""
