"""Palimpsest data models."""

from palimpsest.models.config import (
    ContextConfig,
    FramingRule,
    ModelInfo,
    PalimpsestConfig,
    StoreConfig,
    SummaryConfig,
    TokenAccountingConfig,
)
from palimpsest.models.message import (
    ROOT_PARENT_ID,
    ContentPart,
    ContextResult,
    Conversation,
    ImagePart,
    ImageURL,
    Instructions,
    Message,
    PreviousSummary,
    SummaryEntry,
    TextPart,
    ThreadItem,
    TokenCountMap,
    TokenUsage,
)

__all__ = [
    # Config
    "ContextConfig",
    "FramingRule",
    "ModelInfo",
    "PalimpsestConfig",
    "StoreConfig",
    "SummaryConfig",
    "TokenAccountingConfig",
    # Content
    "TextPart",
    "ImagePart",
    "ImageURL",
    "ContentPart",
    # Messages
    "ROOT_PARENT_ID",
    "Message",
    "Instructions",
    "ThreadItem",
    "Conversation",
    # Summaries and results
    "PreviousSummary",
    "SummaryEntry",
    "TokenCountMap",
    "ContextResult",
    "TokenUsage",
]
