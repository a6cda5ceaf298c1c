"""
Palimpsest: bounded, summary-aware conversation context for LLM calls.

Primary entry points::

    from palimpsest import ContextAssembler, ConversationClient, PalimpsestConfig

    result = await assembler.build_context(conversation_id, leaf_id, instructions, 4_000)
    reply = await client.send_message("Hello!", conversation_id=conversation_id)
"""

from palimpsest.abort import AbortSignal
from palimpsest.client import ConversationClient, PreparedTurn, make_id
from palimpsest.context import (
    ContextAssembler,
    PackResult,
    SummaryCoordinator,
    SummaryResolution,
    build_token_count_map,
    inject_instructions,
    pack_context,
    thread_messages,
)
from palimpsest.errors import (
    BudgetExceededError,
    ConversationNotFoundError,
    ImmutableFieldError,
    MessageNotFoundError,
    PalimpsestError,
    RequestAbortedError,
    StoreError,
    SummarizerError,
)
from palimpsest.events.bus import EventBus, PalimpsestEvent
from palimpsest.models import (
    ROOT_PARENT_ID,
    ContextConfig,
    ContextResult,
    Conversation,
    FramingRule,
    ImagePart,
    Instructions,
    Message,
    ModelInfo,
    PalimpsestConfig,
    PreviousSummary,
    StoreConfig,
    SummaryConfig,
    SummaryEntry,
    TextPart,
    TokenAccountingConfig,
    TokenCountMap,
    TokenUsage,
)
from palimpsest.providers import (
    AnthropicChatProvider,
    ChatProvider,
    OpenAIChatProvider,
    provider_for_model,
)
from palimpsest.store import MessageStore, SQLiteMessageStore, StorePool
from palimpsest.summarization import LLMSummarizer, Summarizer, SummaryResult
from palimpsest.tokens import TokenCounter, token_count

__version__ = "0.1.0"

__all__ = [
    # Core
    "ContextAssembler",
    "ConversationClient",
    "PreparedTurn",
    "AbortSignal",
    "make_id",
    # Algorithms
    "thread_messages",
    "inject_instructions",
    "pack_context",
    "PackResult",
    "SummaryCoordinator",
    "SummaryResolution",
    "build_token_count_map",
    # Config
    "PalimpsestConfig",
    "ContextConfig",
    "SummaryConfig",
    "TokenAccountingConfig",
    "FramingRule",
    "StoreConfig",
    "ModelInfo",
    # Models
    "ROOT_PARENT_ID",
    "Message",
    "Instructions",
    "TextPart",
    "ImagePart",
    "Conversation",
    "ContextResult",
    "TokenCountMap",
    "SummaryEntry",
    "PreviousSummary",
    "TokenUsage",
    # Errors
    "PalimpsestError",
    "BudgetExceededError",
    "SummarizerError",
    "RequestAbortedError",
    "StoreError",
    "ConversationNotFoundError",
    "MessageNotFoundError",
    "ImmutableFieldError",
    # Events
    "EventBus",
    "PalimpsestEvent",
    # Providers
    "ChatProvider",
    "OpenAIChatProvider",
    "AnthropicChatProvider",
    "provider_for_model",
    # Store
    "MessageStore",
    "SQLiteMessageStore",
    "StorePool",
    # Summaries
    "Summarizer",
    "SummaryResult",
    "LLMSummarizer",
    # Tokens
    "TokenCounter",
    "token_count",
]
