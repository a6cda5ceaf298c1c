"""Configuration models for Palimpsest components."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator


class FramingRule(BaseModel):
    """Fixed per-message framing cost applied on top of content tokens."""

    tokens_per_message: int = 3
    tokens_per_name: int = 1


def _default_framing_overrides() -> dict[str, FramingRule]:
    return {"gpt-3.5-turbo-0301": FramingRule(tokens_per_message=4, tokens_per_name=-1)}


class TokenAccountingConfig(BaseModel):
    """Model-specific token accounting rules."""

    default_framing: FramingRule = Field(default_factory=FramingRule)
    framing_overrides: dict[str, FramingRule] = Field(
        default_factory=_default_framing_overrides,
        description="Model id (with or without provider prefix) to framing rule. Unknown models use default_framing.",
    )

    def framing_for(self, model_id: str | None) -> FramingRule:
        """
        Return the framing rule for *model_id*, falling back to the default.

        The full id is tried first, then the id without its ``provider/``
        prefix, so ``openai/gpt-3.5-turbo-0301`` picks up the legacy rule.
        """
        if not model_id:
            return self.default_framing
        if model_id in self.framing_overrides:
            return self.framing_overrides[model_id]
        model_name = model_id.split("/", 1)[-1]
        return self.framing_overrides.get(model_name, self.default_framing)


class ContextConfig(BaseModel):
    """Configuration for context packing."""

    max_context_tokens: int = Field(
        default=4_095,
        ge=1,
        description="Token budget for the assembled prompt when the caller does not pass one.",
    )

    reserved_overhead: int = Field(
        default=3,
        ge=0,
        description="Tokens reserved for reply priming (<|start|>assistant<|message|>).",
    )


DEFAULT_SUMMARY_PROMPT = """\
Summarize the conversation below so it can replace the original messages.
Keep names, decisions, open questions and any instructions the user gave.
Write in the third person and stay under {{ max_tokens }} tokens.
{% if previous_summary %}
Fold this earlier summary into your answer:
{{ previous_summary }}
{% endif %}
<conversation>
{{ transcript }}
</conversation>
"""


class SummaryConfig(BaseModel):
    """Configuration for summarising the discarded conversation prefix."""

    enabled: bool = False
    """Whether messages that do not fit are summarised instead of dropped."""

    model: str | None = Field(
        default=None,
        description="Model used for summarisation. None = use the conversation model.",
    )

    prompt: str = Field(
        default=DEFAULT_SUMMARY_PROMPT,
        description="Jinja2 template with transcript, max_tokens and previous_summary variables.",
    )

    min_budget_tokens: int = Field(
        default=0,
        ge=0,
        description="Remaining budget below which no summary is requested. 0 = always summarise.",
    )

    max_input_chars: int = Field(
        default=48_000,
        ge=1_000,
        description="Transcript characters passed to the summariser; oldest text is dropped first.",
    )


class StoreConfig(BaseModel):
    """Configuration for the SQLite persistence layer."""

    db_path: str = Field(
        default="~/.palimpsest/conversations.db",
        description="Path to the SQLite database file. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode for better concurrent read performance."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database connection before raising."""


class PalimpsestConfig(BaseModel):
    """
    Top-level configuration passed explicitly to every component.

    Example::

        config = PalimpsestConfig(
            context=ContextConfig(max_context_tokens=8_000),
            summary=SummaryConfig(enabled=True, model="openai/gpt-4o-mini"),
        )
    """

    context: ContextConfig = Field(default_factory=ContextConfig)
    summary: SummaryConfig = Field(default_factory=SummaryConfig)
    tokens: TokenAccountingConfig = Field(default_factory=TokenAccountingConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)

    @model_validator(mode="after")
    def validate_summary_budget(self) -> PalimpsestConfig:
        if self.summary.min_budget_tokens >= self.context.max_context_tokens:
            raise ValueError("summary.min_budget_tokens must be less than context.max_context_tokens")
        return self

    @classmethod
    def default(cls) -> PalimpsestConfig:
        """Return a config instance with all defaults."""
        return cls()


class ModelInfo(BaseModel):
    """Resolved model metadata used for tokenisation and budgets."""

    model_id: str
    provider_id: str = ""
    context_limit: int = Field(
        default=128_000,
        description="Total input + output token limit for this model.",
    )
    max_output_tokens: int = Field(
        default=4_096,
        description="Maximum output tokens for a single response.",
    )
    encoding: Literal["cl100k_base", "o200k_base", "claude_heuristic", "unknown"] = "cl100k_base"

    @property
    def model_name(self) -> str:
        """The model id without its ``provider/`` prefix."""
        return self.model_id.split("/", 1)[1] if "/" in self.model_id else self.model_id

    @classmethod
    def from_model_string(cls, model: str) -> ModelInfo:
        """
        Create a ModelInfo by heuristically parsing a model string.

        Supports litellm-style strings like ``anthropic/claude-3-5-sonnet``,
        ``gpt-4o``, ``openai/gpt-3.5-turbo-0301``, etc.
        """
        lower = model.lower()
        provider = ""
        model_name = lower

        if "/" in lower:
            provider, model_name = lower.split("/", 1)

        if "claude" in model_name:
            return cls(
                model_id=model,
                provider_id=provider or "anthropic",
                context_limit=200_000,
                max_output_tokens=8_192,
                encoding="claude_heuristic",
            )
        if "gpt-4o" in model_name or model_name.startswith(("o1", "o3", "o4")):
            return cls(
                model_id=model,
                provider_id=provider or "openai",
                context_limit=128_000,
                max_output_tokens=16_384,
                encoding="o200k_base",
            )
        if "gpt-3.5" in model_name:
            return cls(
                model_id=model,
                provider_id=provider or "openai",
                context_limit=16_385 if "0301" not in model_name else 4_096,
                max_output_tokens=4_096,
                encoding="cl100k_base",
            )
        if "gpt-4" in model_name:
            return cls(
                model_id=model,
                provider_id=provider or "openai",
                context_limit=128_000,
                max_output_tokens=4_096,
                encoding="cl100k_base",
            )
        # Safe default for unknown models
        return cls(
            model_id=model,
            provider_id=provider,
            context_limit=8_192,
            max_output_tokens=2_048,
            encoding="unknown",
        )
