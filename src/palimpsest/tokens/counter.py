"""Per-message token accounting with model-specific framing rules."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from palimpsest.models.config import ModelInfo, TokenAccountingConfig

_SKIPPED_MEDIA = "image_url"


class TokenCounter:
    """
    Counts tokens for provider-formatted chat messages.

    Algorithm adapted from "Counting tokens for chat API calls" in the OpenAI
    cookbook: every message costs a fixed framing overhead, every ``name``
    field adds (or, for legacy models, removes) a token, and every scalar value
    nested anywhere in the message is tokenised as text. Image references
    contribute nothing.

    The extra 3 tokens that prime the assistant reply are not counted here;
    they are reserved by :func:`~palimpsest.context.packer.pack_context`.

    Text tokenisation priority:
    1. tiktoken for OpenAI model families (``cl100k_base``, ``o200k_base``)
    2. Character heuristic (``len // 3``) for Claude models
    3. Character heuristic (``len // 4``) for everything else

    Encoder objects are cached by encoding name (one load per process). The
    counter holds no other state, so one instance may be shared freely.
    """

    def __init__(self, config: TokenAccountingConfig | None = None) -> None:
        self._config = config or TokenAccountingConfig()
        self._encoder_cache: dict[str, Any] = {}
        self._force_heuristic: bool = False
        """Set to True in tests to skip tiktoken import."""

    def count_text(self, text: str, model: ModelInfo | None = None) -> int:
        """
        Count tokens in a plain string.

        Args:
            text: The text to count.
            model: Optional model info for accurate tokenisation. Uses the
                heuristic when None or the model encoding is unknown.

        Returns:
            Token count, always >= 1 for non-empty text.
        """
        if not text:
            return 0
        if self._force_heuristic or model is None:
            return self._heuristic(text)

        encoding = model.encoding
        if encoding == "claude_heuristic":
            return max(1, len(text) // 3)
        if encoding in ("cl100k_base", "o200k_base"):
            try:
                return self._tiktoken_count(text, encoding)
            except Exception:
                pass
        return self._heuristic(text)

    def count_message(self, message: Mapping[str, Any], model_id: str | None = None) -> int:
        """
        Count tokens for one formatted message (``{"role": ..., "content": ...}``).

        Args:
            message: Provider-formatted message. Values may be nested dicts or
                lists (structured content).
            model_id: Model identifier selecting the framing rule and encoding.
                Unknown or missing models use the default rule.

        Returns:
            Token cost of the message, never negative.
        """
        framing = self._config.framing_for(model_id)
        model = ModelInfo.from_model_string(model_id) if model_id else None

        num_tokens = framing.tokens_per_message
        for key, value in message.items():
            num_tokens += self._count_value(value, model)
            if key == "name":
                num_tokens += framing.tokens_per_name
        return max(0, num_tokens)

    def _count_value(self, value: Any, model: ModelInfo | None) -> int:
        if value is None:
            return 0
        if isinstance(value, Mapping):
            total = 0
            for nested_key, nested_value in value.items():
                if nested_key == _SKIPPED_MEDIA or nested_value == _SKIPPED_MEDIA:
                    continue
                total += self._count_value(nested_value, model)
            return total
        if isinstance(value, list | tuple):
            return sum(
                self._count_value(item, model) for item in value if item != _SKIPPED_MEDIA
            )
        if isinstance(value, bool):
            return self.count_text(str(value).lower(), model)
        return self.count_text(str(value), model)

    def _heuristic(self, text: str) -> int:
        """Conservative heuristic: 4 characters per token, minimum 1."""
        return max(1, len(text) // 4)

    def _tiktoken_count(self, text: str, encoding_name: str) -> int:
        """Encode with tiktoken, caching the encoder object."""
        if encoding_name not in self._encoder_cache:
            import tiktoken

            self._encoder_cache[encoding_name] = tiktoken.get_encoding(encoding_name)
        encoder = self._encoder_cache[encoding_name]
        return len(encoder.encode(text))


_default_counter: TokenCounter | None = None


def token_count(message: Mapping[str, Any], model_id: str | None = None) -> int:
    """Count tokens for *message* with a process-wide default :class:`TokenCounter`."""
    global _default_counter
    if _default_counter is None:
        _default_counter = TokenCounter()
    return _default_counter.count_message(message, model_id)
