"""Provider trait: the capability set the core relies on."""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

import structlog

from palimpsest.abort import AbortSignal
from palimpsest.models.config import ModelInfo, PalimpsestConfig
from palimpsest.models.message import Instructions, Message, ThreadItem
from palimpsest.summarization.summarizer import LLMCall, LLMSummarizer, SummaryResult
from palimpsest.tokens.counter import TokenCounter


class ChatProvider(ABC):
    """
    Base class for model providers.

    Subclasses decide how canonical messages are formatted for their API and
    how completions are requested. Everything else (threading, packing,
    summary reuse) lives in :class:`~palimpsest.context.assembler.ContextAssembler`,
    which only talks to this interface.
    """

    name: str = "base"

    def __init__(
        self,
        model: str,
        config: PalimpsestConfig,
        token_counter: TokenCounter | None = None,
        llm_call: LLMCall | None = None,
    ) -> None:
        self._model = model
        self._model_info = ModelInfo.from_model_string(model)
        self._config = config
        self._counter = token_counter or TokenCounter(config.tokens)
        self._llm_call = llm_call
        self._options: dict[str, Any] = {}
        self._summarizer = LLMSummarizer(model, config.summary, self._counter, llm_call=llm_call)
        self._logger = structlog.get_logger(f"palimpsest.providers.{self.name}")

    @property
    def model(self) -> str:
        return self._model

    @property
    def model_info(self) -> ModelInfo:
        return self._model_info

    @property
    def token_counter(self) -> TokenCounter:
        return self._counter

    def set_options(self, **options: Any) -> None:
        """Merge completion options (temperature, max_tokens, ...) for later calls."""
        model = options.pop("model", None)
        if model:
            self._model = model
            self._model_info = ModelInfo.from_model_string(model)
            self._summarizer = LLMSummarizer(
                model, self._config.summary, self._counter, llm_call=self._llm_call
            )
        self._options.update(options)

    @abstractmethod
    def format_message(self, message: Message) -> dict[str, Any]:
        """Convert a canonical message into this provider's message shape."""

    def format_instructions(self, instructions: Instructions) -> dict[str, Any]:
        return instructions.to_payload()

    def format_item(self, item: ThreadItem) -> dict[str, Any]:
        if isinstance(item, Instructions):
            return self.format_instructions(item)
        return self.format_message(item)

    @abstractmethod
    async def send_completion(
        self,
        payload: Sequence[dict[str, Any]],
        *,
        abort: AbortSignal | None = None,
    ) -> str:
        """Request a completion for ``payload`` and return the reply text."""

    async def summarize_messages(
        self,
        messages_to_refine: Sequence[ThreadItem],
        remaining_tokens: int,
    ) -> SummaryResult:
        """Summarise the excluded prefix. Satisfies the ``Summarizer`` protocol."""
        return await self._summarizer.summarize(messages_to_refine, remaining_tokens)

    async def summarize(
        self,
        messages_to_refine: Sequence[ThreadItem],
        remaining_tokens: int,
    ) -> SummaryResult:
        return await self.summarize_messages(messages_to_refine, remaining_tokens)

    def get_token_count(self, text: str) -> int:
        return self._counter.count_text(text, self._model_info)

    def get_token_count_for_message(self, message: ThreadItem) -> int:
        return self._counter.count_message(self.format_item(message), self._model)

    def get_token_count_for_response(self, message: Message) -> int:
        """Token count recorded on an assistant reply once it is saved."""
        return self.get_token_count_for_message(message)

    def _mock_enabled(self) -> bool:
        return os.environ.get("PALIMPSEST_MOCK_LLM") == "1"

    def _mock_completion(self, payload: Sequence[dict[str, Any]]) -> str:
        last = payload[-1]["content"] if payload else ""
        if isinstance(last, list):
            last = " ".join(block.get("text", "") for block in last if isinstance(block, dict))
        return (
            f"[Mock {self.name} response to: {str(last)[:100]}]\n"
            "Set PALIMPSEST_MOCK_LLM=0 and provide an API key to use a real model."
        )
