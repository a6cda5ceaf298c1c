"""Summariser protocol and the LLM-backed implementation."""

from __future__ import annotations

import os
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import structlog
from jinja2 import Environment, StrictUndefined, TemplateSyntaxError

from palimpsest.errors import SummarizerError
from palimpsest.models.config import SummaryConfig
from palimpsest.models.message import Instructions, Message, ThreadItem
from palimpsest.tokens.counter import TokenCounter

logger = structlog.get_logger("palimpsest.summarizer")

LLMCall = Callable[..., Awaitable[str]]
"""Async callable ``(*, model, messages, max_tokens) -> str``."""


@dataclass
class SummaryResult:
    """A summary of the discarded prefix, ready to be prepended to the payload."""

    summary_message: dict[str, Any]
    """Formatted ``{"role": "system", "content": ...}`` message."""
    summary_token_count: int

    @property
    def content(self) -> str:
        return str(self.summary_message.get("content", ""))


@runtime_checkable
class Summarizer(Protocol):
    """Anything that can condense the discarded prefix within a token budget."""

    async def summarize(
        self,
        messages_to_refine: Sequence[ThreadItem],
        remaining_tokens: int,
    ) -> SummaryResult: ...


def concatenate_messages(messages: Sequence[ThreadItem]) -> str:
    """Render ``messages`` as a ``"role:\\ncontent\\n\\n"`` transcript."""
    chunks: list[str] = []
    for item in messages:
        if isinstance(item, Instructions):
            label = item.name or item.role
            chunks.append(f"{label}:\n{item.content}\n\n")
        else:
            chunks.append(f"{item.effective_role}:\n{_message_text(item)}\n\n")
    return "".join(chunks)


def _message_text(message: Message) -> str:
    if message.content:
        texts = [part.text for part in message.content if part.type == "text"]
        return "\n".join(texts)
    return message.text


def _mock_llm_call() -> LLMCall:
    async def _call(*, model: str, messages: list[dict[str, str]], max_tokens: int) -> str:
        content = messages[-1]["content"] if messages else ""
        conv_text = ""
        if "<conversation>" in content:
            conv_text = content.split("<conversation>")[1].split("</conversation>")[0].strip()
        lines = [ln.strip() for ln in conv_text.splitlines() if ln.strip() and not ln.endswith(":")]
        bullets = "\n".join(f"- {ln[:80]}" for ln in lines[:4]) or "- (nothing to summarize)"
        return "Earlier in this conversation:\n" + bullets

    return _call


def make_llm_call() -> LLMCall:
    """Return an async function that calls an LLM through litellm."""
    if os.environ.get("PALIMPSEST_MOCK_LLM") == "1":
        return _mock_llm_call()

    async def _call(*, model: str, messages: list[dict[str, str]], max_tokens: int) -> str:
        import litellm

        response = await litellm.acompletion(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=0.2,
        )
        return response.choices[0].message.content or ""

    return _call


class LLMSummarizer:
    """
    Summarises the discarded prefix with a single LLM call.

    The transcript is rendered into the configured Jinja2 prompt. When the
    transcript is longer than ``max_input_chars`` the oldest text is dropped.
    The model is asked for at most ``remaining_tokens`` minus the framing cost
    of the summary message, so a well-behaved model always fits the budget.

    Errors from the LLM call are wrapped in :class:`SummarizerError` and
    propagate; there is no fallback to an unsummarised payload.

    Example::

        summarizer = LLMSummarizer("openai/gpt-4o-mini", config.summary, counter)
        result = await summarizer.summarize(pack.messages_to_refine, pack.remaining_tokens)
    """

    def __init__(
        self,
        model: str,
        config: SummaryConfig,
        token_counter: TokenCounter,
        llm_call: LLMCall | None = None,
    ) -> None:
        self._model = config.model or model
        self._config = config
        self._counter = token_counter
        self._llm_call = llm_call or make_llm_call()
        self._template = _compile_prompt(config.prompt)

    async def summarize(
        self,
        messages_to_refine: Sequence[ThreadItem],
        remaining_tokens: int,
    ) -> SummaryResult:
        """
        Produce a system-role summary of ``messages_to_refine``.

        Args:
            messages_to_refine: The excluded prefix, oldest first.
            remaining_tokens: Budget left for the summary message.

        Returns:
            SummaryResult with the formatted summary message and its cost.

        Raises:
            SummarizerError: If there is no budget left or the LLM call fails.
        """
        framing = self._counter.count_message({"role": "system", "content": ""}, self._model)
        max_tokens = remaining_tokens - framing
        if max_tokens <= 0:
            raise SummarizerError(
                f"No budget left for a summary: {remaining_tokens} remaining tokens"
            )

        previous_summary = ""
        to_render = list(messages_to_refine)
        if to_render and isinstance(to_render[0], Message) and to_render[0].role == "system":
            # Thread truncated at an older summary: fold it in rather than re-quote it.
            previous_summary = to_render[0].text
            to_render = to_render[1:]

        transcript = concatenate_messages(to_render)
        if len(transcript) > self._config.max_input_chars:
            logger.info(
                "summary_input_truncated",
                chars=len(transcript),
                cap=self._config.max_input_chars,
            )
            transcript = transcript[-self._config.max_input_chars :]

        prompt = self._template.render(
            transcript=transcript.strip(),
            max_tokens=max_tokens,
            previous_summary=previous_summary,
        )

        try:
            text = await self._llm_call(
                model=self._model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=max_tokens,
            )
        except Exception as exc:
            logger.warning("summary_llm_failed", model=self._model, error=str(exc))
            raise SummarizerError(f"Summarization with {self._model} failed: {exc}") from exc

        text = text.strip()
        if not text:
            raise SummarizerError(f"Summarization with {self._model} returned no text")

        summary_message = {"role": "system", "content": text}
        token_count = self._counter.count_message(summary_message, self._model)
        logger.debug(
            "summary_created",
            model=self._model,
            messages=len(messages_to_refine),
            token_count=token_count,
            budget=remaining_tokens,
        )
        return SummaryResult(summary_message=summary_message, summary_token_count=token_count)


def _compile_prompt(template_str: str) -> Any:
    """Compile the summary prompt, requiring a ``transcript`` variable."""
    from jinja2 import meta

    env = Environment(undefined=StrictUndefined)
    try:
        ast = env.parse(template_str)
    except TemplateSyntaxError as exc:
        raise ValueError(f"Invalid Jinja2 template syntax: {exc}") from exc
    if "transcript" not in meta.find_undeclared_variables(ast):
        raise ValueError("summary prompt must reference {{ transcript }}")
    return env.from_string(template_str)
