"""Context assembly: thread → inject → pack → summarise → account."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

import structlog

from palimpsest.abort import AbortSignal
from palimpsest.context.instructions import inject_instructions
from palimpsest.context.packer import pack_context
from palimpsest.context.summary import SummaryCoordinator
from palimpsest.context.threader import find_latest_summary, thread_messages
from palimpsest.context.token_map import build_token_count_map, prompt_tokens
from palimpsest.events.bus import EventBus, PalimpsestEvent
from palimpsest.models.config import PalimpsestConfig
from palimpsest.models.message import (
    ContextResult,
    Instructions,
    Message,
    PreviousSummary,
    ThreadItem,
    TokenCountMap,
)
from palimpsest.providers.base import ChatProvider
from palimpsest.store.base import MessageStore
from palimpsest.summarization.summarizer import Summarizer


class ContextAssembler:
    """
    Builds the bounded payload for the next completion call.

    Pipeline, one request at a time:

    1. Load the conversation snapshot and thread it from the leaf message,
       truncating at the newest cached summary when summarisation is enabled.
    2. Fill in token counts that are not cached yet (cached counts are kept).
    3. Inject the instructions just before the latest turn, in both the
       formatted payload and the canonical thread.
    4. Pack the newest messages into the budget.
    5. Reuse or regenerate the summary of the excluded prefix.
    6. Build the token count map for writeback.

    The only state kept between requests is the previous summary per
    conversation (:attr:`previous_summaries`), refreshed from the thread on
    every build. The abort signal, when given, is checked between stages.

    Example::

        assembler = ContextAssembler(store, provider, config)
        result = await assembler.build_context(
            conversation_id, leaf_id, Instructions(content="Be brief."), 4_000
        )
        reply = await provider.send_completion(result.payload)
    """

    def __init__(
        self,
        store: MessageStore,
        provider: ChatProvider,
        config: PalimpsestConfig,
        *,
        summarizer: Summarizer | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._config = config
        self._summarizer = summarizer if summarizer is not None else provider
        self._event_bus = event_bus
        self._coordinator = SummaryCoordinator(config.summary, event_bus)
        self.previous_summaries: dict[str, PreviousSummary] = {}
        self._logger = structlog.get_logger("palimpsest.assembler")

    @property
    def should_summarize(self) -> bool:
        return self._config.summary.enabled

    async def build_context(
        self,
        conversation_id: str,
        leaf_message_id: str,
        instructions: Instructions | None = None,
        max_context_tokens: int | None = None,
        model_id: str | None = None,
        *,
        abort: AbortSignal | None = None,
        messages: Sequence[Message] | None = None,
    ) -> ContextResult:
        """
        Assemble the payload ending at ``leaf_message_id``.

        Args:
            conversation_id: Conversation to read from the store.
            leaf_message_id: Newest message of the thread.
            instructions: Optional instructions placed before the latest turn.
            max_context_tokens: Budget; defaults to ``config.context.max_context_tokens``.
            model_id: Model for token accounting; defaults to the provider's model.
            abort: Optional cooperative abort signal.
            messages: Pre-loaded snapshot. When omitted the store is queried.

        Returns:
            ContextResult whose payload fits ``max_context_tokens``.

        Raises:
            BudgetExceededError: If nothing fits and summarisation is disabled.
            RequestAbortedError: If ``abort`` fired between stages.
        """
        if messages is None:
            messages = await self._store.get_messages(conversation_id)
        if abort is not None:
            abort.raise_if_aborted("threading")

        snapshot = list(messages)
        if self.should_summarize:
            self.load_previous_summary(conversation_id, thread_messages(snapshot, leaf_message_id))

        ordered = thread_messages(
            snapshot, leaf_message_id, stop_at_summary=self.should_summarize
        )
        self._logger.debug(
            "thread_loaded",
            conversation_id=conversation_id,
            snapshot=len(snapshot),
            thread=len(ordered),
        )
        return await self.assemble(
            conversation_id,
            ordered,
            instructions,
            max_context_tokens,
            model_id,
            abort=abort,
        )

    def load_previous_summary(
        self, conversation_id: str, thread: Sequence[Message]
    ) -> PreviousSummary | None:
        """Track the newest summary in ``thread`` as the conversation's previous summary."""
        previous = find_latest_summary(thread)
        if previous is None:
            self.previous_summaries.pop(conversation_id, None)
            return None
        self.previous_summaries[conversation_id] = previous
        self._logger.debug(
            "previous_summary_loaded",
            conversation_id=conversation_id,
            message_id=previous.message_id,
            summary_token_count=previous.summary_token_count,
        )
        return previous

    async def assemble(
        self,
        conversation_id: str,
        ordered: Sequence[Message],
        instructions: Instructions | None = None,
        max_context_tokens: int | None = None,
        model_id: str | None = None,
        *,
        abort: AbortSignal | None = None,
    ) -> ContextResult:
        """Run inject → pack → summarise → account over an already threaded list."""
        max_tokens = max_context_tokens or self._config.context.max_context_tokens
        model = model_id or self._provider.model

        counted: list[Message] = [self._with_token_count(message, model) for message in ordered]
        formatted = [self._provider.format_message(message) for message in counted]

        injected: Instructions | None = None
        if instructions is not None and not instructions.is_empty():
            injected = self._with_token_count(instructions, model)

        payload = list(
            inject_instructions(formatted, injected.to_payload() if injected else None)
        )
        ordered_with_instructions: list[ThreadItem] = list(
            inject_instructions(counted, injected)
        )

        packed = pack_context(
            ordered_with_instructions,
            max_tokens,
            reserved_overhead=self._config.context.reserved_overhead,
        )
        self._logger.debug(
            "context_packed",
            conversation_id=conversation_id,
            included=len(packed.context),
            excluded=len(packed.messages_to_refine),
            remaining_tokens=packed.remaining_tokens,
            max_context_tokens=max_tokens,
        )

        if abort is not None:
            abort.raise_if_aborted("summarization")

        previous = self.previous_summaries.get(conversation_id) if self.should_summarize else None
        boundary = packed.messages_to_refine[-1] if packed.messages_to_refine else None
        resolution = await self._coordinator.resolve(
            payload,
            packed.context,
            packed.messages_to_refine,
            boundary,
            previous.message_id if previous else None,
            packed.remaining_tokens,
            self._summarizer if self.should_summarize else None,
            latest_message=ordered_with_instructions[-1] if ordered_with_instructions else None,
            max_context_tokens=max_tokens,
        )

        if abort is not None:
            abort.raise_if_aborted("token accounting")

        token_map = build_token_count_map(
            ordered_with_instructions,
            summary_message=resolution.summary_message,
            summary_token_count=resolution.summary_token_count,
            boundary_index=packed.boundary_index,
            used_cached_summary=resolution.used_cached_summary,
        )
        total = prompt_tokens(max_tokens, resolution.remaining_tokens)

        self._logger.info(
            "context_built",
            conversation_id=conversation_id,
            message_count=len(resolution.payload),
            prompt_tokens=total,
            remaining_tokens=resolution.remaining_tokens,
            used_cached_summary=resolution.used_cached_summary,
            summarized=resolution.generated_summary,
        )
        if self._event_bus is not None:
            self._event_bus.publish(
                PalimpsestEvent.CONTEXT_BUILT,
                {
                    "conversation_id": conversation_id,
                    "message_count": len(resolution.payload),
                    "prompt_tokens": total,
                    "used_cached_summary": resolution.used_cached_summary,
                },
            )

        return ContextResult(
            payload=resolution.payload,
            token_count_map=token_map,
            prompt_tokens=total,
            ordered_messages=ordered_with_instructions,
            used_cached_summary=resolution.used_cached_summary,
            summary_token_count=resolution.summary_token_count,
        )

    def _with_token_count(self, item: Any, model_id: str) -> Any:
        if item.token_count is not None:
            return item
        tokens = self._provider.token_counter.count_message(
            self._provider.format_item(item), model_id
        )
        return item.model_copy(update={"token_count": tokens})

    # ── Writeback ──────────────────────────────────────────────────────────────

    async def write_token_counts(
        self,
        ordered_messages: Sequence[Message],
        token_map: TokenCountMap,
        *,
        abort: AbortSignal | None = None,
    ) -> list[str]:
        """
        Persist new token counts and a freshly generated summary.

        The last message (the current turn) is skipped; the caller saves it
        with its count. Messages that already had a token count are left
        alone unless they receive the new summary. Each id is updated at most
        once.

        Args:
            ordered_messages: The thread as loaded from the store.
            token_map: Map produced by :meth:`build_context`.
            abort: Stops writing further updates once fired.

        Returns:
            Ids of the messages that were updated.

        Raises:
            StoreError: Propagated from the store.
        """
        updated: list[str] = []
        seen: set[str] = set()
        summary = token_map.summary_message

        for message in list(ordered_messages)[:-1]:
            message_id = message.message_id
            if not message_id or message_id in seen:
                continue
            seen.add(message_id)

            update: dict[str, Any] = {}
            if summary is not None and message_id == summary.message_id:
                self._logger.debug("summary_writeback", message_id=message_id)
                update["summary"] = summary.content
                update["summary_token_count"] = summary.token_count

            if message.token_count is None:
                tokens = token_map.get(message_id)
                if tokens:
                    update["token_count"] = tokens
            elif not update:
                continue

            if not update:
                continue
            if abort is not None:
                abort.raise_if_aborted("token writeback")
            await self._store.update_message(message_id, **update)
            updated.append(message_id)

        return updated

    def schedule_token_writeback(
        self,
        ordered_messages: Sequence[Message],
        token_map: TokenCountMap,
        *,
        abort: AbortSignal | None = None,
    ) -> asyncio.Task[list[str]]:
        """Run :meth:`write_token_counts` in the background and return its task."""
        return asyncio.get_running_loop().create_task(
            self.write_token_counts(list(ordered_messages), token_map, abort=abort)
        )
