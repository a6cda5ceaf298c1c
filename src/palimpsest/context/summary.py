"""Decide between reusing a cached summary and generating a fresh one."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from palimpsest.errors import BudgetExceededError
from palimpsest.events.bus import EventBus, PalimpsestEvent
from palimpsest.models.config import SummaryConfig
from palimpsest.models.message import ThreadItem
from palimpsest.summarization.summarizer import Summarizer


@dataclass
class SummaryResolution:
    """The payload after summary handling, with the adjusted budget."""

    payload: list[dict[str, Any]]
    remaining_tokens: int
    used_cached_summary: bool = False
    summary_message: dict[str, Any] | None = None
    summary_token_count: int = 0

    @property
    def generated_summary(self) -> bool:
        """True when a fresh summary was produced by the summariser."""
        return self.summary_message is not None and not self.used_cached_summary


class SummaryCoordinator:
    """
    Folds a summary of the discarded prefix back into the payload.

    Decision order:
    1. Reuse the boundary message's cached summary when exactly one item was
       dropped, that item carries a summary and its id matches the tracked
       previous-summary id.
    2. Otherwise call the summariser once with the excluded prefix and the
       remaining budget. A non-zero ``min_budget_tokens`` skips the call when
       less than that is left.
    3. With summarisation disabled and nothing left in the payload, fail with
       :class:`BudgetExceededError`.

    Summariser exceptions propagate unchanged.
    """

    def __init__(self, config: SummaryConfig, event_bus: EventBus | None = None) -> None:
        self._config = config
        self._event_bus = event_bus
        self._logger = structlog.get_logger("palimpsest.summary")

    async def resolve(
        self,
        payload: Sequence[dict[str, Any]],
        context: Sequence[ThreadItem],
        messages_to_refine: Sequence[ThreadItem],
        boundary_message: ThreadItem | None,
        previous_summary_id: str | None,
        remaining_tokens: int,
        summarizer: Summarizer | None,
        *,
        latest_message: ThreadItem | None = None,
        max_context_tokens: int = 0,
    ) -> SummaryResolution:
        """
        Trim ``payload`` to the packed context and prepend a summary if needed.

        Args:
            payload: Formatted messages (with instructions), oldest first.
            context: The packed context as canonical items.
            messages_to_refine: The excluded prefix.
            boundary_message: The newest excluded item, if any.
            previous_summary_id: Id of the message holding the tracked summary.
            remaining_tokens: Budget left after packing.
            summarizer: Summariser used when the cache cannot be reused.
            latest_message: Newest item in the thread, for the overflow error.
            max_context_tokens: Configured budget, for the overflow error.

        Returns:
            SummaryResolution with the final payload and remaining budget.

        Raises:
            BudgetExceededError: If nothing fits and summarisation is disabled,
                or a summary does not fit the remaining budget.
        """
        diff = len(payload) - len(context)
        trimmed = list(payload[diff:]) if diff > 0 else list(payload)
        if diff > 0:
            self._logger.debug(
                "payload_trimmed",
                original=len(payload),
                context=len(context),
                dropped=diff,
            )

        if not self._config.enabled or summarizer is None:
            if not trimmed and latest_message is not None:
                raise BudgetExceededError(latest_message.token_count, max_context_tokens)
            return SummaryResolution(payload=trimmed, remaining_tokens=remaining_tokens)

        cached = self._cached_summary(diff, boundary_message, previous_summary_id)
        if cached is not None:
            summary_message, summary_tokens = cached
            if summary_tokens > remaining_tokens:
                self._logger.warning(
                    "cached_summary_over_budget",
                    summary_token_count=summary_tokens,
                    remaining_tokens=remaining_tokens,
                )
            self._logger.info(
                "summary_reused",
                message_id=boundary_message.message_id if boundary_message else None,
                summary_token_count=summary_tokens,
            )
            self._publish(
                PalimpsestEvent.SUMMARY_REUSED,
                {
                    "message_id": boundary_message.message_id if boundary_message else None,
                    "summary_token_count": summary_tokens,
                },
            )
            return SummaryResolution(
                payload=[summary_message, *trimmed],
                remaining_tokens=remaining_tokens - summary_tokens,
                used_cached_summary=True,
                summary_message=summary_message,
                summary_token_count=summary_tokens,
            )

        if not messages_to_refine:
            return SummaryResolution(payload=trimmed, remaining_tokens=remaining_tokens)

        if remaining_tokens < self._config.min_budget_tokens:
            self._logger.warning(
                "summary_skipped_no_budget",
                remaining_tokens=remaining_tokens,
                min_budget_tokens=self._config.min_budget_tokens,
            )
            return SummaryResolution(payload=trimmed, remaining_tokens=remaining_tokens)

        result = await summarizer.summarize(list(messages_to_refine), remaining_tokens)
        if result.summary_token_count > remaining_tokens:
            raise BudgetExceededError(
                result.summary_token_count, remaining_tokens, what="Summary"
            )

        self._logger.info(
            "summary_generated",
            refined_messages=len(messages_to_refine),
            summary_token_count=result.summary_token_count,
            remaining_tokens=remaining_tokens,
        )
        self._publish(
            PalimpsestEvent.SUMMARY_GENERATED,
            {
                "message_id": boundary_message.message_id if boundary_message else None,
                "refined_messages": len(messages_to_refine),
                "summary_token_count": result.summary_token_count,
            },
        )
        return SummaryResolution(
            payload=[result.summary_message, *trimmed],
            remaining_tokens=remaining_tokens - result.summary_token_count,
            summary_message=result.summary_message,
            summary_token_count=result.summary_token_count,
        )

    def _cached_summary(
        self,
        diff: int,
        boundary_message: ThreadItem | None,
        previous_summary_id: str | None,
    ) -> tuple[dict[str, Any], int] | None:
        if diff != 1 or boundary_message is None:
            return None
        summary = getattr(boundary_message, "summary", None)
        if not summary or boundary_message.message_id != previous_summary_id:
            return None
        summary_tokens = getattr(boundary_message, "summary_token_count", None) or 0
        return {"role": "system", "content": summary}, summary_tokens

    def _publish(self, event: PalimpsestEvent, payload: dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event, payload)
