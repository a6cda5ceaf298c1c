"""ConversationClient: one user turn from history load to saved reply."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import structlog
from ulid import ULID

from palimpsest.abort import AbortSignal
from palimpsest.context.assembler import ContextAssembler
from palimpsest.context.threader import thread_messages
from palimpsest.errors import RequestAbortedError
from palimpsest.events.bus import EventBus
from palimpsest.models.config import PalimpsestConfig
from palimpsest.models.message import (
    ROOT_PARENT_ID,
    ContextResult,
    Instructions,
    Message,
    TokenUsage,
)
from palimpsest.providers.base import ChatProvider
from palimpsest.store.base import MessageStore


def make_id(prefix: str) -> str:
    """
    Generate a ULID-based sortable identifier.

    Args:
        prefix: Short prefix for readability (e.g. ``"msg"``, ``"convo"``).

    Returns:
        ID string in the format ``"{prefix}_{ulid}"``.
    """
    return f"{prefix}_{ULID()}"


@dataclass
class PreparedTurn:
    """Everything decided before the completion call."""

    conversation_id: str
    user_message: Message
    context: ContextResult
    writeback: asyncio.Task[list[str]] | None = None
    history: list[Message] = field(default_factory=list)


class ConversationClient:
    """
    Runs a full conversation turn on top of :class:`ContextAssembler`.

    ``send_message`` loads the conversation snapshot, creates the user
    message, assembles the bounded payload, writes token counts back in the
    background, saves the user message, asks the provider for a completion
    and saves the reply with its token count.

    Usage::

        async with SQLiteMessageStore(config.store) as store:
            provider = OpenAIChatProvider("openai/gpt-4o-mini", config)
            client = ConversationClient(store, provider, config)
            reply = await client.send_message("Hello!", user="user_1")
            follow_up = await client.send_message(
                "And then?",
                conversation_id=reply.conversation_id,
                parent_message_id=reply.message_id,
            )
    """

    def __init__(
        self,
        store: MessageStore,
        provider: ChatProvider,
        config: PalimpsestConfig | None = None,
        *,
        event_bus: EventBus | None = None,
        sender: str = "AI",
        endpoint: str | None = None,
    ) -> None:
        self._config = config or PalimpsestConfig()
        self._store = store
        self._provider = provider
        self._event_bus = event_bus or EventBus()
        self._sender = sender
        self._endpoint = endpoint or provider.name
        self._assembler = ContextAssembler(
            store, provider, self._config, event_bus=self._event_bus
        )
        self._token_usage = TokenUsage()
        self._logger = structlog.get_logger("palimpsest.client")

    @property
    def assembler(self) -> ContextAssembler:
        return self._assembler

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def token_usage(self) -> TokenUsage:
        """Prompt and completion tokens accumulated by this client."""
        return self._token_usage

    async def load_history(
        self, conversation_id: str, parent_message_id: str | None = None
    ) -> list[Message]:
        """Return the thread ending at ``parent_message_id``, oldest first."""
        messages = await self._store.get_messages(conversation_id)
        if not messages:
            return []
        return thread_messages(messages, parent_message_id)

    def create_user_message(
        self,
        text: str,
        *,
        conversation_id: str,
        parent_message_id: str,
        message_id: str | None = None,
    ) -> Message:
        return Message(
            message_id=message_id or make_id("msg"),
            parent_message_id=parent_message_id,
            conversation_id=conversation_id,
            sender="User",
            text=text,
            is_created_by_user=True,
        )

    async def prepare_turn(
        self,
        text: str,
        *,
        conversation_id: str | None = None,
        parent_message_id: str | None = None,
        instructions: Instructions | None = None,
        max_context_tokens: int | None = None,
        user_message_id: str | None = None,
        abort: AbortSignal | None = None,
    ) -> PreparedTurn:
        """
        Build the payload for a new user turn without calling the model.

        Token counts for the existing thread are written back in a background
        task (``PreparedTurn.writeback``); await it to surface store errors.
        """
        conversation_id = conversation_id or make_id("convo")
        parent_message_id = parent_message_id or ROOT_PARENT_ID

        history = await self._store.get_messages(conversation_id)
        user_message = self.create_user_message(
            text,
            conversation_id=conversation_id,
            parent_message_id=parent_message_id,
            message_id=user_message_id,
        )
        snapshot = [*history, user_message]

        context = await self._assembler.build_context(
            conversation_id,
            user_message.message_id,
            instructions,
            max_context_tokens,
            abort=abort,
            messages=snapshot,
        )

        user_tokens = context.token_count_map.get(user_message.message_id)
        if user_tokens is not None:
            user_message = user_message.model_copy(update={"token_count": user_tokens})

        thread = thread_messages(snapshot, user_message.message_id)
        writeback = self._assembler.schedule_token_writeback(
            thread, context.token_count_map, abort=abort
        )
        return PreparedTurn(
            conversation_id=conversation_id,
            user_message=user_message,
            context=context,
            writeback=writeback,
            history=thread[:-1],
        )

    async def send_message(
        self,
        text: str,
        *,
        conversation_id: str | None = None,
        parent_message_id: str | None = None,
        user: str | None = None,
        instructions: Instructions | None = None,
        max_context_tokens: int | None = None,
        user_message_id: str | None = None,
        response_message_id: str | None = None,
        abort: AbortSignal | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        """
        Send a user message and return the saved assistant reply.

        Args:
            text: The user's message.
            conversation_id: Existing conversation; a new id is generated when omitted.
            parent_message_id: Message this turn replies to; root when omitted.
            user: Owning user reference stored with messages and the conversation.
            instructions: Optional instructions injected before the user turn.
            max_context_tokens: Budget override for this turn.
            user_message_id: Pre-generated id for the user message.
            response_message_id: Pre-generated id for the reply.
            abort: Cooperative abort signal. Once fired, nothing more is saved.
            metadata: Extra conversation metadata to merge and store.

        Returns:
            The assistant reply as saved, with ``prompt_tokens`` set.

        Raises:
            BudgetExceededError: If the user turn alone does not fit.
            RequestAbortedError: If ``abort`` fired.
            StoreError: If persisting the turn or the token counts fails.
        """
        turn = await self.prepare_turn(
            text,
            conversation_id=conversation_id,
            parent_message_id=parent_message_id,
            instructions=instructions,
            max_context_tokens=max_context_tokens,
            user_message_id=user_message_id,
            abort=abort,
        )

        try:
            if abort is not None:
                abort.raise_if_aborted("saving the user message")
            await self.save_message(turn.user_message, user=user, metadata=metadata)

            completion = await self._provider.send_completion(turn.context.payload, abort=abort)
            if abort is not None:
                abort.raise_if_aborted("saving the response")

            response = Message(
                message_id=response_message_id or make_id("msg"),
                conversation_id=turn.conversation_id,
                parent_message_id=turn.user_message.message_id,
                sender=self._sender,
                text=completion,
                is_created_by_user=False,
                model=self._provider.model,
                prompt_tokens=turn.context.prompt_tokens,
            )
            response = response.model_copy(
                update={"token_count": self._provider.get_token_count_for_response(response)}
            )
            self.record_token_usage(
                prompt_tokens=turn.context.prompt_tokens,
                completion_tokens=self._provider.get_token_count(completion),
            )
            await self.save_message(response, user=user, metadata=metadata)
        except Exception as exc:
            await self._discard_writeback(turn)
            if isinstance(exc, RequestAbortedError):
                self._logger.info("turn_aborted", conversation_id=turn.conversation_id)
            else:
                self._logger.warning(
                    "turn_failed", conversation_id=turn.conversation_id, error=str(exc)
                )
            raise

        if turn.writeback is not None:
            await turn.writeback
        return response

    async def _discard_writeback(self, turn: PreparedTurn) -> None:
        """Cancel a pending token writeback and collect its outcome."""
        if turn.writeback is None:
            return
        turn.writeback.cancel()
        try:
            await turn.writeback
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            self._logger.warning(
                "token_writeback_failed", conversation_id=turn.conversation_id, error=str(exc)
            )

    async def save_message(
        self,
        message: Message,
        *,
        user: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Save ``message`` and touch its conversation row."""
        await self._store.save_message(message, user=user)
        await self._store.save_conversation(
            user,
            message.conversation_id,
            endpoint=self._endpoint,
            metadata=metadata,
        )

    def record_token_usage(self, *, prompt_tokens: int, completion_tokens: int) -> None:
        usage = TokenUsage(prompt=prompt_tokens, completion=completion_tokens)
        self._token_usage = TokenUsage(
            prompt=self._token_usage.prompt + usage.prompt,
            completion=self._token_usage.completion + usage.completion,
        )
        self._logger.debug(
            "token_usage_recorded",
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total=self._token_usage.total,
        )
