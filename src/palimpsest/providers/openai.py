"""OpenAI-style chat provider."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

from palimpsest.abort import AbortSignal
from palimpsest.models.message import Message
from palimpsest.providers.base import ChatProvider


class OpenAIChatProvider(ChatProvider):
    """
    Formats messages as OpenAI chat messages and completes via litellm.

    Assistant and user senders other than the defaults are sent in the
    ``name`` field, which the token accounting charges separately.
    Structured content is passed through as a list of content blocks.
    """

    name = "openai"

    _DEFAULT_SENDERS = frozenset({"user", "assistant", "ai", "system"})

    def format_message(self, message: Message) -> dict[str, Any]:
        role = message.effective_role
        formatted: dict[str, Any] = {"role": role}
        if message.content and role != "system":
            formatted["content"] = [part.model_dump(exclude_none=True) for part in message.content]
        else:
            formatted["content"] = message.text
        sender = (message.sender or "").strip()
        if role != "system" and sender and sender.lower() not in self._DEFAULT_SENDERS:
            formatted["name"] = _sanitize_name(sender)
        return formatted

    async def send_completion(
        self,
        payload: Sequence[dict[str, Any]],
        *,
        abort: AbortSignal | None = None,
    ) -> str:
        if abort is not None:
            abort.raise_if_aborted("completion")
        if self._mock_enabled():
            return self._mock_completion(payload)

        import litellm

        call_kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": list(payload),
            "max_tokens": self._options.get("max_tokens", self._model_info.max_output_tokens),
        }
        for key in ("temperature", "top_p", "stop", "user"):
            if key in self._options:
                call_kwargs[key] = self._options[key]

        completion = asyncio.ensure_future(litellm.acompletion(**call_kwargs))
        if abort is None:
            response = await completion
        else:
            aborted = asyncio.ensure_future(abort.wait())
            done, _ = await asyncio.wait(
                {completion, aborted}, return_when=asyncio.FIRST_COMPLETED
            )
            if completion not in done:
                completion.cancel()
                abort.raise_if_aborted("completion")
            aborted.cancel()
            response = completion.result()

        self._logger.debug("completion_received", model=self._model)
        return response.choices[0].message.content or ""


def _sanitize_name(sender: str) -> str:
    """OpenAI names allow ``[a-zA-Z0-9_-]{1,64}``."""
    cleaned = "".join(ch if ch.isalnum() or ch in "_-" else "_" for ch in sender)
    return cleaned[:64]
