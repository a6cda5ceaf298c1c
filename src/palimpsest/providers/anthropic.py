"""Anthropic-style chat provider."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from palimpsest.abort import AbortSignal
from palimpsest.models.message import Message
from palimpsest.providers.base import ChatProvider


class AnthropicChatProvider(ChatProvider):
    """
    Formats messages as Anthropic content blocks and completes via litellm.

    The Messages API accepts only ``user`` and ``assistant`` turns, so system
    items (instructions, summaries) are lifted into the top-level ``system``
    parameter when the request is sent. Image parts are converted to
    ``image`` blocks with a URL source.
    """

    name = "anthropic"

    def format_message(self, message: Message) -> dict[str, Any]:
        role = message.effective_role
        if role == "system" or not message.content:
            return {"role": role, "content": message.text}
        blocks: list[dict[str, Any]] = []
        for part in message.content:
            if part.type == "text":
                blocks.append({"type": "text", "text": part.text})
            else:
                blocks.append(
                    {"type": "image", "source": {"type": "url", "url": part.image_url.url}}
                )
        return {"role": role, "content": blocks}

    @staticmethod
    def split_system(
        payload: Sequence[dict[str, Any]],
    ) -> tuple[str, list[dict[str, Any]]]:
        """Separate system items from conversation turns."""
        system_parts: list[str] = []
        turns: list[dict[str, Any]] = []
        for item in payload:
            if item.get("role") == "system":
                system_parts.append(str(item.get("content", "")))
            else:
                turns.append(item)
        return "\n\n".join(part for part in system_parts if part), turns

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

        system, turns = self.split_system(payload)
        messages = [{"role": "system", "content": system}, *turns] if system else turns
        response = await litellm.acompletion(
            model=self._model,
            messages=messages,
            max_tokens=self._options.get("max_tokens", self._model_info.max_output_tokens),
            temperature=self._options.get("temperature", 1.0),
        )
        if abort is not None:
            abort.raise_if_aborted("response handling")
        self._logger.debug("completion_received", model=self._model)
        return response.choices[0].message.content or ""
