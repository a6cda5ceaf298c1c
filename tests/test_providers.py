"""Tests for chat providers."""

from __future__ import annotations

import pytest

from palimpsest.abort import AbortSignal
from palimpsest.errors import RequestAbortedError
from palimpsest.models.message import ImagePart, ImageURL, Instructions, Message, TextPart
from palimpsest.providers import (
    AnthropicChatProvider,
    OpenAIChatProvider,
    provider_for_model,
)
from tests.conftest import CONVERSATION_ID, make_chain, make_message


def _image_message() -> Message:
    return Message(
        message_id="img",
        conversation_id=CONVERSATION_ID,
        content=[
            TextPart(text="Describe this."),
            ImagePart(image_url=ImageURL(url="https://example.com/cat.png")),
        ],
    )


class TestOpenAIChatProvider:
    def test_format_plain_message(self, provider):
        assert provider.format_message(make_message("m0", text="Hi")) == {
            "role": "user",
            "content": "Hi",
        }

    def test_custom_sender_goes_to_name(self, provider):
        message = make_message("m0", text="Hi").model_copy(update={"sender": "Ada Lovelace"})
        assert provider.format_message(message) == {
            "role": "user",
            "content": "Hi",
            "name": "Ada_Lovelace",
        }

    def test_system_role_has_no_name(self, provider):
        message = make_message("m0", text="Summary").model_copy(
            update={"role": "system", "sender": "Ada"}
        )
        assert provider.format_message(message) == {"role": "system", "content": "Summary"}

    def test_structured_content(self, provider):
        formatted = provider.format_message(_image_message())
        assert formatted["content"] == [
            {"type": "text", "text": "Describe this."},
            {
                "type": "image_url",
                "image_url": {"url": "https://example.com/cat.png", "detail": "auto"},
            },
        ]

    def test_images_cost_nothing(self, provider):
        text_only = _image_message().model_copy(
            update={"content": [TextPart(text="Describe this.")]}
        )
        assert provider.get_token_count_for_message(_image_message()) == (
            provider.get_token_count_for_message(text_only)
        )

    def test_format_instructions(self, provider):
        assert provider.format_item(Instructions(content="Be brief.")) == {
            "role": "system",
            "content": "Be brief.",
        }

    def test_set_options_switches_model(self, provider):
        provider.set_options(model="anthropic/claude-3-5-sonnet", temperature=0.1)
        assert provider.model == "anthropic/claude-3-5-sonnet"
        assert provider.model_info.encoding == "claude_heuristic"

    async def test_mock_completion(self, provider, monkeypatch):
        monkeypatch.setenv("PALIMPSEST_MOCK_LLM", "1")
        reply = await provider.send_completion([{"role": "user", "content": "Hello"}])
        assert reply.startswith("[Mock openai response to: Hello]")

    async def test_aborted_before_completion(self, provider, monkeypatch):
        monkeypatch.setenv("PALIMPSEST_MOCK_LLM", "1")
        abort = AbortSignal()
        abort.abort()
        with pytest.raises(RequestAbortedError) as excinfo:
            await provider.send_completion([{"role": "user", "content": "Hello"}], abort=abort)
        assert excinfo.value.stage == "completion"

    async def test_summarize_uses_llm_call(self, config, counter):
        calls = []

        async def llm(*, model, messages, max_tokens):
            calls.append(model)
            return "They said hello."

        provider = OpenAIChatProvider("gpt-4o-mini", config, token_counter=counter, llm_call=llm)
        result = await provider.summarize(make_chain([1, 1]), 100)
        assert result.content == "They said hello."
        assert calls == ["gpt-4o-mini"]


class TestAnthropicChatProvider:
    def test_image_blocks(self, config, counter):
        provider = AnthropicChatProvider("claude-3-5-sonnet", config, token_counter=counter)
        formatted = provider.format_message(_image_message())
        assert formatted == {
            "role": "user",
            "content": [
                {"type": "text", "text": "Describe this."},
                {"type": "image", "source": {"type": "url", "url": "https://example.com/cat.png"}},
            ],
        }

    def test_split_system(self):
        system, turns = AnthropicChatProvider.split_system(
            [
                {"role": "system", "content": "Summary."},
                {"role": "user", "content": "Hi"},
                {"role": "system", "content": "Be brief."},
                {"role": "user", "content": "Again"},
            ]
        )
        assert system == "Summary.\n\nBe brief."
        assert [t["content"] for t in turns] == ["Hi", "Again"]

    async def test_mock_completion(self, config, counter, monkeypatch):
        monkeypatch.setenv("PALIMPSEST_MOCK_LLM", "1")
        provider = AnthropicChatProvider("claude-3-5-sonnet", config, token_counter=counter)
        reply = await provider.send_completion(
            [{"role": "user", "content": [{"type": "text", "text": "Hello"}]}]
        )
        assert reply.startswith("[Mock anthropic response to: Hello]")


class TestProviderForModel:
    def test_anthropic(self, config):
        provider = provider_for_model("anthropic/claude-3-haiku", config)
        assert isinstance(provider, AnthropicChatProvider)

    def test_default_openai(self, config):
        assert isinstance(provider_for_model("gpt-4o", config), OpenAIChatProvider)
        assert isinstance(provider_for_model("ollama/llama3", config), OpenAIChatProvider)
