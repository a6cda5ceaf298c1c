"""Model providers."""

from __future__ import annotations

from typing import Any

from palimpsest.models.config import ModelInfo, PalimpsestConfig
from palimpsest.providers.anthropic import AnthropicChatProvider
from palimpsest.providers.base import ChatProvider
from palimpsest.providers.openai import OpenAIChatProvider


def provider_for_model(model: str, config: PalimpsestConfig, **kwargs: Any) -> ChatProvider:
    """Pick the provider class matching a litellm-style model string."""
    info = ModelInfo.from_model_string(model)
    if info.provider_id == "anthropic":
        return AnthropicChatProvider(model, config, **kwargs)
    return OpenAIChatProvider(model, config, **kwargs)


__all__ = [
    "AnthropicChatProvider",
    "ChatProvider",
    "OpenAIChatProvider",
    "provider_for_model",
]
