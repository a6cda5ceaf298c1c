"""Shared fixtures for Palimpsest tests."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import pytest
import pytest_asyncio

from palimpsest.events.bus import EventBus, PalimpsestEvent
from palimpsest.models.config import PalimpsestConfig, StoreConfig, SummaryConfig
from palimpsest.models.message import ROOT_PARENT_ID, Message
from palimpsest.providers.openai import OpenAIChatProvider
from palimpsest.store.pool import StorePool
from palimpsest.store.sqlite import SQLiteMessageStore
from palimpsest.summarization.summarizer import SummaryResult
from palimpsest.tokens.counter import TokenCounter

CONVERSATION_ID = "convo_TEST01"


@pytest.fixture
def config(tmp_path):
    """PalimpsestConfig with a temp database path and summaries disabled."""
    return PalimpsestConfig(store=StoreConfig(db_path=str(tmp_path / "test.db")))


@pytest.fixture
def summary_config(tmp_path):
    """PalimpsestConfig with a temp database path and summaries enabled."""
    return PalimpsestConfig(
        store=StoreConfig(db_path=str(tmp_path / "test.db")),
        summary=SummaryConfig(enabled=True),
    )


@pytest_asyncio.fixture
async def pool():
    """StorePool for the test database. Closed after each test."""
    p = StorePool()
    yield p
    await p.close_all()


@pytest_asyncio.fixture
async def store(config, pool, event_bus):
    """Initialized SQLiteMessageStore backed by a temp database (pool-managed)."""
    s = SQLiteMessageStore(config.store, pool=pool, event_bus=event_bus)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def counter():
    """TokenCounter using the heuristic only (no tiktoken download in tests)."""
    c = TokenCounter()
    c._force_heuristic = True
    return c


@pytest.fixture
def provider(config, counter):
    return OpenAIChatProvider("gpt-4o-mini", config, token_counter=counter)


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[PalimpsestEvent, dict[str, Any]]] = []

    def _collect(event: PalimpsestEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


class RecordingSummarizer:
    """Summarizer double that records its calls and returns a fixed summary."""

    def __init__(self, text: str = "Summary of earlier turns.", token_count: int = 6) -> None:
        self.text = text
        self.token_count = token_count
        self.calls: list[tuple[list[Any], int]] = []

    async def summarize(
        self, messages_to_refine: Sequence[Any], remaining_tokens: int
    ) -> SummaryResult:
        self.calls.append((list(messages_to_refine), remaining_tokens))
        return SummaryResult(
            summary_message={"role": "system", "content": self.text},
            summary_token_count=self.token_count,
        )


def make_message(
    msg_id: str,
    parent_id: str | None = ROOT_PARENT_ID,
    *,
    text: str | None = None,
    token_count: int | None = None,
    is_created_by_user: bool = True,
    summary: str | None = None,
    summary_token_count: int | None = None,
    conversation_id: str = CONVERSATION_ID,
) -> Message:
    """Helper to create a test Message."""
    return Message(
        message_id=msg_id,
        parent_message_id=parent_id,
        conversation_id=conversation_id,
        sender="User" if is_created_by_user else "AI",
        text=text if text is not None else f"message {msg_id}",
        is_created_by_user=is_created_by_user,
        token_count=token_count,
        summary=summary,
        summary_token_count=summary_token_count,
    )


def make_chain(token_counts: Sequence[int | None], prefix: str = "m") -> list[Message]:
    """Create a linear thread ``m0 → m1 → ...`` with alternating senders."""
    messages: list[Message] = []
    parent: str | None = ROOT_PARENT_ID
    for index, tokens in enumerate(token_counts):
        msg_id = f"{prefix}{index}"
        messages.append(
            make_message(
                msg_id,
                parent,
                token_count=tokens,
                is_created_by_user=index % 2 == 0,
            )
        )
        parent = msg_id
    return messages
