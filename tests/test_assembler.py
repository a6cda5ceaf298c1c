"""Tests for ContextAssembler: end-to-end assembly over the SQLite store."""

from __future__ import annotations

import pytest

from palimpsest.abort import AbortSignal
from palimpsest.context.assembler import ContextAssembler
from palimpsest.context.threader import thread_messages
from palimpsest.errors import BudgetExceededError, RequestAbortedError
from palimpsest.events.bus import PalimpsestEvent
from palimpsest.models.message import Instructions, PreviousSummary
from tests.conftest import CONVERSATION_ID, RecordingSummarizer, make_chain, make_message


async def _save_all(store, messages):
    for message in messages:
        await store.save_message(message)


class TestBuildContext:
    async def test_everything_fits(self, store, provider, config):
        await _save_all(store, make_chain([5, 6, 7]))
        assembler = ContextAssembler(store, provider, config)

        result = await assembler.build_context(CONVERSATION_ID, "m2", max_context_tokens=100)

        assert result.payload == [
            {"role": "user", "content": "message m0"},
            {"role": "assistant", "content": "message m1"},
            {"role": "user", "content": "message m2"},
        ]
        assert result.prompt_tokens == 3 + 18
        assert result.token_count_map.counts == {"m0": 5, "m1": 6, "m2": 7}
        assert result.used_cached_summary is False

    async def test_follows_leaf_branch(self, store, provider, config):
        await _save_all(
            store,
            [
                make_message("a", token_count=3),
                make_message("b1", "a", token_count=3, is_created_by_user=False),
                make_message("b2", "a", token_count=3, is_created_by_user=False),
            ],
        )
        assembler = ContextAssembler(store, provider, config)
        result = await assembler.build_context(CONVERSATION_ID, "b2", max_context_tokens=100)
        assert [m["content"] for m in result.payload] == ["message a", "message b2"]

    async def test_missing_counts_are_computed(self, store, provider, config):
        await _save_all(store, make_chain([None, None]))
        assembler = ContextAssembler(store, provider, config)

        result = await assembler.build_context(CONVERSATION_ID, "m1", max_context_tokens=100)

        # 3 framing + "user" (1) + "message m0" (2); assistant role costs 2
        assert result.token_count_map.counts == {"m0": 6, "m1": 7}
        assert result.prompt_tokens == 3 + 13

    async def test_cached_counts_are_kept(self, store, provider, config):
        await _save_all(store, make_chain([99, None]))
        assembler = ContextAssembler(store, provider, config)
        result = await assembler.build_context(CONVERSATION_ID, "m1", max_context_tokens=1000)
        assert result.token_count_map["m0"] == 99

    async def test_instructions_before_latest_turn(self, store, provider, config):
        await _save_all(store, make_chain([5, 6, 7]))
        assembler = ContextAssembler(store, provider, config)

        result = await assembler.build_context(
            CONVERSATION_ID, "m2", Instructions(content="Be brief."), 100
        )

        assert result.payload[-2] == {"role": "system", "content": "Be brief."}
        assert result.payload[-1]["content"] == "message m2"
        assert isinstance(result.ordered_messages[-2], Instructions)
        assert result.ordered_messages[-2].token_count == 6
        assert len(result.token_count_map) == 3
        assert result.prompt_tokens == 3 + 18 + 6

    async def test_empty_instructions_ignored(self, store, provider, config):
        await _save_all(store, make_chain([5, 6]))
        assembler = ContextAssembler(store, provider, config)
        result = await assembler.build_context(
            CONVERSATION_ID, "m1", Instructions(content=""), 100
        )
        assert len(result.payload) == 2

    async def test_oldest_messages_dropped(self, store, provider, config):
        await _save_all(store, make_chain([20, 15, 10, 8, 5]))
        assembler = ContextAssembler(store, provider, config)

        result = await assembler.build_context(CONVERSATION_ID, "m4", max_context_tokens=40)

        assert [m["content"] for m in result.payload] == [
            "message m2",
            "message m3",
            "message m4",
        ]
        assert result.prompt_tokens == 26
        # Every threaded message is still accounted for
        assert set(result.token_count_map.counts) == {"m0", "m1", "m2", "m3", "m4"}

    async def test_idempotent(self, store, provider, config):
        await _save_all(store, make_chain([20, None, 10, None, 5]))
        assembler = ContextAssembler(store, provider, config)

        first = await assembler.build_context(CONVERSATION_ID, "m4", max_context_tokens=40)
        second = await assembler.build_context(CONVERSATION_ID, "m4", max_context_tokens=40)

        assert first.payload == second.payload
        assert first.token_count_map == second.token_count_map
        assert first.prompt_tokens == second.prompt_tokens

    async def test_default_budget_from_config(self, store, provider, config):
        await _save_all(store, make_chain([5000, 6]))
        assembler = ContextAssembler(store, provider, config)
        result = await assembler.build_context(CONVERSATION_ID, "m1")
        assert len(result.payload) == 1

    async def test_single_message_over_budget_raises(self, store, provider, config):
        await _save_all(store, make_chain([5, 5000]))
        assembler = ContextAssembler(store, provider, config)
        with pytest.raises(BudgetExceededError) as excinfo:
            await assembler.build_context(CONVERSATION_ID, "m1", max_context_tokens=100)
        assert excinfo.value.token_count == 5000
        assert excinfo.value.max_context_tokens == 100

    async def test_preloaded_snapshot(self, store, provider, config):
        """A snapshot passed in is used instead of the store."""
        assembler = ContextAssembler(store, provider, config)
        result = await assembler.build_context(
            CONVERSATION_ID, "m1", max_context_tokens=100, messages=make_chain([4, 4])
        )
        assert len(result.payload) == 2

    async def test_context_built_event(self, store, provider, config, event_bus):
        await _save_all(store, make_chain([5, 6]))
        assembler = ContextAssembler(store, provider, config, event_bus=event_bus)
        await assembler.build_context(CONVERSATION_ID, "m1", max_context_tokens=100)

        built = [p for e, p in event_bus.collected if e == PalimpsestEvent.CONTEXT_BUILT]
        assert built == [
            {
                "conversation_id": CONVERSATION_ID,
                "message_count": 2,
                "prompt_tokens": 14,
                "used_cached_summary": False,
            }
        ]

    async def test_abort_before_start(self, store, provider, config):
        await _save_all(store, make_chain([5, 6]))
        assembler = ContextAssembler(store, provider, config)
        abort = AbortSignal()
        abort.abort("client disconnected")
        with pytest.raises(RequestAbortedError) as excinfo:
            await assembler.build_context(
                CONVERSATION_ID, "m1", max_context_tokens=100, abort=abort
            )
        assert excinfo.value.stage == "threading"


class TestSummaries:
    async def test_generates_and_writes_back_summary(self, store, provider, summary_config):
        await _save_all(store, make_chain([20, 15, 10, 8, 5]))
        summarizer = RecordingSummarizer(token_count=6)
        assembler = ContextAssembler(store, provider, summary_config, summarizer=summarizer)

        result = await assembler.build_context(CONVERSATION_ID, "m4", max_context_tokens=40)

        assert len(summarizer.calls) == 1
        assert result.payload[0] == {"role": "system", "content": "Summary of earlier turns."}
        assert result.prompt_tokens == 26 + 6
        entry = result.token_count_map.summary_message
        assert entry is not None
        assert entry.message_id == "m1"

        thread = thread_messages(await store.get_messages(CONVERSATION_ID), "m4")
        updated = await assembler.write_token_counts(thread, result.token_count_map)
        assert updated == ["m1"]

        stored = await store.get_message("m1")
        assert stored.summary == "Summary of earlier turns."
        assert stored.summary_token_count == 6
        assert stored.token_count == 15

    async def test_next_turn_starts_at_summary(self, store, provider, summary_config):
        """Once a summary is stored, the thread is cut at it and no new summary is made."""
        await _save_all(store, make_chain([20, 15, 10, 8, 5]))
        summarizer = RecordingSummarizer(token_count=6)
        assembler = ContextAssembler(store, provider, summary_config, summarizer=summarizer)

        first = await assembler.build_context(CONVERSATION_ID, "m4", max_context_tokens=40)
        thread = thread_messages(await store.get_messages(CONVERSATION_ID), "m4")
        await assembler.write_token_counts(thread, first.token_count_map)

        await store.save_message(make_message("m5", "m4", token_count=5, is_created_by_user=False))
        second = await assembler.build_context(CONVERSATION_ID, "m5", max_context_tokens=40)

        assert len(summarizer.calls) == 1
        assert assembler.previous_summaries[CONVERSATION_ID].message_id == "m1"
        assert second.payload[0] == {"role": "system", "content": "Summary of earlier turns."}
        assert [m["content"] for m in second.payload[1:]] == [
            "message m2",
            "message m3",
            "message m4",
            "message m5",
        ]
        assert second.prompt_tokens == 3 + 6 + 10 + 8 + 5 + 5

    async def test_dropped_summary_root_is_reused(self, store, provider, summary_config):
        await _save_all(
            store,
            [
                make_message("s", token_count=30, summary="They agreed.", summary_token_count=2),
                make_message("a", "s", token_count=10, is_created_by_user=False),
                make_message("b", "a", token_count=14),
            ],
        )
        summarizer = RecordingSummarizer()
        assembler = ContextAssembler(store, provider, summary_config, summarizer=summarizer)

        # Root costs 2, the rest 24: 3 + 24 + 2 = 29 does not fit in 28
        result = await assembler.build_context(CONVERSATION_ID, "b", max_context_tokens=28)

        assert summarizer.calls == []
        assert result.used_cached_summary is True
        assert result.payload[0] == {"role": "system", "content": "They agreed."}
        assert result.token_count_map.summary_message is None

    async def test_previous_summary_dropped_when_absent(self, store, provider, summary_config):
        await _save_all(store, make_chain([5, 6]))
        assembler = ContextAssembler(
            store, provider, summary_config, summarizer=RecordingSummarizer()
        )
        assembler.previous_summaries[CONVERSATION_ID] = PreviousSummary(
            message_id="gone", content="Stale summary."
        )
        await assembler.build_context(CONVERSATION_ID, "m1", max_context_tokens=100)
        assert CONVERSATION_ID not in assembler.previous_summaries

    async def test_nothing_fits_with_summaries_enabled(self, store, provider, summary_config):
        await _save_all(store, make_chain([5, 500]))
        summarizer = RecordingSummarizer(token_count=4)
        assembler = ContextAssembler(store, provider, summary_config, summarizer=summarizer)
        result = await assembler.build_context(CONVERSATION_ID, "m1", max_context_tokens=100)
        assert result.payload == [{"role": "system", "content": "Summary of earlier turns."}]


class TestTokenWriteback:
    async def test_writes_new_counts_only(self, store, provider, config):
        await _save_all(store, make_chain([None, 6, None, None]))
        assembler = ContextAssembler(store, provider, config)
        result = await assembler.build_context(CONVERSATION_ID, "m3", max_context_tokens=100)

        thread = thread_messages(await store.get_messages(CONVERSATION_ID), "m3")
        updated = await assembler.write_token_counts(thread, result.token_count_map)

        assert updated == ["m0", "m2"]
        assert (await store.get_message("m0")).token_count == 6
        assert (await store.get_message("m1")).token_count == 6
        assert (await store.get_message("m3")).token_count is None

    async def test_second_writeback_is_noop(self, store, provider, config):
        await _save_all(store, make_chain([None, None, None]))
        assembler = ContextAssembler(store, provider, config)
        result = await assembler.build_context(CONVERSATION_ID, "m2", max_context_tokens=100)
        thread = thread_messages(await store.get_messages(CONVERSATION_ID), "m2")
        await assembler.write_token_counts(thread, result.token_count_map)

        thread = thread_messages(await store.get_messages(CONVERSATION_ID), "m2")
        assert await assembler.write_token_counts(thread, result.token_count_map) == []

    async def test_each_id_updated_once(self, store, provider, config, event_bus):
        await _save_all(store, make_chain([None, None]))
        assembler = ContextAssembler(store, provider, config)
        result = await assembler.build_context(CONVERSATION_ID, "m1", max_context_tokens=100)
        m0, m1 = thread_messages(await store.get_messages(CONVERSATION_ID), "m1")

        event_bus.collected.clear()
        updated = await assembler.write_token_counts([m0, m0, m1], result.token_count_map)

        assert updated == ["m0"]
        updates = [p for e, p in event_bus.collected if e == PalimpsestEvent.MESSAGE_UPDATED]
        assert len(updates) == 1

    async def test_background_task(self, store, provider, config):
        await _save_all(store, make_chain([None, None]))
        assembler = ContextAssembler(store, provider, config)
        result = await assembler.build_context(CONVERSATION_ID, "m1", max_context_tokens=100)
        thread = thread_messages(await store.get_messages(CONVERSATION_ID), "m1")

        task = assembler.schedule_token_writeback(thread, result.token_count_map)
        assert await task == ["m0"]

    async def test_abort_stops_writeback(self, store, provider, config):
        await _save_all(store, make_chain([None, None]))
        assembler = ContextAssembler(store, provider, config)
        result = await assembler.build_context(CONVERSATION_ID, "m1", max_context_tokens=100)
        thread = thread_messages(await store.get_messages(CONVERSATION_ID), "m1")

        abort = AbortSignal()
        abort.abort()
        with pytest.raises(RequestAbortedError):
            await assembler.write_token_counts(thread, result.token_count_map, abort=abort)
        assert (await store.get_message("m0")).token_count is None
