"""
Example 01: Basic Conversation
==============================

Demonstrates the simplest end-to-end usage of ConversationClient:
- Opening a SQLite store as an async context manager
- Sending messages in a loop, each reply threaded onto the previous one
- A small token budget so older turns are summarised instead of dropped
- Watching summary events on the EventBus
- Inspecting token usage

Run without an API key:
    PALIMPSEST_MOCK_LLM=1 python examples/01_basic_conversation.py

Run with a real LLM (set your API key first):
    OPENAI_API_KEY=sk-... python examples/01_basic_conversation.py
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path when running directly
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


async def main() -> None:
    from palimpsest import (
        ContextConfig,
        ConversationClient,
        EventBus,
        Instructions,
        PalimpsestConfig,
        PalimpsestEvent,
        SQLiteMessageStore,
        StoreConfig,
        SummaryConfig,
        provider_for_model,
    )

    print("=== Palimpsest Basic Conversation Example ===\n")

    # A tight budget so summaries kick in after a few turns
    config = PalimpsestConfig(
        context=ContextConfig(max_context_tokens=300),
        summary=SummaryConfig(enabled=True),
        store=StoreConfig(db_path="/tmp/palimpsest_example_01.db"),
    )

    bus = EventBus()
    bus.subscribe(
        PalimpsestEvent.SUMMARY_GENERATED,
        lambda e, p: print(f"  *** Summarised {p['refined_messages']} older messages ***"),
    )
    bus.subscribe(
        PalimpsestEvent.SUMMARY_REUSED,
        lambda e, p: print("  *** Reused the cached summary ***"),
    )

    async with SQLiteMessageStore(config.store, event_bus=bus) as store:
        provider = provider_for_model("openai/gpt-4o-mini", config)
        client = ConversationClient(store, provider, config, event_bus=bus)
        instructions = Instructions(content="You are a helpful coding assistant. Be concise.")

        questions = [
            "What is Python's GIL?",
            "How does asyncio work at a high level?",
            "What's the difference between async/await and threading?",
            "When should I use asyncio vs multiprocessing?",
            "Can you show a simple asyncio example?",
        ]

        conversation_id = None
        parent_id = None
        for i, question in enumerate(questions, 1):
            print(f"Turn {i}: {question}")
            reply = await client.send_message(
                question,
                conversation_id=conversation_id,
                parent_message_id=parent_id,
                user="example_user",
                instructions=instructions,
            )
            conversation_id, parent_id = reply.conversation_id, reply.message_id
            print(f"  Prompt tokens: {reply.prompt_tokens}")
            print(f"  Response: {reply.text[:120]}...")
            print()

        print(f"Total tokens: {client.token_usage.total:,}")

        history = await client.load_history(conversation_id, parent_id)
        print(f"Messages in thread: {len(history)}")
        summarised = [m for m in history if m.summary]
        if summarised:
            print(f"  (summary stored on {len(summarised)} message(s))")

    print("\nStore closed cleanly.")


if __name__ == "__main__":
    asyncio.run(main())
