"""SQLite-backed message and conversation store."""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import Any

import aiosqlite
import structlog
from pydantic import TypeAdapter

from palimpsest.errors import (
    ConversationNotFoundError,
    ImmutableFieldError,
    MessageNotFoundError,
    StoreError,
)
from palimpsest.events.bus import EventBus, PalimpsestEvent
from palimpsest.models.config import StoreConfig
from palimpsest.models.message import ContentPart, Conversation, Message
from palimpsest.store.pool import StorePool, open_connection

_CONTENT_ADAPTER: TypeAdapter[list[ContentPart]] = TypeAdapter(list[ContentPart])

_IMMUTABLE_FIELDS = frozenset({"message_id", "conversation_id", "parent_message_id"})
_UPDATABLE_FIELDS = frozenset(
    {
        "text",
        "content",
        "token_count",
        "summary",
        "summary_token_count",
        "prompt_tokens",
        "model",
        "unfinished",
        "cancelled",
    }
)


class SQLiteMessageStore:
    """
    Message tree and conversation metadata in SQLite.

    ``save_message`` and ``save_conversation`` are upserts keyed by id, so a
    message saved twice (for instance an edited reply) is overwritten rather
    than duplicated. ``update_message`` changes only the named fields and
    refuses to move a message to another conversation or parent.

    When a ``StorePool`` is supplied the store borrows a shared connection and
    the pool's per-path write lock; ``close()`` then leaves the connection open
    for the pool to close.

    Usage::

        store = SQLiteMessageStore(StoreConfig(db_path="/tmp/chat.db"))
        await store.initialize()
        try:
            await store.save_message(message)
            thread = await store.get_messages(message.conversation_id)
        finally:
            await store.close()
    """

    def __init__(
        self,
        config: StoreConfig,
        pool: StorePool | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config
        self._db_path = str(Path(config.db_path).expanduser())
        self._pool = pool
        self._event_bus = event_bus
        self._conn: aiosqlite.Connection | None = None
        self._private_lock = asyncio.Lock()
        self._logger = structlog.get_logger("palimpsest.store")

    async def initialize(self) -> None:
        """
        Open (or borrow) a database connection and apply the schema.

        Raises:
            aiosqlite.Error: If the database cannot be opened or the schema fails.
        """
        if self._pool is not None:
            conn = await self._pool.acquire(
                self._db_path,
                wal_mode=self._config.wal_mode,
                connection_timeout=self._config.connection_timeout,
            )
        else:
            conn = await open_connection(
                self._db_path,
                wal_mode=self._config.wal_mode,
                connection_timeout=self._config.connection_timeout,
            )

        schema = (Path(__file__).parent / "schema.sql").read_text()
        await conn.executescript(schema)
        await conn.commit()

        self._conn = conn
        self._logger.info("store_initialized", db_path=self._db_path)

    async def close(self) -> None:
        """Release the connection. No-op for pool-managed connections."""
        if self._conn is None:
            return
        if self._pool is None:
            await self._conn.close()
        self._conn = None

    async def __aenter__(self) -> SQLiteMessageStore:
        await self.initialize()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreError("Store is not initialized. Call initialize() first.")
        return self._conn

    def _write_lock(self) -> asyncio.Lock:
        if self._pool is not None:
            return self._pool.write_lock(self._db_path)
        return self._private_lock

    # ── Messages ───────────────────────────────────────────────────────────────

    async def get_messages(self, conversation_id: str) -> list[Message]:
        """Return every message of a conversation. Order is not significant."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY created_at",
            (conversation_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    async def get_message(self, message_id: str) -> Message:
        """
        Fetch a single message.

        Raises:
            MessageNotFoundError: If no message with this id exists.
        """
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM messages WHERE message_id = ?", (message_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise MessageNotFoundError(message_id)
        return self._row_to_message(row)

    async def save_message(self, message: Message, *, user: str | None = None) -> Message:
        """
        Insert or replace a message.

        The stored row is marked finished and not cancelled.

        Args:
            message: The message to persist.
            user: Owning user reference.

        Returns:
            The message as given.
        """
        conn = self._conn_or_raise()
        now = int(time.time() * 1000)
        content_json = (
            json.dumps(_CONTENT_ADAPTER.dump_python(message.content, exclude_none=True))
            if message.content is not None
            else None
        )
        async with self._write_lock():
            await conn.execute(
                """
                INSERT INTO messages (
                    message_id, conversation_id, parent_message_id, user, sender, role,
                    text, content, is_created_by_user, model, token_count, summary,
                    summary_token_count, prompt_tokens, unfinished, cancelled,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 0, ?, ?)
                ON CONFLICT(message_id) DO UPDATE SET
                    conversation_id = excluded.conversation_id,
                    parent_message_id = excluded.parent_message_id,
                    user = excluded.user,
                    sender = excluded.sender,
                    role = excluded.role,
                    text = excluded.text,
                    content = excluded.content,
                    is_created_by_user = excluded.is_created_by_user,
                    model = excluded.model,
                    token_count = COALESCE(excluded.token_count, messages.token_count),
                    summary = COALESCE(excluded.summary, messages.summary),
                    summary_token_count = COALESCE(
                        excluded.summary_token_count, messages.summary_token_count
                    ),
                    prompt_tokens = excluded.prompt_tokens,
                    unfinished = 0,
                    cancelled = 0,
                    updated_at = excluded.updated_at
                """,
                (
                    message.message_id,
                    message.conversation_id,
                    message.parent_message_id,
                    user,
                    message.sender,
                    message.role,
                    message.text,
                    content_json,
                    int(message.is_created_by_user),
                    message.model,
                    message.token_count,
                    message.summary,
                    message.summary_token_count,
                    message.prompt_tokens,
                    message.created_at,
                    now,
                ),
            )
            await conn.commit()

        self._publish(
            PalimpsestEvent.MESSAGE_SAVED,
            {
                "message_id": message.message_id,
                "conversation_id": message.conversation_id,
                "is_created_by_user": message.is_created_by_user,
            },
        )
        return message

    async def update_message(self, message_id: str, **fields: Any) -> None:
        """
        Update selected fields of a stored message.

        Args:
            message_id: The message to update.
            **fields: Column values, e.g. ``token_count=12`` or
                ``summary="..."``, ``summary_token_count=40``.

        Raises:
            ImmutableFieldError: If a field fixing the message's position is given.
            ValueError: If a field is not a known message column.
            MessageNotFoundError: If the message does not exist.
        """
        if not fields:
            return
        immutable = _IMMUTABLE_FIELDS.intersection(fields)
        if immutable:
            raise ImmutableFieldError(f"Cannot update immutable fields: {sorted(immutable)}")
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown message fields: {sorted(unknown)}")

        values = dict(fields)
        if "content" in values and values["content"] is not None:
            values["content"] = json.dumps(
                _CONTENT_ADAPTER.dump_python(values["content"], exclude_none=True)
            )
        for flag in ("unfinished", "cancelled"):
            if flag in values:
                values[flag] = int(bool(values[flag]))

        columns = sorted(values)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        params = [values[column] for column in columns]
        params.extend([int(time.time() * 1000), message_id])

        conn = self._conn_or_raise()
        async with self._write_lock():
            cursor = await conn.execute(
                f"UPDATE messages SET {assignments}, updated_at = ? WHERE message_id = ?",
                params,
            )
            await conn.commit()
        if cursor.rowcount == 0:
            raise MessageNotFoundError(message_id)

        self._logger.debug("message_updated", message_id=message_id, fields=columns)
        self._publish(
            PalimpsestEvent.MESSAGE_UPDATED, {"message_id": message_id, "fields": dict(fields)}
        )

    # ── Conversations ──────────────────────────────────────────────────────────

    async def save_conversation(
        self,
        user: str | None,
        conversation_id: str,
        *,
        endpoint: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Conversation:
        """
        Insert or update a conversation row.

        Metadata given here is merged over the stored metadata.
        """
        conn = self._conn_or_raise()
        now = int(time.time() * 1000)
        async with self._write_lock():
            async with conn.execute(
                "SELECT * FROM conversations WHERE conversation_id = ?", (conversation_id,)
            ) as cursor:
                row = await cursor.fetchone()

            if row is None:
                conversation = Conversation(
                    conversation_id=conversation_id,
                    user=user,
                    endpoint=endpoint,
                    metadata=metadata or {},
                    created_at=now,
                    updated_at=now,
                )
            else:
                existing = self._row_to_conversation(row)
                conversation = existing.model_copy(
                    update={
                        "user": user if user is not None else existing.user,
                        "endpoint": endpoint if endpoint is not None else existing.endpoint,
                        "metadata": {**existing.metadata, **(metadata or {})},
                        "updated_at": now,
                    }
                )

            await conn.execute(
                """
                INSERT INTO conversations
                    (conversation_id, user, endpoint, title, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(conversation_id) DO UPDATE SET
                    user = excluded.user,
                    endpoint = excluded.endpoint,
                    metadata = excluded.metadata,
                    updated_at = excluded.updated_at
                """,
                (
                    conversation.conversation_id,
                    conversation.user,
                    conversation.endpoint,
                    conversation.title,
                    json.dumps(conversation.metadata),
                    conversation.created_at,
                    conversation.updated_at,
                ),
            )
            await conn.commit()

        self._publish(
            PalimpsestEvent.CONVERSATION_SAVED,
            {"conversation_id": conversation_id, "user": conversation.user},
        )
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation:
        """
        Fetch a conversation row.

        Raises:
            ConversationNotFoundError: If no conversation with this id exists.
        """
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM conversations WHERE conversation_id = ?", (conversation_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise ConversationNotFoundError(conversation_id)
        return self._row_to_conversation(row)

    # ── Row mapping ────────────────────────────────────────────────────────────

    @staticmethod
    def _row_to_message(row: aiosqlite.Row) -> Message:
        content = _CONTENT_ADAPTER.validate_json(row["content"]) if row["content"] else None
        return Message(
            message_id=row["message_id"],
            conversation_id=row["conversation_id"],
            parent_message_id=row["parent_message_id"],
            sender=row["sender"],
            role=row["role"],
            text=row["text"],
            content=content,
            is_created_by_user=bool(row["is_created_by_user"]),
            model=row["model"],
            token_count=row["token_count"],
            summary=row["summary"],
            summary_token_count=row["summary_token_count"],
            prompt_tokens=row["prompt_tokens"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_conversation(row: aiosqlite.Row) -> Conversation:
        return Conversation(
            conversation_id=row["conversation_id"],
            user=row["user"],
            endpoint=row["endpoint"],
            title=row["title"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _publish(self, event: PalimpsestEvent, payload: dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event, payload)
