"""
Connections shared between SQLiteMessageStore instances.

Request handlers usually build a fresh store per request. Passing the same
``StorePool`` to each of them keeps one connection and one write lock per
database file for the whole process::

    pool = StorePool()
    async with SQLiteMessageStore(config.store, pool=pool) as store:
        ...
    await pool.close_all()
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiosqlite
import structlog

_logger = structlog.get_logger("palimpsest.store.pool")


def _resolve(db_path: str) -> str:
    return str(Path(db_path).expanduser().resolve())


async def open_connection(
    db_path: str,
    *,
    wal_mode: bool = True,
    connection_timeout: float = 30.0,
) -> aiosqlite.Connection:
    """Open a connection with row access by column name and the store's pragmas."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)  # noqa: ASYNC240
    conn = await aiosqlite.connect(db_path, timeout=connection_timeout)
    try:
        conn.row_factory = aiosqlite.Row
        if wal_mode:
            await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.execute("PRAGMA synchronous=NORMAL")
    except Exception:
        await conn.close()
        raise
    return conn


class StorePool:
    """
    One open connection per resolved database path, plus its write lock.

    Bound to the event loop it is first used on.
    """

    def __init__(self) -> None:
        self._connections: dict[str, aiosqlite.Connection] = {}
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._open_locks: dict[str, asyncio.Lock] = {}

    async def acquire(
        self,
        db_path: str,
        *,
        wal_mode: bool = True,
        connection_timeout: float = 30.0,
    ) -> aiosqlite.Connection:
        """
        Get the connection for *db_path*, opening it on first use.

        ``wal_mode`` and ``connection_timeout`` only apply when the
        connection is opened here.
        """
        resolved = _resolve(db_path)  # noqa: ASYNC240
        conn = self._connections.get(resolved)
        if conn is not None:
            return conn

        async with self._open_locks.setdefault(resolved, asyncio.Lock()):
            conn = self._connections.get(resolved)
            if conn is None:
                conn = await open_connection(
                    resolved, wal_mode=wal_mode, connection_timeout=connection_timeout
                )
                self._connections[resolved] = conn
                self._write_locks[resolved] = asyncio.Lock()
                _logger.debug("pool_connection_opened", db_path=resolved)
            return conn

    def write_lock(self, db_path: str) -> asyncio.Lock:
        """Lock guarding writes to *db_path*. ``acquire()`` must have run first."""
        return self._write_locks[_resolve(db_path)]

    async def close_path(self, db_path: str) -> None:
        resolved = _resolve(db_path)  # noqa: ASYNC240
        self._write_locks.pop(resolved, None)
        self._open_locks.pop(resolved, None)
        conn = self._connections.pop(resolved, None)
        if conn is not None:
            await conn.close()
            _logger.debug("pool_connection_closed", db_path=resolved)

    async def close_all(self) -> None:
        for path in list(self._connections):
            await self.close_path(path)
