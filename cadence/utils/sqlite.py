"""Shared SQLite plumbing for the job and workflow state stores."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Any, Callable, TypeVar

T = TypeVar("T")

BUSY_TIMEOUT_SECONDS = 5.0


class SQLiteBackend:
    """Open a fresh connection per operation.

    Each call gets its own connection so that concurrent workers behave like
    independent processes: writers are serialized by ``BEGIN IMMEDIATE`` and
    wait up to ``BUSY_TIMEOUT_SECONDS`` for the reserved lock.
    """

    schema: tuple[str, ...] = ()

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        if self.db_path in ("", ":memory:"):
            raise ValueError("SQLite stores need a file path; use the in-memory store instead")
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in self.schema:
                conn.execute(statement)
        finally:
            conn.close()

    # ------------------------------------------------------------------
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path, timeout=BUSY_TIMEOUT_SECONDS, isolation_level=None
        )
        conn.row_factory = sqlite3.Row
        return conn

    def _transaction_sync(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                value = fn(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return value
        finally:
            conn.close()

    def _read_sync(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        conn = self._connect()
        try:
            return fn(conn)
        finally:
            conn.close()

    async def _transaction(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        return await asyncio.to_thread(self._transaction_sync, fn)

    async def _read(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        return await asyncio.to_thread(self._read_sync, fn)

    async def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        return await self._read(lambda conn: conn.execute(query, params).fetchall())

    async def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        return await self._read(lambda conn: conn.execute(query, params).fetchone())

    async def ping(self) -> None:
        await self._fetchone("SELECT 1")
