"""SQLite implementation of the key-value store."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .store import KeyValueStore


class SQLiteKeyValueStore(KeyValueStore):
    """Persist values using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS flowpilot_kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    # ------------------------------------------------------------------
    # Store API
    async def get(self, key: str) -> str | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT value FROM flowpilot_kv WHERE key = ?", key
        )
        return row["value"] if row else None

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO flowpilot_kv (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            key,
            value,
            datetime.now(timezone.utc).isoformat(),
        )

    async def delete(self, key: str) -> bool:
        removed = await asyncio.to_thread(
            self._execute, "DELETE FROM flowpilot_kv WHERE key = ?", key
        )
        return removed > 0

    async def scan(self, prefix: str = "") -> list[tuple[str, str]]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT key, value FROM flowpilot_kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
            escaped + "%",
        )
        return [(r["key"], r["value"]) for r in rows]

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)
