"""PostgreSQL implementation of the key-value store."""

from __future__ import annotations

from datetime import datetime, timezone

import asyncpg

from .store import KeyValueStore


class PostgresKeyValueStore(KeyValueStore):
    """Persist values using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flowpilot_kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def get(self, key: str) -> str | None:
        conn = await self._connect()
        try:
            return await conn.fetchval(
                "SELECT value FROM flowpilot_kv WHERE key = $1", key
            )
        finally:
            await conn.close()

    async def set(self, key: str, value: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO flowpilot_kv (key, value, updated_at) VALUES ($1, $2, $3)
                ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = EXCLUDED.updated_at
                """,
                key,
                value,
                datetime.now(timezone.utc),
            )
        finally:
            await conn.close()

    async def delete(self, key: str) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute("DELETE FROM flowpilot_kv WHERE key = $1", key)
        finally:
            await conn.close()
        # asyncpg returns the command tag, e.g. "DELETE 1"
        return status.split()[-1] != "0"

    async def scan(self, prefix: str = "") -> list[tuple[str, str]]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT key, value FROM flowpilot_kv WHERE starts_with(key, $1) ORDER BY key",
                prefix,
            )
        finally:
            await conn.close()
        return [(r["key"], r["value"]) for r in rows]

    async def close(self) -> None:
        pass
