"""Persistence layer for flowpilot flows and checkpoints."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowpilotConfig, load_config
from .checkpoints import CheckpointStore
from .inmemory import InMemoryKeyValueStore
from .registry import FlowRegistry
from .sqlite import SQLiteKeyValueStore
from .store import KeyValueStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresKeyValueStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresKeyValueStore = None  # type: ignore


def get_store(
    database_url: Optional[str] = None, config: Optional[FlowpilotConfig] = None
) -> KeyValueStore:
    """Factory function to obtain a key-value store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``FLOWPILOT_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FLOWPILOT_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryKeyValueStore()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteKeyValueStore(path)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresKeyValueStore is None:
            raise RuntimeError("Postgres support not available")
        return PostgresKeyValueStore(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "CheckpointStore",
    "FlowRegistry",
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "PostgresKeyValueStore",
    "SQLiteKeyValueStore",
    "get_store",
]
