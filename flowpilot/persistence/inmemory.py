"""In-memory implementation of the key-value store."""

from __future__ import annotations

from typing import Dict

from .store import KeyValueStore


class InMemoryKeyValueStore(KeyValueStore):
    """Store values in local memory.

    Useful for tests or single-process deployments. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def scan(self, prefix: str = "") -> list[tuple[str, str]]:
        return [(k, v) for k, v in self._data.items() if k.startswith(prefix)]

    async def close(self) -> None:
        pass
