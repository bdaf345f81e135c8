"""Key-value store abstraction backing flow and checkpoint persistence."""

from __future__ import annotations

from typing import Protocol


class KeyValueStore(Protocol):
    """Protocol for string key-value persistence backends.

    Values are JSON documents serialized to text by the caller.
    """

    async def get(self, key: str) -> str | None:
        """Return the value stored under ``key``."""

    async def set(self, key: str, value: str) -> None:
        """Create or overwrite ``key``."""

    async def delete(self, key: str) -> bool:
        """Remove ``key``. Return ``True`` if it existed."""

    async def scan(self, prefix: str = "") -> list[tuple[str, str]]:
        """Return all ``(key, value)`` pairs whose key starts with ``prefix``."""

    async def close(self) -> None:
        """Release backend resources."""
