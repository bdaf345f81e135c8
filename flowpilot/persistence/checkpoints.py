"""Checkpoint store keeping the latest stage output per flow."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict

from ..contracts import Checkpoint
from .store import KeyValueStore

logger = logging.getLogger(__name__)

CHECKPOINT_PREFIX = "checkpoint:"


class CheckpointStore:
    """Hold at most one checkpoint per flow, overwritten on each save."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, flow_id: str) -> asyncio.Lock:
        return self._locks.setdefault(flow_id, asyncio.Lock())

    @staticmethod
    def _key(flow_id: str) -> str:
        return f"{CHECKPOINT_PREFIX}{flow_id}"

    async def save(self, checkpoint: Checkpoint) -> None:
        async with self._lock(checkpoint.flow_id):
            await self._store.set(
                self._key(checkpoint.flow_id), checkpoint.model_dump_json()
            )
        logger.info(
            f"Checkpoint saved for flow {checkpoint.flow_id} at stage {checkpoint.stage}"
        )

    async def load(self, flow_id: str) -> Checkpoint | None:
        raw = await self._store.get(self._key(flow_id))
        if raw is None:
            return None
        return Checkpoint.model_validate_json(raw)

    async def delete(self, flow_id: str) -> bool:
        async with self._lock(flow_id):
            removed = await self._store.delete(self._key(flow_id))
        self._locks.pop(flow_id, None)
        return removed
