"""Flow registry: the single source of truth for flow records."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from ..contracts import FlowConfiguration, FlowMetadata, FlowProgress, FlowRecord
from .store import KeyValueStore

logger = logging.getLogger(__name__)

FLOW_PREFIX = "flow:"


class FlowRegistry:
    """Create, read and atomically mutate flow records.

    Records are serialized into the backing store on every write, so callers
    always receive copies. Mutations of the same flow are serialized with a
    per-flow lock; different flows never block each other.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, flow_id: str) -> asyncio.Lock:
        lock = self._locks.get(flow_id)
        if lock is None:
            lock = self._locks[flow_id] = asyncio.Lock()
        return lock

    @staticmethod
    def _key(flow_id: str) -> str:
        return f"{FLOW_PREFIX}{flow_id}"

    async def _write(self, record: FlowRecord) -> None:
        await self._store.set(self._key(record.flow_id), record.model_dump_json())

    async def create(
        self,
        config: FlowConfiguration,
        priority: float = 0,
        dependencies: Optional[List[str]] = None,
    ) -> FlowRecord:
        record = FlowRecord(
            progress=FlowProgress(items_total=len(config.game_data_ids)),
            metadata=FlowMetadata(
                configuration=config,
                priority=priority,
                dependencies=list(dependencies or []),
            ),
        )
        async with self._lock(record.flow_id):
            await self._write(record)
        logger.debug(f"Created flow record {record.flow_id}")
        return record

    async def get(self, flow_id: str) -> FlowRecord | None:
        raw = await self._store.get(self._key(flow_id))
        if raw is None:
            return None
        return FlowRecord.model_validate_json(raw)

    async def list_all(self) -> list[FlowRecord]:
        rows = await self._store.scan(FLOW_PREFIX)
        records = [FlowRecord.model_validate_json(value) for _, value in rows]
        records.sort(key=lambda r: r.timing.start_time)
        return records

    async def mutate(
        self, flow_id: str, fn: Callable[[FlowRecord], object]
    ) -> FlowRecord | None:
        """Apply ``fn`` to the stored record and persist the result.

        ``fn`` edits the record in place. Returning ``False`` from ``fn``
        discards the change. Returns the stored record, or ``None`` if the
        flow does not exist.
        """
        async with self._lock(flow_id):
            record = await self.get(flow_id)
            if record is None:
                return None
            if fn(record) is False:
                return record
            await self._write(record)
            return record

    async def delete(self, flow_id: str) -> bool:
        async with self._lock(flow_id):
            removed = await self._store.delete(self._key(flow_id))
        self._locks.pop(flow_id, None)
        return removed
