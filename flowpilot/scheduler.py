"""Priority scheduler admitting queued flows under a concurrency cap."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from .constants import (
    DEFAULT_MAX_CONCURRENT_FLOWS,
    DEFAULT_TICK_INTERVAL,
    PRIORITY_BASE,
    PRIORITY_MAX,
    PRIORITY_MIN,
)
from .contracts import (
    FlowConfiguration,
    FlowError,
    FlowRecord,
    FlowStatus,
    QueueEntry,
    QueueStatus,
    Severity,
)
from .models import utcnow
from .persistence import FlowRegistry

logger = logging.getLogger(__name__)

_QUEUE_STATUS_FOR = {
    FlowStatus.COMPLETED: QueueStatus.COMPLETED,
    FlowStatus.FAILED: QueueStatus.FAILED,
    FlowStatus.CANCELLED: QueueStatus.CANCELLED,
}


def calculate_priority(config: FlowConfiguration) -> float:
    """Score a configuration; higher runs first.

    Small batches and strict quality requirements are favoured, very large
    batches are pushed back.
    """
    priority = PRIORITY_BASE
    count = len(config.game_data_ids)
    if count < 10:
        priority += 20
    elif count > 100:
        priority -= 10
    if config.quality_threshold > 0.8:
        priority += 10
    if config.enable_structured_data:
        priority += 5
    return max(PRIORITY_MIN, min(PRIORITY_MAX, priority))


class Scheduler:
    """Hold queued flows and hand them to the runner while slots are free.

    Admission happens when woken (on submission, resume and flow completion)
    and on a periodic safety-net tick.
    """

    def __init__(
        self,
        registry: FlowRegistry,
        dispatch: Callable[[str], Awaitable[None]],
        max_concurrent_flows: int = DEFAULT_MAX_CONCURRENT_FLOWS,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
    ) -> None:
        if max_concurrent_flows < 1:
            raise ValueError("max_concurrent_flows must be at least 1")
        self._registry = registry
        self._dispatch = dispatch
        self.max_concurrent_flows = max_concurrent_flows
        self.tick_interval = tick_interval
        self._queue: List[QueueEntry] = []
        self._running: Dict[str, QueueEntry] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._wakeup = asyncio.Event()
        self._admit_lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    @property
    def started(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        if self.started:
            return
        self._loop_task = asyncio.create_task(self._loop())
        logger.info(
            f"Scheduler started (max_concurrent_flows={self.max_concurrent_flows})"
        )

    async def stop(self) -> None:
        """Stop admitting and cancel in-flight runner tasks."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler stopped")

    async def _loop(self) -> None:
        while True:
            self._wakeup.clear()
            await self.admit()
            try:
                await asyncio.wait_for(self._wakeup.wait(), self.tick_interval)
            except asyncio.TimeoutError:
                pass

    def wake(self) -> None:
        self._wakeup.set()

    # ------------------------------------------------------------------
    # Queue management
    def enqueue(self, entry: QueueEntry) -> bool:
        """Insert ``entry`` in priority order.

        Returns ``False`` when the flow is already waiting in the queue. A flow
        whose previous runner is still finishing may be queued again; it is
        admitted once that runner exits.
        """
        if any(e.flow_id == entry.flow_id for e in self._queue):
            return False
        entry.status = QueueStatus.QUEUED
        self._queue.append(entry)
        self._queue.sort(key=lambda e: (-e.priority, e.enqueued_at))
        self.wake()
        return True

    def remove(self, flow_id: str) -> Optional[QueueEntry]:
        """Drop a still-queued entry."""
        for entry in self._queue:
            if entry.flow_id == flow_id:
                self._queue.remove(entry)
                entry.status = QueueStatus.CANCELLED
                return entry
        return None

    def get_entry(self, flow_id: str) -> Optional[QueueEntry]:
        for entry in self._queue:
            if entry.flow_id == flow_id:
                return entry
        return self._running.get(flow_id)

    def snapshot(self) -> List[QueueEntry]:
        """Copies of running entries followed by queued entries in order."""
        entries = list(self._running.values()) + list(self._queue)
        return [entry.model_copy() for entry in entries]

    def queued_count(self) -> int:
        return sum(1 for e in self._queue if e.status is QueueStatus.QUEUED)

    def is_active(self, flow_id: str) -> bool:
        return flow_id in self._tasks

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Admission
    async def admit(self) -> List[str]:
        """Start queued flows while slots are free. Returns admitted flow ids."""
        admitted: List[str] = []
        if not self.started:
            return admitted
        async with self._admit_lock:
            while len(self._tasks) < self.max_concurrent_flows:
                entry = await self._next_eligible()
                if entry is None:
                    break
                self._queue.remove(entry)
                record = await self._registry.mutate(entry.flow_id, _mark_running)
                if record is None or record.status is not FlowStatus.RUNNING:
                    entry.status = QueueStatus.CANCELLED
                    continue
                entry.status = QueueStatus.RUNNING
                self._running[entry.flow_id] = entry
                self._tasks[entry.flow_id] = asyncio.create_task(
                    self._run(entry), name=f"flow-{entry.flow_id}"
                )
                admitted.append(entry.flow_id)
                logger.info(
                    f"Admitted flow {entry.flow_id} (priority={entry.priority}, "
                    f"running={len(self._tasks)}/{self.max_concurrent_flows})"
                )
        return admitted

    async def _next_eligible(self) -> Optional[QueueEntry]:
        for entry in self._queue:
            if entry.status is not QueueStatus.QUEUED or entry.flow_id in self._tasks:
                continue
            if await self._dependencies_met(entry):
                return entry
        return None

    async def _dependencies_met(self, entry: QueueEntry) -> bool:
        for dep_id in entry.dependencies:
            dep = await self._registry.get(dep_id)
            if dep is None or dep.status is not FlowStatus.COMPLETED:
                return False
        return True

    async def _run(self, entry: QueueEntry) -> None:
        try:
            await self._dispatch(entry.flow_id)
        except Exception as e:
            logger.exception(f"Runner crashed for flow {entry.flow_id}")
            entry.status = QueueStatus.FAILED
            await self._registry.mutate(
                entry.flow_id, lambda r: _mark_crashed(r, f"Runner crashed: {e}")
            )
        finally:
            self._tasks.pop(entry.flow_id, None)
            self._running.pop(entry.flow_id, None)
            record = await self._registry.get(entry.flow_id)
            if record is not None and entry.status is QueueStatus.RUNNING:
                if record.status is FlowStatus.RUNNING and self.started:
                    # Resumed while the runner was stopping at a stage boundary.
                    await self._registry.mutate(entry.flow_id, _mark_pending)
                    self.enqueue(entry)
                else:
                    entry.status = _QUEUE_STATUS_FOR.get(record.status, QueueStatus.QUEUED)
            if (
                record is not None
                and record.status is FlowStatus.PENDING
                and self.started
                and self.get_entry(entry.flow_id) is None
            ):
                # Reopened (recovered or resolved) before this runner exited.
                self.enqueue(_requeued(entry, record))
            self.wake()


def _mark_running(record: FlowRecord) -> object:
    if record.status is not FlowStatus.PENDING:
        return False
    if not record.steps:
        record.timing = record.timing.model_copy(update={"start_time": utcnow()})
    record.status = FlowStatus.RUNNING
    return None


def _mark_pending(record: FlowRecord) -> object:
    if record.status is not FlowStatus.RUNNING:
        return False
    record.status = FlowStatus.PENDING
    return None


def _mark_crashed(record: FlowRecord, message: str) -> object:
    if record.is_terminal:
        return False
    now = utcnow()
    record.status = FlowStatus.FAILED
    record.timing.end_time = now
    record.timing.total_duration = (now - record.timing.start_time).total_seconds() * 1000
    record.errors.append(
        FlowError(stage=record.current_stage, message=message, severity=Severity.CRITICAL)
    )
    record.metadata.failure_reason = message
    return None


def _requeued(entry: QueueEntry, record: FlowRecord) -> QueueEntry:
    return QueueEntry(
        flow_id=entry.flow_id,
        priority=record.metadata.priority,
        retry_count=record.metadata.recovery_attempts,
        dependencies=record.metadata.dependencies,
    )
