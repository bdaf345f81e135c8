"""Stage runner executing the pipeline of one flow."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from pydantic_core import to_jsonable_python

from .constants import FINAL_STAGE, STAGE_WEIGHTS
from .contracts import (
    Checkpoint,
    EventType,
    FlowConfiguration,
    FlowError,
    FlowEvent,
    FlowRecord,
    FlowStatus,
    Severity,
    StageAttempt,
    StageStatus,
)
from .errors import FlowCancelledError
from .events import EventBus
from .models import RecoveryAction, utcnow
from .persistence import CheckpointStore, FlowRegistry
from .retry import RetryController, schedule_retry

logger = logging.getLogger(__name__)

StageExecutor = Callable[["StageContext"], Awaitable[Any]]


def stage_base(config: FlowConfiguration, stage: str) -> float:
    """Overall progress reached before ``stage`` starts."""
    total = 0.0
    for name in config.stages():
        if name == stage:
            break
        total += STAGE_WEIGHTS.get(name, 0)
    return total


class StageContext:
    """Handle given to a stage executor for one attempt."""

    def __init__(
        self,
        runner: "StageRunner",
        flow_id: str,
        stage: str,
        config: FlowConfiguration,
        outputs: Dict[str, Any],
        cancel_event: asyncio.Event,
    ) -> None:
        self._runner = runner
        self.flow_id = flow_id
        self.stage = stage
        self.config = config
        self.outputs = outputs
        self._cancel_event = cancel_event

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise FlowCancelledError(f"Flow {self.flow_id} was cancelled")

    def output(self, stage: str, default: Any = None) -> Any:
        """Return the recorded output of an earlier stage."""
        value = self.outputs.get(stage)
        return default if value is None else value

    async def report_progress(
        self, fraction: float, message: Optional[str] = None
    ) -> None:
        await self._runner.update_stage_progress(
            self.flow_id, self.stage, fraction, message
        )

    async def record_item(
        self, item_id: str, succeeded: bool, error: Optional[str] = None
    ) -> None:
        await self._runner.record_item(self.flow_id, self.stage, item_id, succeeded, error)

    async def reset_items(self, failed: int = 0) -> None:
        """Restart item counters, keeping ``failed`` items already lost."""

        def apply(record: FlowRecord) -> None:
            record.progress.items_processed = failed
            record.progress.items_failed = failed
            record.progress.items_succeeded = 0

        await self._runner.registry.mutate(self.flow_id, apply)

    async def add_usage(self, tokens: int = 0, api_calls: int = 0) -> None:
        def apply(record: FlowRecord) -> None:
            record.resources.total_tokens_used += tokens
            record.resources.total_api_calls += api_calls

        await self._runner.registry.mutate(self.flow_id, apply)


class StageRunner:
    """Execute the ordered stages of a flow, with retries and checkpoints.

    Stage errors never escape :meth:`run`; they end up in the flow record's
    attempts and error list.
    """

    def __init__(
        self,
        registry: FlowRegistry,
        checkpoints: CheckpointStore,
        retry: RetryController,
        events: EventBus,
        executors: Mapping[str, StageExecutor],
        sleep: Callable[[float], Awaitable[None]] = schedule_retry,
    ) -> None:
        self.registry = registry
        self._checkpoints = checkpoints
        self._retry = retry
        self._events = events
        self._executors = dict(executors)
        self._sleep = sleep
        self._outputs: Dict[str, Dict[str, Any]] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._last_progress_emit: Dict[str, float] = {}

    # ------------------------------------------------------------------
    # Control hooks
    def cancel_event(self, flow_id: str) -> asyncio.Event:
        event = self._cancel_events.get(flow_id)
        if event is None:
            event = self._cancel_events[flow_id] = asyncio.Event()
        return event

    def signal_cancel(self, flow_id: str) -> None:
        self.cancel_event(flow_id).set()

    def set_output(self, flow_id: str, stage: str, output: Any) -> Dict[str, Any]:
        outputs = self._outputs.setdefault(flow_id, {})
        outputs[stage] = to_jsonable_python(output)
        return outputs

    def drop_outputs(self, flow_id: str) -> None:
        self._outputs.pop(flow_id, None)

    def forget(self, flow_id: str) -> None:
        self._outputs.pop(flow_id, None)
        self._cancel_events.pop(flow_id, None)
        self._last_progress_emit.pop(flow_id, None)

    # ------------------------------------------------------------------
    async def emit(
        self,
        event_type: EventType,
        record: FlowRecord,
        stage: Optional[str] = None,
        **data: Any,
    ) -> None:
        notifications = record.configuration.notifications
        if (
            event_type is EventType.PROGRESS_UPDATED
            and not notifications.enable_progress_updates
        ):
            return
        if event_type is EventType.STAGE_FAILED and not notifications.enable_error_alerts:
            return
        await self._events.publish(
            FlowEvent(
                type=event_type,
                flow_id=record.flow_id,
                stage=stage,
                status=record.status,
                progress=record.progress,
                data=data,
            )
        )

    async def run(self, flow_id: str) -> None:
        """Run ``flow_id`` from its next pending stage until it stops."""
        record = await self.registry.get(flow_id)
        if record is None or record.status is not FlowStatus.RUNNING:
            return

        config = record.configuration
        self._cancel_events[flow_id] = asyncio.Event()
        outputs = await self.restore_outputs(record)
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + max(0.0, config.timeout.total - record.timing.active_duration) / 1000

        await self.emit(EventType.FLOW_STARTED, record, record.current_stage)
        logger.info(f"Flow {flow_id} running from stage {record.next_stage()}")

        try:
            next_stage = record.next_stage()
            stages = config.stages()
            remaining = stages[stages.index(next_stage):] if next_stage else []
            for stage in remaining:
                if await self._should_stop(flow_id):
                    return
                if loop.time() >= deadline:
                    await self.fail(
                        flow_id, stage, "Flow exceeded total timeout", Severity.CRITICAL
                    )
                    return
                if (
                    stage == "structured_data_generation"
                    and not config.enable_structured_data
                ):
                    await self._skip_stage(flow_id, stage, config, outputs)
                    continue
                if not await self._run_stage(flow_id, stage, config, outputs, deadline):
                    return
            if await self._should_stop(flow_id):
                return
            await self._complete(flow_id)
        finally:
            elapsed = (loop.time() - started) * 1000

            def account(r: FlowRecord) -> None:
                r.timing.active_duration += elapsed

            await self.registry.mutate(flow_id, account)

    # ------------------------------------------------------------------
    # Stage execution
    async def _run_stage(
        self,
        flow_id: str,
        stage: str,
        config: FlowConfiguration,
        outputs: Dict[str, Any],
        deadline: float,
    ) -> bool:
        executor = self._executors[stage]
        retry_state = self._retry.state(flow_id)
        retry_state.begin_stage(stage)
        loop = asyncio.get_running_loop()

        while True:
            attempt = StageAttempt(
                stage=stage,
                status=StageStatus.RUNNING,
                start_time=utcnow(),
                retry_count=retry_state.attempt,
            )

            def start(r: FlowRecord) -> None:
                r.current_stage = stage
                r.steps.append(attempt)
                r.progress.current_step = 0

            record = await self.registry.mutate(flow_id, start)
            if record is None:
                return False
            await self.emit(EventType.STAGE_STARTED, record, stage, retry_count=attempt.retry_count)

            ctx = StageContext(
                self, flow_id, stage, config, outputs, self.cancel_event(flow_id)
            )
            began = loop.time()
            try:
                finished, output = await self._execute(
                    executor, ctx, max(0.0, deadline - loop.time())
                )
            except Exception as e:
                duration = (loop.time() - began) * 1000
                message = str(e) or type(e).__name__
                record = await self._finish_attempt(
                    flow_id, StageStatus.FAILED, duration, message
                )
                if record is None:
                    return False
                if isinstance(e, FlowCancelledError) or record.is_terminal:
                    logger.info(f"Flow {flow_id} stopped during stage {stage}: {message}")
                    return False
                # A paused flow still gets its failure decided; a retry waits for resume.
                await self.emit(EventType.STAGE_FAILED, record, stage, error=message)
                logger.warning(f"Stage {stage} failed for flow {flow_id}: {message}")

                decision = self._retry.decide(
                    flow_id, stage, e, retry_state, config.retry, config.max_retries
                )
                if decision.action is RecoveryAction.RETRY:
                    await self.emit(
                        EventType.STAGE_RETRY,
                        record,
                        stage,
                        attempt=retry_state.attempt,
                        delay=decision.delay,
                    )
                    if record.status is FlowStatus.PAUSED:
                        logger.info(f"Flow {flow_id} paused; {stage} retries on resume")
                        return False
                    await self._sleep(decision.delay)
                    if await self._should_stop(flow_id):
                        return False
                    continue
                if decision.action is RecoveryAction.MANUAL_INTERVENTION:
                    await self.fail(
                        flow_id, stage, message, Severity.WARNING, awaiting_intervention=True
                    )
                    return False
                await self.fail(flow_id, stage, message, Severity.CRITICAL)
                return False

            duration = (loop.time() - began) * 1000
            if not finished:
                await self._finish_attempt(
                    flow_id, StageStatus.FAILED, duration, "Flow exceeded total timeout"
                )
                await self.fail(
                    flow_id, stage, "Flow exceeded total timeout", Severity.CRITICAL
                )
                return False
            outputs[stage] = to_jsonable_python(output)
            self._outputs[flow_id] = outputs
            await self._stage_succeeded(flow_id, stage, config, outputs, duration)
            self._retry.record_success(flow_id, stage)
            return True

    @staticmethod
    async def _execute(
        executor: StageExecutor, ctx: StageContext, timeout: float
    ) -> tuple[bool, Any]:
        """Run one attempt within ``timeout`` seconds.

        Returns ``(False, None)`` when the time budget ran out; executor errors
        propagate.
        """
        task = asyncio.ensure_future(executor(ctx))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        finally:
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if not done:
            return False, None
        return True, task.result()

    async def _finish_attempt(
        self,
        flow_id: str,
        status: StageStatus,
        duration: float,
        error: Optional[str] = None,
    ) -> FlowRecord | None:
        def apply(r: FlowRecord) -> None:
            attempt = r.steps[-1]
            attempt.end_time = utcnow()
            attempt.duration = duration
            if r.status is FlowStatus.CANCELLED:
                attempt.status = StageStatus.SKIPPED
                attempt.message = "Flow cancelled during stage"
                attempt.error = None
            else:
                attempt.status = status
                attempt.error = error

        return await self.registry.mutate(flow_id, apply)

    async def _stage_succeeded(
        self,
        flow_id: str,
        stage: str,
        config: FlowConfiguration,
        outputs: Dict[str, Any],
        duration: float,
    ) -> None:
        checkpoint = None
        if config.recovery.save_checkpoints:
            checkpoint = Checkpoint(flow_id=flow_id, stage=stage, payload=dict(outputs))
        reached = stage_base(config, stage) + STAGE_WEIGHTS.get(stage, 0)

        def apply(r: FlowRecord) -> None:
            attempt = r.steps[-1]
            attempt.status = StageStatus.COMPLETED
            attempt.end_time = utcnow()
            attempt.duration = duration
            attempt.progress = 100
            r.timing.stage_timings[stage] = duration
            r.progress.current_step = 100
            r.progress.overall = max(r.progress.overall, min(100.0, reached))
            if checkpoint is not None:
                r.metadata.checkpoint = checkpoint
                r.metadata.last_save_time = checkpoint.timestamp

        record = await self.registry.mutate(flow_id, apply)
        if record is None:
            return
        if checkpoint is not None:
            await self._checkpoints.save(checkpoint)
        logger.info(f"Stage {stage} completed for flow {flow_id} in {duration:.0f}ms")
        await self.emit(EventType.STAGE_COMPLETED, record, stage, duration=duration)
        await self.emit(EventType.PROGRESS_UPDATED, record, stage)
        if checkpoint is not None:
            await self.emit(EventType.CHECKPOINT_SAVED, record, stage)

    async def _skip_stage(
        self,
        flow_id: str,
        stage: str,
        config: FlowConfiguration,
        outputs: Dict[str, Any],
    ) -> None:
        reached = stage_base(config, stage) + STAGE_WEIGHTS.get(stage, 0)

        def apply(r: FlowRecord) -> None:
            now = utcnow()
            r.current_stage = stage
            r.steps.append(
                StageAttempt(
                    stage=stage,
                    status=StageStatus.SKIPPED,
                    start_time=now,
                    end_time=now,
                    duration=0,
                    message="structured data disabled",
                )
            )
            r.progress.overall = max(r.progress.overall, reached)

        outputs[stage] = None
        self._outputs[flow_id] = outputs
        record = await self.registry.mutate(flow_id, apply)
        if record is not None:
            await self.emit(EventType.STAGE_SKIPPED, record, stage)

    # ------------------------------------------------------------------
    # Progress
    async def update_stage_progress(
        self,
        flow_id: str,
        stage: str,
        fraction: float,
        message: Optional[str] = None,
    ) -> None:
        fraction = min(1.0, max(0.0, fraction))

        def apply(r: FlowRecord) -> None:
            attempt = r.latest_attempt(stage)
            if attempt is not None and attempt.status is StageStatus.RUNNING:
                attempt.progress = fraction * 100
                if message is not None:
                    attempt.message = message
            r.progress.current_step = fraction * 100
            base = stage_base(r.configuration, stage)
            r.progress.overall = max(
                r.progress.overall, base + STAGE_WEIGHTS.get(stage, 0) * fraction
            )

        record = await self.registry.mutate(flow_id, apply)
        if record is not None:
            await self._throttled_progress(record, stage, force=fraction >= 1.0)

    async def record_item(
        self,
        flow_id: str,
        stage: str,
        item_id: str,
        succeeded: bool,
        error: Optional[str] = None,
    ) -> None:
        def apply(r: FlowRecord) -> None:
            r.progress.items_processed += 1
            if succeeded:
                r.progress.items_succeeded += 1
            else:
                r.progress.items_failed += 1
                r.errors.append(
                    FlowError(
                        stage=stage,
                        item_id=item_id,
                        message=error or "item failed",
                        severity=Severity.ERROR,
                    )
                )

        record = await self.registry.mutate(flow_id, apply)
        if record is None:
            return
        if not succeeded:
            logger.warning(f"Item {item_id} failed in {stage} for flow {flow_id}: {error}")
        await self._throttled_progress(record, stage)

    async def _throttled_progress(
        self, record: FlowRecord, stage: str, force: bool = False
    ) -> None:
        interval = record.configuration.notifications.progress_update_interval / 1000
        now = asyncio.get_running_loop().time()
        last = self._last_progress_emit.get(record.flow_id)
        if not force and last is not None and now - last < interval:
            return
        self._last_progress_emit[record.flow_id] = now
        await self.emit(EventType.PROGRESS_UPDATED, record, stage)

    # ------------------------------------------------------------------
    # Terminal transitions
    async def _should_stop(self, flow_id: str) -> bool:
        record = await self.registry.get(flow_id)
        if record is None:
            return True
        if record.status is not FlowStatus.RUNNING:
            logger.info(
                f"Flow {flow_id} stopping at stage boundary ({record.status.value})"
            )
            return True
        return False

    async def _complete(self, flow_id: str) -> None:
        def apply(r: FlowRecord) -> object:
            if r.status is not FlowStatus.RUNNING:
                return False
            now = utcnow()
            r.status = FlowStatus.COMPLETED
            r.current_stage = FINAL_STAGE
            r.progress.overall = 100
            r.progress.current_step = 100
            r.timing.end_time = now
            r.timing.total_duration = (now - r.timing.start_time).total_seconds() * 1000
            return None

        record = await self.registry.mutate(flow_id, apply)
        if record is None or record.status is not FlowStatus.COMPLETED:
            return
        self._retry.discard(flow_id)
        self.drop_outputs(flow_id)
        logger.info(f"Flow {flow_id} completed")
        await self.emit(EventType.FLOW_COMPLETED, record, FINAL_STAGE)

    async def fail(
        self,
        flow_id: str,
        stage: str,
        message: str,
        severity: Severity,
        awaiting_intervention: bool = False,
    ) -> None:
        def apply(r: FlowRecord) -> object:
            if r.is_terminal:
                return False
            now = utcnow()
            r.status = FlowStatus.FAILED
            r.timing.end_time = now
            r.timing.total_duration = (now - r.timing.start_time).total_seconds() * 1000
            r.errors.append(FlowError(stage=stage, message=message, severity=severity))
            r.metadata.awaiting_intervention = awaiting_intervention
            r.metadata.failure_reason = message
            return None

        record = await self.registry.mutate(flow_id, apply)
        if record is None or record.status is not FlowStatus.FAILED:
            return
        if awaiting_intervention:
            logger.warning(f"Flow {flow_id} requires manual intervention at {stage}: {message}")
            await self.emit(EventType.INTERVENTION_REQUIRED, record, stage, error=message)
        else:
            logger.error(f"Flow {flow_id} failed at {stage}: {message}")
        await self.emit(
            EventType.FLOW_FAILED,
            record,
            stage,
            error=message,
            awaiting_intervention=awaiting_intervention,
        )

    async def restore_outputs(self, record: FlowRecord) -> Dict[str, Any]:
        finished = record.last_finished_stage()
        if finished is None:
            self._outputs[record.flow_id] = {}
            return self._outputs[record.flow_id]
        cached = self._outputs.get(record.flow_id)
        if cached is not None and finished in cached:
            return cached
        checkpoint = await self._checkpoints.load(record.flow_id)
        if checkpoint is not None and isinstance(checkpoint.payload, dict):
            outputs = dict(checkpoint.payload)
            self._outputs[record.flow_id] = outputs
            return outputs
        outputs = cached if cached is not None else {}
        self._outputs[record.flow_id] = outputs
        return outputs
