"""Orchestrator facade: the entry point for submitting and controlling flows."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from .collaborators import Collaborators
from .config import FlowpilotConfig, load_config
from .constants import PIPELINE_STAGES, STAGE_WEIGHTS
from .contracts import (
    Checkpoint,
    EventType,
    FlowConfiguration,
    FlowError,
    FlowProgress,
    FlowRecord,
    FlowStatus,
    FlowTiming,
    QueueEntry,
    Severity,
    StageAttempt,
    StageStatus,
)
from .errors import (
    ConfigurationError,
    FlowNotFoundError,
    InterventionError,
    NotRecoverableError,
    RecoveryError,
)
from .events import EventBus, EventCallback
from .models import InterventionAction, RetryState, utcnow
from .persistence import CheckpointStore, FlowRegistry, KeyValueStore, get_store
from .retry import RetryController, schedule_retry
from .runner import StageExecutor, StageRunner, stage_base
from .scheduler import Scheduler, calculate_priority
from .stages import GenerationStages

logger = logging.getLogger(__name__)

ConfigInput = Union[FlowConfiguration, Mapping[str, Any]]


def validate_configuration(config: FlowConfiguration) -> List[str]:
    """Return every constraint ``config`` violates."""
    errors: List[str] = []
    if not config.workflow_id:
        errors.append("workflow_id is required")
    if not config.game_data_ids:
        errors.append("game_data_ids must be a non-empty list")
    if not 0 <= config.quality_threshold <= 1:
        errors.append("quality_threshold must be between 0 and 1")
    if config.max_retries < 0:
        errors.append("max_retries must be non-negative")
    if config.concurrency.max_concurrent_games < 1:
        errors.append("concurrency.max_concurrent_games must be at least 1")
    if config.timeout.per_game <= 0 or config.timeout.total <= 0:
        errors.append("timeout values must be positive")
    if config.recovery.max_recovery_attempts < 0:
        errors.append("recovery.max_recovery_attempts must be non-negative")
    return errors


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _validation_messages(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    ]


class Orchestrator:
    """Accept flow submissions and expose control and status operations.

    Each instance owns its registry, checkpoint store, scheduler and runner.
    Call :meth:`start` before submitting work and :meth:`stop` on shutdown.
    """

    def __init__(
        self,
        collaborators: Optional[Collaborators] = None,
        *,
        config: Optional[FlowpilotConfig] = None,
        store: Optional[KeyValueStore] = None,
        executors: Optional[Mapping[str, StageExecutor]] = None,
        events: Optional[EventBus] = None,
        retry: Optional[RetryController] = None,
        sleep: Callable[[float], Awaitable[None]] = schedule_retry,
    ) -> None:
        self.config = config or load_config()
        self._store = store or get_store(config=self.config)
        self.registry = FlowRegistry(self._store)
        self.checkpoints = CheckpointStore(self._store)
        self.events = events or EventBus()
        self.retry = retry or RetryController()

        stage_executors: Dict[str, StageExecutor] = {}
        if collaborators is not None:
            stage_executors.update(GenerationStages(collaborators).executors())
        stage_executors.update(executors or {})
        missing = [s for s in PIPELINE_STAGES if s not in stage_executors]
        if missing:
            raise ValueError(f"No executor configured for stages: {', '.join(missing)}")

        self.runner = StageRunner(
            self.registry,
            self.checkpoints,
            self.retry,
            self.events,
            stage_executors,
            sleep=sleep,
        )
        self.scheduler = Scheduler(
            self.registry,
            self.runner.run,
            max_concurrent_flows=self.config.scheduler.max_concurrent_flows,
            tick_interval=self.config.scheduler.tick_interval,
        )
        self._sweep_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        await self._restore()
        await self.scheduler.start()
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_retry_states())
        await self.scheduler.admit()

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None
        await self.scheduler.stop()

    async def close(self) -> None:
        await self.stop()
        await self._store.close()

    async def __aenter__(self) -> "Orchestrator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def _restore(self) -> None:
        """Re-queue persisted pending flows and fail interrupted ones."""
        for record in await self.registry.list_all():
            if record.status is FlowStatus.PENDING:
                self._enqueue(record)
            elif (
                record.status is FlowStatus.RUNNING
                and not self.scheduler.is_active(record.flow_id)
            ):
                await self.runner.fail(
                    record.flow_id,
                    record.current_stage,
                    "Flow interrupted by service restart",
                    Severity.CRITICAL,
                )

    async def _sweep_retry_states(self) -> None:
        settings = self.config.scheduler
        while True:
            await asyncio.sleep(settings.retry_cleanup_interval)
            dropped = self.retry.cleanup_expired(settings.retry_state_max_age)
            if dropped:
                logger.info(f"Dropped {dropped} idle retry states")

    # ------------------------------------------------------------------
    # Submission
    def build_configuration(self, config: ConfigInput) -> FlowConfiguration:
        """Merge ``config`` over the service defaults and parse it."""
        try:
            defaults = FlowConfiguration.model_validate(self.config.defaults)
            if isinstance(config, FlowConfiguration):
                requested = config
            else:
                requested = FlowConfiguration.model_validate(dict(config))
            merged = _deep_merge(
                defaults.model_dump(exclude_unset=True),
                requested.model_dump(exclude_unset=True),
            )
            return FlowConfiguration.model_validate(merged)
        except ValidationError as e:
            raise ConfigurationError(_validation_messages(e)) from e

    async def submit(
        self,
        config: ConfigInput,
        dependencies: Optional[List[str]] = None,
        priority: Optional[float] = None,
    ) -> str:
        """Validate and queue a new flow. Returns its id immediately."""
        configuration = self.build_configuration(config)
        errors = validate_configuration(configuration)
        if errors:
            raise ConfigurationError(errors)

        if priority is None:
            priority = calculate_priority(configuration)
        record = await self.registry.create(configuration, priority, dependencies)
        self._enqueue(record)
        logger.info(f"Generation flow queued: {record.flow_id} (priority={priority})")
        await self.runner.emit(EventType.FLOW_QUEUED, record, priority=priority)
        await self.scheduler.admit()
        return record.flow_id

    def _enqueue(self, record: FlowRecord) -> None:
        queued = self.scheduler.enqueue(
            QueueEntry(
                flow_id=record.flow_id,
                priority=record.metadata.priority,
                retry_count=record.metadata.recovery_attempts,
                dependencies=record.metadata.dependencies,
            )
        )
        if not queued:
            logger.debug(f"Flow {record.flow_id} is already queued")

    # ------------------------------------------------------------------
    # Queries
    async def status(self, flow_id: str) -> FlowRecord | None:
        return await self.registry.get(flow_id)

    async def list_all(self) -> List[FlowRecord]:
        return await self.registry.list_all()

    def retry_state(self, flow_id: str) -> RetryState | None:
        return self.retry.get_state(flow_id)

    async def checkpoint(self, flow_id: str) -> Checkpoint | None:
        return await self.checkpoints.load(flow_id)

    async def queue_status(self) -> Dict[str, Any]:
        records = await self.registry.list_all()
        counts = {status: 0 for status in FlowStatus}
        for record in records:
            counts[record.status] += 1
        return {
            "total": len(records),
            "running": counts[FlowStatus.RUNNING],
            "queued": self.scheduler.queued_count(),
            "completed": counts[FlowStatus.COMPLETED],
            "failed": counts[FlowStatus.FAILED],
            "queue": self.scheduler.snapshot(),
        }

    async def summary(self) -> Dict[str, Any]:
        records = await self.registry.list_all()
        by_status = {status.value: 0 for status in FlowStatus}
        for record in records:
            by_status[record.status.value] += 1
        return {
            "total_flows": len(records),
            "by_status": by_status,
            "queued_flows": self.scheduler.queued_count(),
            "active_runners": self.scheduler.active_count,
            "max_concurrent_flows": self.scheduler.max_concurrent_flows,
            "awaiting_intervention": sum(
                1 for r in records if r.metadata.awaiting_intervention
            ),
            "retry": self.retry.stats(),
        }

    def subscribe(
        self, callback: EventCallback, flow_id: Optional[str] = None
    ) -> Callable[[], None]:
        return self.events.subscribe(callback, flow_id)

    async def _require(self, flow_id: str) -> FlowRecord:
        record = await self.registry.get(flow_id)
        if record is None:
            raise FlowNotFoundError(flow_id)
        return record

    # ------------------------------------------------------------------
    # Control
    async def pause(self, flow_id: str) -> bool:
        await self._require(flow_id)
        changed = False

        def apply(r: FlowRecord) -> object:
            nonlocal changed
            if r.status is not FlowStatus.RUNNING:
                return False
            r.status = FlowStatus.PAUSED
            changed = True
            return None

        record = await self.registry.mutate(flow_id, apply)
        if not changed or record is None:
            return False
        logger.info(f"Flow paused: {flow_id}")
        await self.runner.emit(EventType.FLOW_PAUSED, record, record.current_stage)
        return True

    async def resume(self, flow_id: str) -> bool:
        await self._require(flow_id)
        changed = False

        def apply(r: FlowRecord) -> object:
            nonlocal changed
            if r.status is not FlowStatus.PAUSED:
                return False
            # A runner still finishing its stage simply carries on.
            if self.scheduler.is_active(flow_id):
                r.status = FlowStatus.RUNNING
            else:
                r.status = FlowStatus.PENDING
            changed = True
            return None

        record = await self.registry.mutate(flow_id, apply)
        if not changed or record is None:
            return False
        if record.status is FlowStatus.PENDING:
            self._enqueue(record)
            await self.scheduler.admit()
            record = await self.registry.get(flow_id) or record
        logger.info(f"Flow resumed: {flow_id}")
        await self.runner.emit(EventType.FLOW_RESUMED, record, record.current_stage)
        return True

    async def cancel(self, flow_id: str) -> bool:
        await self._require(flow_id)
        changed = False

        def apply(r: FlowRecord) -> object:
            nonlocal changed
            if r.is_terminal:
                return False
            now = utcnow()
            r.status = FlowStatus.CANCELLED
            r.timing.end_time = now
            r.timing.total_duration = (now - r.timing.start_time).total_seconds() * 1000
            changed = True
            return None

        record = await self.registry.mutate(flow_id, apply)
        if not changed or record is None:
            return False
        self.scheduler.remove(flow_id)
        self.runner.signal_cancel(flow_id)
        self.retry.discard(flow_id)
        logger.info(f"Flow cancelled: {flow_id}")
        await self.runner.emit(EventType.FLOW_CANCELLED, record, record.current_stage)
        return True

    async def recover(self, flow_id: str) -> bool:
        """Resume a failed flow from its checkpoint, or restart it."""
        record = await self._require(flow_id)
        config = record.configuration
        if not config.recovery.enable_auto_recovery:
            raise NotRecoverableError(f"Auto recovery is disabled for flow {flow_id}")
        if record.status is not FlowStatus.FAILED:
            return False
        if record.metadata.recovery_attempts >= config.recovery.max_recovery_attempts:
            raise NotRecoverableError(
                f"Flow {flow_id} exhausted {config.recovery.max_recovery_attempts} recovery attempts"
            )

        checkpoint = None
        if config.recovery.save_checkpoints:
            checkpoint = await self.checkpoints.load(flow_id)
        if checkpoint is not None:
            self._check_checkpoint(record, checkpoint)
            record = await self.registry.mutate(flow_id, _reopen_from_checkpoint)
            event = EventType.RECOVERY_STARTED
            logger.info(f"Recovering flow {flow_id} after stage {checkpoint.stage}")
        else:
            record = await self.registry.mutate(flow_id, _reset_for_restart)
            event = EventType.FLOW_RESTARTED
            logger.info(f"No checkpoint for flow {flow_id}, restarting from beginning")
        if record is None:
            raise FlowNotFoundError(flow_id)

        self.runner.drop_outputs(flow_id)
        self.retry.discard(flow_id)
        self._enqueue(record)
        await self.runner.emit(
            event,
            record,
            record.current_stage,
            from_checkpoint=checkpoint is not None,
        )
        await self.scheduler.admit()
        return True

    @staticmethod
    def _check_checkpoint(record: FlowRecord, checkpoint: Checkpoint) -> None:
        stages = record.configuration.stages()
        if (
            checkpoint.stage not in stages
            or not isinstance(checkpoint.payload, dict)
            or checkpoint.stage not in checkpoint.payload
        ):
            raise RecoveryError(f"Checkpoint for flow {record.flow_id} is corrupt")
        if record.last_finished_stage() is None:
            raise RecoveryError(
                f"Checkpoint for flow {record.flow_id} has no matching completed stage"
            )

    async def resolve_intervention(
        self,
        flow_id: str,
        action: Union[InterventionAction, str],
        custom_data: Any = None,
    ) -> bool:
        """Apply an operator decision to a flow awaiting manual intervention."""
        record = await self._require(flow_id)
        if record.status is not FlowStatus.FAILED or not record.metadata.awaiting_intervention:
            raise InterventionError(f"Flow {flow_id} is not awaiting manual intervention")
        try:
            action = InterventionAction(action)
        except ValueError as e:
            raise InterventionError(f"Unknown manual intervention action: {action}") from e
        stage = record.current_stage

        if action is InterventionAction.ABORT:
            def abort(r: FlowRecord) -> None:
                r.metadata.awaiting_intervention = False
                r.metadata.failure_reason = "user aborted"
                r.errors.append(
                    FlowError(stage=stage, message="user aborted", severity=Severity.CRITICAL)
                )

            record = await self.registry.mutate(flow_id, abort)
            self.retry.discard(flow_id)
            self.runner.drop_outputs(flow_id)
            logger.info(f"Flow {flow_id} aborted by operator at {stage}")
            await self.runner.emit(
                EventType.INTERVENTION_RESOLVED, record, stage, action=action.value
            )
            return True

        if action is InterventionAction.MANUAL_EDIT and custom_data is None:
            raise InterventionError("manual_edit requires custom data")

        if action is InterventionAction.FORCE_REPAIR:
            self.retry.reset_stage(flow_id)
            attempt = None
        else:
            await self.runner.restore_outputs(record)
            substituted = custom_data if action is InterventionAction.MANUAL_EDIT else None
            outputs = self.runner.set_output(flow_id, stage, substituted)
            now = utcnow()
            attempt = StageAttempt(
                stage=stage,
                status=(
                    StageStatus.COMPLETED
                    if action is InterventionAction.MANUAL_EDIT
                    else StageStatus.SKIPPED
                ),
                start_time=now,
                end_time=now,
                duration=0,
                progress=100,
                message=f"resolved by operator: {action.value}",
            )
            if record.configuration.recovery.save_checkpoints:
                await self.checkpoints.save(
                    Checkpoint(flow_id=flow_id, stage=stage, payload=dict(outputs))
                )
            state = self.retry.get_state(flow_id)
            if state is not None:
                state.manual_intervention_required = False
                attempt.retry_count = state.attempt
        reached = stage_base(record.configuration, stage) + STAGE_WEIGHTS.get(stage, 0)

        def reopen(r: FlowRecord) -> None:
            _clear_failure(r)
            if attempt is not None:
                r.steps.append(attempt)
                r.progress.overall = max(r.progress.overall, reached)

        record = await self.registry.mutate(flow_id, reopen)
        if record is None:
            raise FlowNotFoundError(flow_id)
        self._enqueue(record)
        logger.info(f"Flow {flow_id} resolved by operator with {action.value} at {stage}")
        await self.runner.emit(
            EventType.INTERVENTION_RESOLVED, record, stage, action=action.value
        )
        await self.scheduler.admit()
        return True

    async def delete(self, flow_id: str) -> bool:
        """Cancel and remove a flow with its queue entry and checkpoint."""
        record = await self.registry.get(flow_id)
        if record is None:
            return False
        if not record.is_terminal:
            await self.cancel(flow_id)
        self.scheduler.remove(flow_id)
        removed = await self.registry.delete(flow_id)
        await self.checkpoints.delete(flow_id)
        self.runner.forget(flow_id)
        self.retry.discard(flow_id)
        if removed:
            logger.info(f"Flow deleted: {flow_id}")
            await self.runner.emit(EventType.FLOW_DELETED, record)
        return removed


def _clear_failure(record: FlowRecord) -> None:
    record.status = FlowStatus.PENDING
    record.timing.end_time = None
    record.timing.total_duration = None
    record.metadata.awaiting_intervention = False
    record.metadata.failure_reason = None


def _reopen_from_checkpoint(record: FlowRecord) -> None:
    _clear_failure(record)
    record.metadata.recovery_attempts += 1
    record.current_stage = record.next_stage() or record.current_stage
    record.progress.current_step = 0


def _reset_for_restart(record: FlowRecord) -> None:
    _clear_failure(record)
    config = record.configuration
    record.current_stage = config.stages()[0]
    record.steps = []
    record.errors = []
    record.progress = FlowProgress(items_total=len(config.game_data_ids))
    record.timing = FlowTiming()
    record.metadata.checkpoint = None
    record.metadata.last_save_time = None
    record.metadata.recovery_attempts += 1
