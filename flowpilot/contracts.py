"""Core data contracts for flowpilot flows."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import ConfigDict, Field

from .constants import FINAL_STAGE, PIPELINE_STAGES
from .models import RetryPolicy, WireModel, utcnow


class FlowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {FlowStatus.COMPLETED, FlowStatus.FAILED, FlowStatus.CANCELLED}
)


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class QueueStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Severity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class OutputFormat(str, Enum):
    JSON = "json"
    CSV = "csv"
    XLSX = "xlsx"


class ConcurrencyConfig(WireModel):
    """Parallelism limits inside a single flow."""

    model_config = ConfigDict(frozen=True)

    max_concurrent_games: int = 5
    max_concurrent_stages: int = 2


class TimeoutConfig(WireModel):
    """Time budgets in milliseconds."""

    model_config = ConfigDict(frozen=True)

    per_game: float = 120000
    total: float = 1800000


class RecoveryConfig(WireModel):
    model_config = ConfigDict(frozen=True)

    enable_auto_recovery: bool = True
    save_checkpoints: bool = True
    max_recovery_attempts: int = 3


class NotificationConfig(WireModel):
    model_config = ConfigDict(frozen=True)

    enable_progress_updates: bool = True
    enable_error_alerts: bool = True
    progress_update_interval: float = 1000


class FlowConfiguration(WireModel):
    """Immutable description of a submitted flow."""

    model_config = ConfigDict(frozen=True)

    workflow_id: str = ""
    game_data_ids: List[str] = Field(default_factory=list)
    enable_structured_data: bool = True
    output_format: OutputFormat = OutputFormat.JSON
    quality_threshold: float = 0.7
    max_retries: int = 3
    concurrency: ConcurrencyConfig = ConcurrencyConfig()
    timeout: TimeoutConfig = TimeoutConfig()
    recovery: RecoveryConfig = RecoveryConfig()
    notifications: NotificationConfig = NotificationConfig()
    retry: RetryPolicy = RetryPolicy()

    def stages(self) -> List[str]:
        """Return the ordered stages this configuration runs through."""
        return list(PIPELINE_STAGES)


class StageAttempt(WireModel):
    """A single execution attempt of one pipeline stage."""

    stage: str
    status: StageStatus = StageStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[float] = None
    progress: float = 0
    message: Optional[str] = None
    error: Optional[str] = None
    retry_count: int = 0


class FlowProgress(WireModel):
    overall: float = 0
    current_step: float = 0
    items_processed: int = 0
    items_total: int = 0
    items_succeeded: int = 0
    items_failed: int = 0


class FlowTiming(WireModel):
    """Wall-clock bookkeeping. Durations are in milliseconds."""

    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    total_duration: Optional[float] = None
    active_duration: float = 0
    stage_timings: Dict[str, float] = Field(default_factory=dict)


class FlowResources(WireModel):
    total_tokens_used: int = 0
    total_api_calls: int = 0


class FlowError(WireModel):
    stage: str
    item_id: Optional[str] = None
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    severity: Severity = Severity.ERROR


class Checkpoint(WireModel):
    """Latest successful stage output for a flow."""

    flow_id: str
    stage: str
    payload: Any = None
    timestamp: datetime = Field(default_factory=utcnow)


class FlowMetadata(WireModel):
    configuration: FlowConfiguration
    checkpoint: Optional[Checkpoint] = None
    last_save_time: Optional[datetime] = None
    priority: float = 0
    dependencies: List[str] = Field(default_factory=list)
    recovery_attempts: int = 0
    awaiting_intervention: bool = False
    failure_reason: Optional[str] = None


def new_flow_id() -> str:
    return f"flow_{uuid.uuid4().hex}"


class FlowRecord(WireModel):
    """Authoritative state of one flow."""

    flow_id: str = Field(default_factory=new_flow_id)
    status: FlowStatus = FlowStatus.PENDING
    current_stage: str = PIPELINE_STAGES[0]
    steps: List[StageAttempt] = Field(default_factory=list)
    progress: FlowProgress = Field(default_factory=FlowProgress)
    timing: FlowTiming = Field(default_factory=FlowTiming)
    resources: FlowResources = Field(default_factory=FlowResources)
    errors: List[FlowError] = Field(default_factory=list)
    metadata: FlowMetadata

    @property
    def configuration(self) -> FlowConfiguration:
        return self.metadata.configuration

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def latest_attempt(self, stage: Optional[str] = None) -> Optional[StageAttempt]:
        """Return the newest attempt, optionally restricted to ``stage``."""
        for attempt in reversed(self.steps):
            if stage is None or attempt.stage == stage:
                return attempt
        return None

    def last_finished_stage(self) -> Optional[str]:
        """Return the furthest stage that completed or was skipped."""
        for attempt in reversed(self.steps):
            if attempt.status in (StageStatus.COMPLETED, StageStatus.SKIPPED):
                return attempt.stage
        return None

    def next_stage(self) -> Optional[str]:
        """Return the stage execution should continue from, if any."""
        stages = self.configuration.stages()
        finished = self.last_finished_stage()
        if finished is None:
            return stages[0]
        if finished == FINAL_STAGE or finished not in stages:
            return None
        index = stages.index(finished) + 1
        return stages[index] if index < len(stages) else None


class QueueEntry(WireModel):
    flow_id: str
    priority: float
    enqueued_at: datetime = Field(default_factory=utcnow)
    retry_count: int = 0
    dependencies: List[str] = Field(default_factory=list)
    status: QueueStatus = QueueStatus.QUEUED


class EventType(str, Enum):
    FLOW_QUEUED = "flow_queued"
    FLOW_STARTED = "flow_started"
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"
    STAGE_SKIPPED = "stage_skipped"
    STAGE_RETRY = "stage_retry"
    PROGRESS_UPDATED = "progress_updated"
    CHECKPOINT_SAVED = "checkpoint_saved"
    FLOW_PAUSED = "flow_paused"
    FLOW_RESUMED = "flow_resumed"
    FLOW_CANCELLED = "flow_cancelled"
    FLOW_COMPLETED = "flow_completed"
    FLOW_FAILED = "flow_failed"
    FLOW_RESTARTED = "flow_restarted"
    RECOVERY_STARTED = "recovery_started"
    INTERVENTION_REQUIRED = "intervention_required"
    INTERVENTION_RESOLVED = "intervention_resolved"
    FLOW_DELETED = "flow_deleted"


class FlowEvent(WireModel):
    """Notification published on every flow transition."""

    type: EventType
    flow_id: str
    stage: Optional[str] = None
    status: Optional[FlowStatus] = None
    progress: Optional[FlowProgress] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
