"""Retry and intervention data models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base model serialized with camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Dump to a JSON-compatible dict using wire aliases."""
        return self.model_dump(mode="json", by_alias=True)


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class RecoveryAction(str, Enum):
    """Outcome of a retry decision."""

    RETRY = "retry"
    ABORT = "abort"
    MANUAL_INTERVENTION = "manual_intervention"


class InterventionAction(str, Enum):
    """Operator choices for a flow awaiting manual intervention."""

    SKIP_VALIDATION = "skip_validation"
    FORCE_REPAIR = "force_repair"
    MANUAL_EDIT = "manual_edit"
    ABORT = "abort"


class RetryPolicy(WireModel):
    """Backoff and escalation settings applied to failed stage attempts.

    Delays are expressed in milliseconds.
    """

    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay: float = 1000
    max_delay: float = 30000
    failure_threshold: float = 0.7
    enable_manual_intervention: bool = False


class FailureRecord(WireModel):
    """One failed stage attempt and what was decided about it."""

    stage: str
    timestamp: datetime = Field(default_factory=utcnow)
    error_type: str = "execution-error"
    error_message: str
    attempt: int
    recovery_action: RecoveryAction


class RetryState(WireModel):
    """Retry bookkeeping for one flow."""

    flow_id: str
    current_stage: Optional[str] = None
    attempt: int = 0
    total_attempts: int = 0
    failure_history: list[FailureRecord] = Field(default_factory=list)
    # True marks a failed attempt, False a successful one; newest last.
    recent_outcomes: list[bool] = Field(default_factory=list)
    manual_intervention_required: bool = False
    last_success: Optional[datetime] = None

    def begin_stage(self, stage: str) -> None:
        """Reset the per-stage attempt counter when a new stage starts."""
        if self.current_stage != stage:
            self.current_stage = stage
            self.attempt = 0

    def last_activity(self) -> Optional[datetime]:
        if self.failure_history:
            return self.failure_history[-1].timestamp
        return self.last_success


class RetryDecision(WireModel):
    action: RecoveryAction
    delay: float = 0
    reason: str = ""

    @property
    def should_retry(self) -> bool:
        return self.action is RecoveryAction.RETRY
