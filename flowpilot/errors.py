"""Exception hierarchy for flowpilot."""

from __future__ import annotations

from typing import Iterable, Optional


class FlowpilotError(Exception):
    """Base class for all flowpilot errors."""


class ConfigurationError(FlowpilotError):
    """Submitted configuration violates one or more constraints."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = list(errors)
        super().__init__(f"Invalid configuration: {', '.join(self.errors)}")


class StageExecutionError(FlowpilotError):
    """Raised by a stage executor when the stage cannot complete."""

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        retryable: bool = True,
        error_type: str = "execution-error",
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.retryable = retryable
        self.error_type = error_type


class FlowTimeoutError(FlowpilotError, TimeoutError):
    """A work item or a whole flow exceeded its time budget."""

    def __init__(self, message: str, item_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.item_id = item_id


class FlowNotFoundError(FlowpilotError, LookupError):
    """A control operation referenced an unknown flow id."""

    def __init__(self, flow_id: str) -> None:
        super().__init__(f"Flow not found: {flow_id}")
        self.flow_id = flow_id


class RecoveryError(FlowpilotError):
    """Recovery could not be performed."""


class NotRecoverableError(RecoveryError):
    """The flow's recovery policy does not allow recovery."""


class InterventionError(FlowpilotError):
    """Manual intervention could not be applied to the flow."""


class FlowCancelledError(FlowpilotError):
    """Raised inside stage executors that observe a cancellation request."""
