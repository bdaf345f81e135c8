"""flowpilot: Priority-scheduled, checkpointed orchestration of generation flows."""

from .collaborators import Collaborators
from .config import FlowpilotConfig, load_config
from .contracts import FlowConfiguration, FlowEvent, FlowRecord, FlowStatus, QueueEntry
from .errors import (
    ConfigurationError,
    FlowNotFoundError,
    FlowpilotError,
    InterventionError,
    NotRecoverableError,
    RecoveryError,
    StageExecutionError,
)
from .events import EventBus
from .orchestrator import Orchestrator
from .persistence import get_store

__version__ = "0.1.0"
__all__ = [
    "Collaborators",
    "ConfigurationError",
    "EventBus",
    "FlowConfiguration",
    "FlowEvent",
    "FlowNotFoundError",
    "FlowRecord",
    "FlowStatus",
    "FlowpilotConfig",
    "FlowpilotError",
    "InterventionError",
    "NotRecoverableError",
    "Orchestrator",
    "QueueEntry",
    "RecoveryError",
    "StageExecutionError",
    "get_store",
    "load_config",
]
