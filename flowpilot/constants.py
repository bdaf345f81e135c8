"""Pipeline constants shared across flowpilot components."""

from __future__ import annotations

PIPELINE_STAGES = (
    "preparing",
    "data_loading",
    "format_analysis",
    "content_generation",
    "format_correction",
    "structured_data_generation",
    "quality_validation",
    "result_storage",
)

FINAL_STAGE = "completed"

# Share of overall progress contributed by each stage. Sums to 100.
STAGE_WEIGHTS = {
    "preparing": 5,
    "data_loading": 5,
    "format_analysis": 5,
    "content_generation": 60,
    "format_correction": 10,
    "structured_data_generation": 5,
    "quality_validation": 5,
    "result_storage": 5,
}

DEFAULT_MAX_CONCURRENT_FLOWS = 3
DEFAULT_TICK_INTERVAL = 1.0
DEFAULT_RETRY_CLEANUP_INTERVAL = 300.0
DEFAULT_RETRY_STATE_MAX_AGE = 3600.0

# Size of the attempt window used to decide on manual intervention.
RECENT_ATTEMPT_WINDOW = 3

PRIORITY_BASE = 50
PRIORITY_MIN = 1
PRIORITY_MAX = 100
