"""Retry controller deciding what happens after a failed stage attempt."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Dict, Optional

from .constants import RECENT_ATTEMPT_WINDOW
from .errors import FlowTimeoutError, StageExecutionError
from .models import (
    BackoffStrategy,
    FailureRecord,
    RecoveryAction,
    RetryDecision,
    RetryPolicy,
    RetryState,
    utcnow,
)

logger = logging.getLogger(__name__)


def compute_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Compute the delay in milliseconds before retry number ``attempt + 1``."""
    if policy.backoff_strategy is BackoffStrategy.LINEAR:
        delay = policy.base_delay * (attempt + 1)
    elif policy.backoff_strategy is BackoffStrategy.EXPONENTIAL:
        delay = policy.base_delay * 2**attempt
    else:
        delay = policy.base_delay
    return max(0.0, min(delay, policy.max_delay))


async def schedule_retry(delay: float) -> None:
    """Sleep for ``delay`` milliseconds before retrying."""
    await asyncio.sleep(delay / 1000 if delay > 0 else 0)


def classify_error(error: BaseException) -> str:
    if isinstance(error, FlowTimeoutError):
        return "timeout"
    if isinstance(error, StageExecutionError):
        return error.error_type
    return type(error).__name__


class RetryController:
    """Track per-flow retry state and decide between retry, abort and escalation."""

    def __init__(self) -> None:
        self._states: Dict[str, RetryState] = {}
        self._decisions = 0

    def state(self, flow_id: str) -> RetryState:
        """Return the retry state for ``flow_id``, creating it if needed."""
        state = self._states.get(flow_id)
        if state is None:
            state = self._states[flow_id] = RetryState(flow_id=flow_id)
        return state

    def get_state(self, flow_id: str) -> Optional[RetryState]:
        return self._states.get(flow_id)

    def discard(self, flow_id: str) -> None:
        self._states.pop(flow_id, None)

    def reset_stage(self, flow_id: str) -> None:
        """Give the current stage a fresh retry budget."""
        state = self.state(flow_id)
        state.attempt = 0
        state.recent_outcomes.clear()
        state.manual_intervention_required = False

    def record_success(self, flow_id: str, stage: str) -> None:
        state = self.state(flow_id)
        state.begin_stage(stage)
        state.total_attempts += 1
        state.last_success = utcnow()
        self._push_outcome(state, failed=False)

    def decide(
        self,
        flow_id: str,
        stage: str,
        error: BaseException,
        retry_state: RetryState,
        policy: RetryPolicy,
        max_retries: int,
    ) -> RetryDecision:
        """Decide how to continue after ``error`` failed an attempt of ``stage``.

        A failure record is appended to ``retry_state`` for every decision.
        """
        retry_state.begin_stage(stage)
        attempt = retry_state.attempt
        retry_state.total_attempts += 1
        self._push_outcome(retry_state, failed=True)
        self._decisions += 1

        retryable = not isinstance(error, StageExecutionError) or error.retryable
        if not retryable:
            decision = RetryDecision(
                action=RecoveryAction.ABORT, reason="error is not retryable"
            )
        elif (
            policy.enable_manual_intervention
            and self._failure_ratio(retry_state) >= policy.failure_threshold
        ):
            decision = RetryDecision(
                action=RecoveryAction.MANUAL_INTERVENTION,
                reason="recent failure rate reached threshold",
            )
        elif attempt < max_retries:
            decision = RetryDecision(
                action=RecoveryAction.RETRY,
                delay=compute_backoff(attempt, policy),
                reason=f"retry {attempt + 1} of {max_retries}",
            )
        else:
            decision = RetryDecision(
                action=RecoveryAction.ABORT, reason="max retries exceeded"
            )

        retry_state.failure_history.append(
            FailureRecord(
                stage=stage,
                error_type=classify_error(error),
                error_message=str(error),
                attempt=attempt,
                recovery_action=decision.action,
            )
        )
        if decision.action is RecoveryAction.RETRY:
            retry_state.attempt += 1
        elif decision.action is RecoveryAction.MANUAL_INTERVENTION:
            retry_state.manual_intervention_required = True

        logger.info(
            f"Retry decision for flow {flow_id} stage {stage} attempt {attempt}: "
            f"{decision.action.value} ({decision.reason})"
        )
        return decision

    def stats(self) -> dict:
        states = list(self._states.values())
        average = (
            sum(s.total_attempts for s in states) / len(states) if states else 0.0
        )
        return {
            "active_retries": len(states),
            "total_decisions": self._decisions,
            "average_attempts": average,
        }

    def cleanup_expired(self, max_age: float = 3600) -> int:
        """Drop states idle for more than ``max_age`` seconds."""
        cutoff = utcnow() - timedelta(seconds=max_age)
        expired = [
            flow_id
            for flow_id, state in self._states.items()
            if (state.last_activity() or utcnow()) < cutoff
        ]
        for flow_id in expired:
            del self._states[flow_id]
        return len(expired)

    @staticmethod
    def _push_outcome(state: RetryState, failed: bool) -> None:
        state.recent_outcomes.append(failed)
        del state.recent_outcomes[:-RECENT_ATTEMPT_WINDOW]

    @staticmethod
    def _failure_ratio(state: RetryState) -> float:
        recent = state.recent_outcomes[-RECENT_ATTEMPT_WINDOW:]
        return sum(recent) / max(RECENT_ATTEMPT_WINDOW, len(recent))
