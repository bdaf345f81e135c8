import asyncio
from datetime import timedelta

import pytest

from flowpilot.constants import PIPELINE_STAGES
from flowpilot.contracts import EventType, FlowStatus, Severity, StageStatus
from flowpilot.errors import FlowNotFoundError, InterventionError, StageExecutionError
from flowpilot.config import FlowpilotConfig, SchedulerConfig
from flowpilot.models import RecoveryAction, utcnow
from flowpilot.orchestrator import Orchestrator
from flowpilot.persistence import InMemoryKeyValueStore
from tests.fixtures.collaborators import (
    BlockingExecutor,
    GatedGenerator,
    ScriptedExecutor,
    build_collaborators,
    build_orchestrator,
    flow_config,
    no_sleep,
    wait_for_status,
)

TERMINAL = (FlowStatus.COMPLETED, FlowStatus.FAILED, FlowStatus.CANCELLED)


async def wait_until_idle(orchestrator, flow_id: str, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while orchestrator.scheduler.is_active(flow_id):
        assert loop.time() < deadline, f"runner for {flow_id} never stopped"
        await asyncio.sleep(0.01)


@pytest.fixture
def gated():
    generator = GatedGenerator()
    collaborators = build_collaborators(generator=generator)
    return build_orchestrator(collaborators), generator, collaborators


@pytest.mark.asyncio
async def test_pause_stops_at_stage_boundary_and_resume_continues(gated):
    orchestrator, generator, _ = gated
    events = []
    orchestrator.subscribe(events.append)
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config())
        await asyncio.wait_for(generator.started.wait(), 5)

        assert await orchestrator.pause(flow_id) is True
        assert (await orchestrator.status(flow_id)).status is FlowStatus.PAUSED
        assert await orchestrator.pause(flow_id) is False

        generator.gate.set()
        await wait_until_idle(orchestrator, flow_id)
        paused = await orchestrator.status(flow_id)
        assert paused.status is FlowStatus.PAUSED
        assert paused.latest_attempt().stage == "content_generation"
        assert paused.latest_attempt().status is StageStatus.COMPLETED
        assert paused.progress.overall == 75

        assert await orchestrator.resume(flow_id) is True
        resumed = await orchestrator.status(flow_id)
        assert resumed.status in (FlowStatus.RUNNING, FlowStatus.COMPLETED)
        assert resumed.progress.overall >= paused.progress.overall
        done = await wait_for_status(orchestrator, flow_id, *TERMINAL)
    finally:
        await orchestrator.stop()

    assert done.status is FlowStatus.COMPLETED
    assert done.steps[: len(paused.steps)] == paused.steps
    assert [s.stage for s in done.steps] == list(PIPELINE_STAGES)
    assert len(generator.calls) == 2
    types = [e.type for e in events]
    assert types.index(EventType.FLOW_PAUSED) < types.index(EventType.FLOW_RESUMED)


@pytest.mark.asyncio
async def test_resume_before_runner_stops_keeps_running(gated):
    orchestrator, generator, _ = gated
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config())
        await asyncio.wait_for(generator.started.wait(), 5)

        assert await orchestrator.pause(flow_id) is True
        assert await orchestrator.resume(flow_id) is True
        assert (await orchestrator.status(flow_id)).status is FlowStatus.RUNNING
        assert await orchestrator.resume(flow_id) is False

        generator.gate.set()
        done = await wait_for_status(orchestrator, flow_id, *TERMINAL)
    finally:
        await orchestrator.stop()

    assert done.status is FlowStatus.COMPLETED
    assert len([s for s in done.steps if s.stage == "content_generation"]) == 1


@pytest.mark.asyncio
async def test_cancel_running_flow_stops_cooperatively(gated):
    orchestrator, generator, collaborators = gated
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config())
        await asyncio.wait_for(generator.started.wait(), 5)

        assert await orchestrator.cancel(flow_id) is True
        cancelled = await orchestrator.status(flow_id)
        assert cancelled.status is FlowStatus.CANCELLED
        assert cancelled.timing.end_time is not None

        generator.gate.set()
        await wait_until_idle(orchestrator, flow_id)
        after = await orchestrator.status(flow_id)
        assert await orchestrator.cancel(flow_id) is False
    finally:
        await orchestrator.stop()

    assert after.status is FlowStatus.CANCELLED
    assert after.latest_attempt("result_storage") is None
    assert collaborators.sink.results == []


@pytest.mark.asyncio
async def test_control_operations_on_unknown_flow():
    orchestrator = build_orchestrator()
    await orchestrator.start()
    try:
        for operation in (
            orchestrator.pause,
            orchestrator.resume,
            orchestrator.cancel,
            orchestrator.recover,
        ):
            with pytest.raises(FlowNotFoundError):
                await operation("flow_missing")
        with pytest.raises(FlowNotFoundError):
            await orchestrator.resolve_intervention("flow_missing", "abort")
        assert await orchestrator.delete("flow_missing") is False
        assert await orchestrator.status("flow_missing") is None
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_delete_is_idempotent_and_removes_checkpoint():
    orchestrator = build_orchestrator()
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config())
        await wait_for_status(orchestrator, flow_id, *TERMINAL)
        assert await orchestrator.checkpoint(flow_id) is not None

        assert await orchestrator.delete(flow_id) is True
        assert await orchestrator.status(flow_id) is None
        assert await orchestrator.checkpoint(flow_id) is None
        assert await orchestrator.delete(flow_id) is False
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_delete_running_flow(gated):
    orchestrator, generator, _ = gated
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config())
        await asyncio.wait_for(generator.started.wait(), 5)

        assert await orchestrator.delete(flow_id) is True
        generator.gate.set()
        await wait_until_idle(orchestrator, flow_id)
        assert await orchestrator.status(flow_id) is None
        assert await orchestrator.checkpoint(flow_id) is None
        assert await orchestrator.list_all() == []
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_resolve_requires_awaiting_flow():
    orchestrator = build_orchestrator()
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config())
        await wait_for_status(orchestrator, flow_id, *TERMINAL)
        with pytest.raises(InterventionError):
            await orchestrator.resolve_intervention(flow_id, "skip_validation")
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_summary_counts_by_status(gated):
    orchestrator, generator, _ = gated
    await orchestrator.start()
    try:
        running = await orchestrator.submit(flow_config())
        await asyncio.wait_for(generator.started.wait(), 5)
        cancelled = await orchestrator.submit(flow_config())
        await orchestrator.cancel(cancelled)

        summary = await orchestrator.summary()
        assert summary["total_flows"] == 2
        assert summary["by_status"]["cancelled"] == 1
        assert summary["by_status"]["running"] + summary["by_status"]["pending"] == 1
        assert summary["max_concurrent_flows"] == 3

        generator.gate.set()
        await wait_for_status(orchestrator, running, *TERMINAL)
        await wait_until_idle(orchestrator, running)
        await wait_until_idle(orchestrator, cancelled)
        summary = await orchestrator.summary()
        assert summary["by_status"]["completed"] == 1
        assert summary["active_runners"] == 0
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_failure_while_paused_without_retries_fails_flow():
    blocker = BlockingExecutor(error=StageExecutionError("boom while paused"))
    orchestrator = build_orchestrator(executors={"format_analysis": blocker})
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config(maxRetries=0))
        await asyncio.wait_for(blocker.started.wait(), 5)
        assert await orchestrator.pause(flow_id) is True

        blocker.gate.set()
        record = await wait_for_status(orchestrator, flow_id, FlowStatus.FAILED)
    finally:
        await orchestrator.stop()

    assert record.latest_attempt().status is StageStatus.FAILED
    assert record.errors[-1].message == "boom while paused"
    assert record.errors[-1].severity is Severity.CRITICAL
    history = orchestrator.retry_state(flow_id).failure_history
    assert [f.recovery_action for f in history] == [RecoveryAction.ABORT]


@pytest.mark.asyncio
async def test_failure_while_paused_retries_after_resume():
    blocker = BlockingExecutor(error=StageExecutionError("boom while paused"))
    orchestrator = build_orchestrator(executors={"format_analysis": blocker})
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config(maxRetries=2))
        await asyncio.wait_for(blocker.started.wait(), 5)
        assert await orchestrator.pause(flow_id) is True

        blocker.gate.set()
        await wait_until_idle(orchestrator, flow_id)
        paused = await orchestrator.status(flow_id)
        assert paused.status is FlowStatus.PAUSED
        assert paused.latest_attempt().status is StageStatus.FAILED
        history = orchestrator.retry_state(flow_id).failure_history
        assert [f.recovery_action for f in history] == [RecoveryAction.RETRY]

        assert await orchestrator.resume(flow_id) is True
        done = await wait_for_status(orchestrator, flow_id, *TERMINAL)
    finally:
        await orchestrator.stop()

    assert done.status is FlowStatus.COMPLETED
    attempts = [s for s in done.steps if s.stage == "format_analysis"]
    assert [a.status for a in attempts] == [StageStatus.FAILED, StageStatus.COMPLETED]
    assert attempts[-1].retry_count == 1
    assert blocker.calls == 2


@pytest.mark.asyncio
async def test_cancel_mid_stage_marks_attempt_skipped():
    blocker = BlockingExecutor()
    orchestrator = build_orchestrator(executors={"format_analysis": blocker})
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config())
        await asyncio.wait_for(blocker.started.wait(), 5)
        assert await orchestrator.cancel(flow_id) is True

        blocker.gate.set()
        await wait_until_idle(orchestrator, flow_id)
        record = await orchestrator.status(flow_id)
    finally:
        await orchestrator.stop()

    assert record.status is FlowStatus.CANCELLED
    attempt = record.latest_attempt()
    assert attempt.stage == "format_analysis"
    assert attempt.status is StageStatus.SKIPPED
    assert attempt.message == "Flow cancelled during stage"
    assert attempt.error is None


@pytest.mark.asyncio
async def test_idle_retry_state_is_swept_and_reported():
    config = FlowpilotConfig(
        scheduler=SchedulerConfig(
            tick_interval=0.05, retry_cleanup_interval=0.05, retry_state_max_age=3600
        )
    )
    orchestrator = Orchestrator(
        build_collaborators(),
        config=config,
        store=InMemoryKeyValueStore(),
        executors={"format_analysis": ScriptedExecutor(failures=-1)},
        sleep=no_sleep,
    )
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config(maxRetries=0))
        await wait_for_status(orchestrator, flow_id, FlowStatus.FAILED)
        summary = await orchestrator.summary()
        assert summary["retry"]["active_retries"] == 1
        assert summary["retry"]["total_decisions"] == 1

        state = orchestrator.retry_state(flow_id)
        state.failure_history[-1].timestamp = utcnow() - timedelta(hours=2)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 5
        while orchestrator.retry_state(flow_id) is not None:
            assert loop.time() < deadline, "retry state never swept"
            await asyncio.sleep(0.02)
    finally:
        await orchestrator.stop()

    assert (await orchestrator.summary())["retry"]["active_retries"] == 0
