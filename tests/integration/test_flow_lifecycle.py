import asyncio

import pytest

from flowpilot.constants import PIPELINE_STAGES
from flowpilot.contracts import (
    EventType,
    FlowStatus,
    QueueStatus,
    Severity,
    StageStatus,
)
from tests.fixtures.collaborators import (
    EchoGenerator,
    FlakyStructuredData,
    GatedGenerator,
    ScriptedExecutor,
    build_collaborators,
    build_orchestrator,
    flow_config,
    wait_for_status,
)

TERMINAL = (FlowStatus.COMPLETED, FlowStatus.FAILED, FlowStatus.CANCELLED)


@pytest.mark.asyncio
async def test_flow_runs_every_stage_and_stores_results():
    collaborators = build_collaborators(structured_data=FlakyStructuredData())
    orchestrator = build_orchestrator(collaborators)
    events = []
    orchestrator.subscribe(events.append)

    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config(qualityThreshold=0.8))
        record = await wait_for_status(orchestrator, flow_id, *TERMINAL)
    finally:
        await orchestrator.stop()

    assert record.status is FlowStatus.COMPLETED
    assert record.current_stage == "completed"
    assert [s.stage for s in record.steps] == list(PIPELINE_STAGES)
    assert all(s.status is StageStatus.COMPLETED for s in record.steps)
    assert record.progress.overall == 100
    assert record.progress.items_processed == 2
    assert record.progress.items_succeeded == 2
    assert record.progress.items_failed == 0
    assert record.resources.total_tokens_used == 20
    assert record.resources.total_api_calls == 2
    assert record.timing.end_time is not None
    assert set(record.timing.stage_timings) == set(PIPELINE_STAGES)

    results = collaborators.sink.results
    assert [r.item_id for r in results] == ["g1", "g2"]
    assert results[0].id == f"{flow_id}_result_0"
    assert results[0].structured_data == {"@type": "VideoGame"}
    assert results[0].quality_score == 1.0

    checkpoint = await orchestrator.checkpoint(flow_id)
    assert checkpoint.stage == "result_storage"

    types = [e.type for e in events]
    assert types[0] is EventType.FLOW_QUEUED
    assert types[-1] is EventType.FLOW_COMPLETED
    assert EventType.CHECKPOINT_SAVED in types
    overall = [e.progress.overall for e in events if e.type is EventType.PROGRESS_UPDATED]
    assert overall == sorted(overall)


@pytest.mark.asyncio
async def test_second_flow_waits_for_single_slot():
    generator = GatedGenerator()
    orchestrator = build_orchestrator(
        build_collaborators(generator=generator), max_concurrent_flows=1
    )
    await orchestrator.start()
    try:
        first = await orchestrator.submit(flow_config(qualityThreshold=0.8))
        second = await orchestrator.submit(flow_config(qualityThreshold=0.8))
        await asyncio.wait_for(generator.started.wait(), 5)

        assert (await orchestrator.status(first)).status is FlowStatus.RUNNING
        assert (await orchestrator.status(second)).status is FlowStatus.PENDING
        queue = await orchestrator.queue_status()
        assert queue["running"] == 1
        assert queue["queued"] == 1
        entries = {e.flow_id: e for e in queue["queue"]}
        assert entries[second].status is QueueStatus.QUEUED

        generator.gate.set()
        done_first = await wait_for_status(orchestrator, first, *TERMINAL)
        done_second = await wait_for_status(orchestrator, second, *TERMINAL)
    finally:
        await orchestrator.stop()

    assert done_first.status is FlowStatus.COMPLETED
    assert done_second.status is FlowStatus.COMPLETED
    assert done_second.timing.start_time >= done_first.timing.end_time


@pytest.mark.asyncio
async def test_flows_start_in_priority_order():
    generator = GatedGenerator()
    orchestrator = build_orchestrator(
        build_collaborators(generator=generator), max_concurrent_flows=1
    )
    started = []

    def on_event(event):
        if event.type is EventType.FLOW_STARTED:
            started.append(event.flow_id)

    orchestrator.subscribe(on_event)
    await orchestrator.start()
    try:
        blocker = await orchestrator.submit(flow_config(), priority=100)
        await asyncio.wait_for(generator.started.wait(), 5)
        low = await orchestrator.submit(flow_config(), priority=10)
        high = await orchestrator.submit(flow_config(), priority=90)
        mid = await orchestrator.submit(flow_config(), priority=50)
        generator.gate.set()
        for flow_id in (low, high, mid):
            await wait_for_status(orchestrator, flow_id, *TERMINAL)
    finally:
        await orchestrator.stop()

    assert started == [blocker, high, mid, low]


@pytest.mark.asyncio
async def test_running_flows_never_exceed_cap():
    generator = GatedGenerator()
    orchestrator = build_orchestrator(
        build_collaborators(generator=generator), max_concurrent_flows=2
    )
    active = set()
    peak = 0

    def on_event(event):
        nonlocal peak
        if event.type is EventType.FLOW_STARTED:
            active.add(event.flow_id)
            peak = max(peak, len(active))
        elif event.type in (EventType.FLOW_COMPLETED, EventType.FLOW_FAILED):
            active.discard(event.flow_id)

    orchestrator.subscribe(on_event)
    await orchestrator.start()
    try:
        ids = [await orchestrator.submit(flow_config()) for _ in range(5)]
        await asyncio.wait_for(generator.started.wait(), 5)
        await asyncio.sleep(0.1)
        running = [
            r for r in await orchestrator.list_all() if r.status is FlowStatus.RUNNING
        ]
        assert len(running) == 2
        generator.gate.set()
        records = [await wait_for_status(orchestrator, i, *TERMINAL) for i in ids]
    finally:
        await orchestrator.stop()

    assert peak == 2
    assert all(r.status is FlowStatus.COMPLETED for r in records)


@pytest.mark.asyncio
async def test_stage_retried_until_success_records_retry_count():
    flaky = ScriptedExecutor(failures=2)
    orchestrator = build_orchestrator(executors={"format_analysis": flaky})
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config(maxRetries=3))
        record = await wait_for_status(orchestrator, flow_id, *TERMINAL)
    finally:
        await orchestrator.stop()

    assert record.status is FlowStatus.COMPLETED
    attempts = [s for s in record.steps if s.stage == "format_analysis"]
    assert [a.status for a in attempts] == [
        StageStatus.FAILED,
        StageStatus.FAILED,
        StageStatus.COMPLETED,
    ]
    assert attempts[-1].retry_count == 2
    assert flaky.calls == 3


@pytest.mark.asyncio
async def test_stage_exhausting_retries_fails_flow():
    broken = ScriptedExecutor(failures=-1)
    orchestrator = build_orchestrator(executors={"format_analysis": broken})
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(
            flow_config(
                maxRetries=2,
                retry={
                    "backoffStrategy": "fixed",
                    "baseDelay": 0,
                    "enableManualIntervention": False,
                },
            )
        )
        record = await wait_for_status(orchestrator, flow_id, *TERMINAL)
    finally:
        await orchestrator.stop()

    assert record.status is FlowStatus.FAILED
    state = orchestrator.retry_state(flow_id)
    assert len(state.failure_history) == 3
    assert not state.manual_intervention_required
    assert not record.metadata.awaiting_intervention
    assert record.errors[-1].severity is Severity.CRITICAL
    assert record.errors[-1].stage == "format_analysis"
    assert broken.calls == 3
    assert record.latest_attempt().status is StageStatus.FAILED


@pytest.mark.asyncio
async def test_non_retryable_failure_aborts_without_retry():
    orchestrator = build_orchestrator()
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config(workflowId="unknown"))
        record = await wait_for_status(orchestrator, flow_id, *TERMINAL)
    finally:
        await orchestrator.stop()

    assert record.status is FlowStatus.FAILED
    assert len(record.steps) == 1
    assert "Workflow not found" in record.metadata.failure_reason


@pytest.mark.asyncio
async def test_cancel_queued_flow_never_runs():
    generator = GatedGenerator()
    orchestrator = build_orchestrator(
        build_collaborators(generator=generator), max_concurrent_flows=1
    )
    await orchestrator.start()
    try:
        first = await orchestrator.submit(flow_config())
        second = await orchestrator.submit(flow_config())
        await asyncio.wait_for(generator.started.wait(), 5)
        events = []
        orchestrator.subscribe(events.append, second)

        assert await orchestrator.cancel(second) is True
        cancelled = await orchestrator.status(second)
        assert cancelled.status is FlowStatus.CANCELLED
        assert cancelled.steps == []

        generator.gate.set()
        await wait_for_status(orchestrator, first, *TERMINAL)
        await asyncio.sleep(0.1)
        after = await orchestrator.status(second)
        queue = await orchestrator.queue_status()
    finally:
        await orchestrator.stop()

    assert after.status is FlowStatus.CANCELLED
    assert after.steps == []
    assert [e.type for e in events] == [EventType.FLOW_CANCELLED]
    assert second not in [e.flow_id for e in queue["queue"]]


@pytest.mark.asyncio
async def test_structured_data_stage_skipped_when_disabled():
    collaborators = build_collaborators(structured_data=FlakyStructuredData())
    orchestrator = build_orchestrator(collaborators)
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config(enableStructuredData=False))
        record = await wait_for_status(orchestrator, flow_id, *TERMINAL)
    finally:
        await orchestrator.stop()

    assert record.status is FlowStatus.COMPLETED
    skipped = record.latest_attempt("structured_data_generation")
    assert skipped.status is StageStatus.SKIPPED
    assert all(r.structured_data is None for r in collaborators.sink.results)


@pytest.mark.asyncio
async def test_partial_item_failures_are_recorded():
    collaborators = build_collaborators(generator=EchoGenerator(fail_ids={"g2"}))
    orchestrator = build_orchestrator(collaborators)
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config(gameDataIds=["g1", "g2", "g3"]))
        record = await wait_for_status(orchestrator, flow_id, *TERMINAL)
    finally:
        await orchestrator.stop()

    assert record.status is FlowStatus.COMPLETED
    assert record.progress.items_total == 3
    assert record.progress.items_succeeded == 2
    assert record.progress.items_failed == 1
    item_errors = [e for e in record.errors if e.item_id == "g2"]
    assert len(item_errors) == 1
    assert item_errors[0].severity is Severity.ERROR
    assert item_errors[0].stage == "content_generation"
    assert [r.item_id for r in collaborators.sink.results] == ["g1", "g3"]


@pytest.mark.asyncio
async def test_missing_items_count_as_failed():
    orchestrator = build_orchestrator()
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config(gameDataIds=["g1", "g9"]))
        record = await wait_for_status(orchestrator, flow_id, *TERMINAL)
    finally:
        await orchestrator.stop()

    assert record.status is FlowStatus.COMPLETED
    assert record.progress.items_processed == 2
    assert record.progress.items_failed == 1
    assert [e.item_id for e in record.errors] == ["g9"]


@pytest.mark.asyncio
async def test_all_items_failing_fails_the_stage():
    collaborators = build_collaborators(generator=EchoGenerator(fail_ids={"g1", "g2"}))
    orchestrator = build_orchestrator(collaborators)
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config(maxRetries=1))
        record = await wait_for_status(orchestrator, flow_id, *TERMINAL)
    finally:
        await orchestrator.stop()

    assert record.status is FlowStatus.FAILED
    attempts = [s for s in record.steps if s.stage == "content_generation"]
    assert len(attempts) == 2
    assert "All 2 items failed" in record.metadata.failure_reason


class SlowItemGenerator(EchoGenerator):
    async def generate(self, items, workflow, concurrency):
        if items[0].id == "g2":
            await asyncio.sleep(1)
        return await super().generate(items, workflow, concurrency)


@pytest.mark.asyncio
async def test_per_item_timeout_fails_only_that_item():
    orchestrator = build_orchestrator(build_collaborators(generator=SlowItemGenerator()))
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config(timeout={"perGame": 50}))
        record = await wait_for_status(orchestrator, flow_id, *TERMINAL)
    finally:
        await orchestrator.stop()

    assert record.status is FlowStatus.COMPLETED
    assert record.progress.items_failed == 1
    timed_out = [e for e in record.errors if e.item_id == "g2"]
    assert "timed out" in timed_out[0].message


@pytest.mark.asyncio
async def test_total_timeout_fails_flow():
    generator = GatedGenerator()
    orchestrator = build_orchestrator(build_collaborators(generator=generator))
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(flow_config(timeout={"total": 200}))
        record = await wait_for_status(orchestrator, flow_id, *TERMINAL)
    finally:
        await orchestrator.stop()

    assert record.status is FlowStatus.FAILED
    assert record.errors[-1].severity is Severity.CRITICAL
    assert record.metadata.failure_reason == "Flow exceeded total timeout"
    assert record.latest_attempt("content_generation").status is StageStatus.FAILED


@pytest.mark.asyncio
async def test_disabled_notifications_suppress_events():
    flaky = ScriptedExecutor(failures=1)
    orchestrator = build_orchestrator(executors={"format_analysis": flaky})
    events = []
    orchestrator.subscribe(events.append)
    await orchestrator.start()
    try:
        flow_id = await orchestrator.submit(
            flow_config(
                notifications={"enableProgressUpdates": False, "enableErrorAlerts": False}
            )
        )
        record = await wait_for_status(orchestrator, flow_id, *TERMINAL)
    finally:
        await orchestrator.stop()

    assert record.status is FlowStatus.COMPLETED
    types = {e.type for e in events}
    assert EventType.PROGRESS_UPDATED not in types
    assert EventType.STAGE_FAILED not in types
    assert EventType.STAGE_RETRY in types
    assert EventType.STAGE_COMPLETED in types
