from __future__ import annotations

import asyncio

import pytest

from taskstream.config import TaskManagerConfig
from taskstream.errors import StartTimeoutError, TransportError
from taskstream.manager import TaskManager
from taskstream.models import ResumeParams, TaskKind, TaskResult, TaskStatus
from taskstream.telemetry import RecordingTaskOutcomeSink


def _config(**overrides) -> TaskManagerConfig:
    return TaskManagerConfig(gc_enabled=False, **overrides)


async def _settle(manager: TaskManager) -> None:
    """Let scheduled telemetry and runner tasks run."""
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_scenario_stream_to_completion(make_stream) -> None:
    manager = TaskManager(config=_config())
    task_id = await manager.create_task("general_query", "Demo")
    assert (await manager.get_task(task_id)).status is TaskStatus.PENDING

    stream = make_stream(
        b'data: {"type":"step","content":"Phase A"}\n\n',
        b'data: {"type":"content","content":"Hello "}\n\n',
        b'data: {"type":"content","content":"World"}\n\n',
        b'data: {"type":"complete"}\n\n',
    )
    final = await manager.start_streaming(task_id, stream)

    assert final.status is TaskStatus.COMPLETED
    assert final.result.content == "Hello World"
    assert final.result.steps == ["Phase A"]
    assert final.result.is_complete is True
    assert final.estimated_progress == 100
    await manager.close()


@pytest.mark.asyncio
async def test_resume_on_completed_task_is_a_noop(make_stream, make_producer) -> None:
    producer = make_producer()
    manager = TaskManager(producer=producer, config=_config())
    task_id = await manager.create_task("general_query", "Demo", {"query": "q"})
    stream = make_stream(b'data: {"type":"content","content":"done"}\n\n', b'data: {"type":"complete"}\n\n')
    await manager.start_streaming(task_id, stream)
    before = await manager.get_task(task_id)

    assert await manager.resume(task_id) is False

    after = await manager.get_task(task_id)
    assert after == before
    assert producer.calls == []
    await manager.close()


@pytest.mark.asyncio
async def test_start_streaming_rejects_non_pending_task(make_stream) -> None:
    manager = TaskManager(config=_config())
    task_id = await manager.create_task("general_query", "Demo")
    await manager.start_streaming(task_id, make_stream(b'data: {"type":"complete"}\n\n'))

    second = make_stream()
    assert await manager.start_streaming(task_id, second) is None
    assert second.closed
    assert await manager.start_streaming("missing", make_stream()) is None
    await manager.close()


@pytest.mark.asyncio
async def test_pause_silences_updates_and_keeps_partial_result(make_stream) -> None:
    sink = RecordingTaskOutcomeSink()
    manager = TaskManager(config=_config(), telemetry_sink=sink)
    updates: list[str] = []
    task_id = await manager.create_task("ps_draft", "Draft", ResumeParams(query="write"))
    stream = make_stream()
    stream.record("content", "Partial")
    first_update = asyncio.Event()

    def on_update(result: TaskResult) -> None:
        updates.append(result.content)
        first_update.set()

    driver = asyncio.create_task(manager.start_streaming(task_id, stream, on_update=on_update))
    await asyncio.wait_for(first_update.wait(), 1)

    assert await manager.pause(task_id) is True
    stream.record("content", " more")
    stream.record("complete")

    assert await driver is None
    snapshot = await manager.get_task(task_id)
    assert snapshot.status is TaskStatus.PAUSED
    assert snapshot.result.content == "Partial"
    assert snapshot.end_time is None
    assert updates == ["Partial"]
    assert stream.closed
    await _settle(manager)
    assert sink.outcomes(task_id) == ["paused"]
    await manager.close()


@pytest.mark.asyncio
async def test_pause_outside_streaming_is_rejected() -> None:
    manager = TaskManager(config=_config())
    task_id = await manager.create_task("general_query", "Demo")

    assert await manager.pause(task_id) is False
    assert await manager.pause("missing") is False
    assert (await manager.get_task(task_id)).status is TaskStatus.PENDING


@pytest.mark.asyncio
async def test_resume_reissues_request_and_merges_into_same_record(make_stream, make_producer) -> None:
    replay = make_stream()
    replay.record("content", "Partial answer")
    replay.record("complete")
    producer = make_producer(replay)
    completed = asyncio.Event()
    manager = TaskManager(producer=producer, config=_config())
    params = ResumeParams(query="explain", files=["a.pdf"])
    task_id = await manager.create_task("general_query", "Demo", params)

    first = make_stream()
    first.record("content", "Partial")
    seen = asyncio.Event()
    driver = asyncio.create_task(
        manager.start_streaming(
            task_id,
            first,
            on_update=lambda _result: seen.set(),
            on_complete=lambda _result: completed.set(),
        )
    )
    await asyncio.wait_for(seen.wait(), 1)
    await manager.pause(task_id)
    await driver

    assert await manager.resume(task_id) is True
    await asyncio.wait_for(completed.wait(), 1)

    snapshot = await manager.wait(task_id)
    assert producer.calls == [params]
    assert snapshot.status is TaskStatus.COMPLETED
    assert snapshot.result.content == "Partial answer"
    assert snapshot.generation == 2
    await manager.close()


@pytest.mark.asyncio
async def test_resume_requires_resume_params(make_stream, make_producer) -> None:
    producer = make_producer()
    manager = TaskManager(producer=producer, config=_config())
    task_id = await manager.create_task("general_query", "Demo")
    stream = make_stream()
    stream.record("content", "x")
    driver = asyncio.create_task(manager.start_streaming(task_id, stream))
    await asyncio.sleep(0.01)
    await manager.pause(task_id)
    await driver

    assert await manager.resume(task_id) is False
    assert (await manager.get_task(task_id)).status is TaskStatus.PAUSED
    assert producer.calls == []


@pytest.mark.asyncio
async def test_resume_timeout_marks_task_as_error(make_stream, make_producer) -> None:
    producer = make_producer(make_stream(), delay=1.0)
    errors: list[Exception] = []
    manager = TaskManager(producer=producer, config=_config(start_timeout_s=0.02))
    task_id = await manager.create_task("general_query", "Demo", {"query": "q"})
    stream = make_stream()
    stream.record("content", "x")
    driver = asyncio.create_task(manager.start_streaming(task_id, stream, on_error=errors.append))
    await asyncio.sleep(0.01)
    await manager.pause(task_id)
    await driver

    assert await manager.resume(task_id) is False

    snapshot = await manager.get_task(task_id)
    assert snapshot.status is TaskStatus.ERROR
    assert "timed out" in snapshot.error
    assert isinstance(errors[0], StartTimeoutError)
    await manager.close()


@pytest.mark.asyncio
async def test_start_task_runs_in_background(make_stream, make_producer) -> None:
    stream = make_stream()
    stream.record("content", "Hello")
    stream.record("complete")
    manager = TaskManager(producer=make_producer(stream), config=_config())

    task_id = await manager.start_task(TaskKind.CV_GENERATION, "CV", {"query": "cv"})
    snapshot = await manager.wait(task_id)

    assert snapshot.status is TaskStatus.COMPLETED
    assert snapshot.kind is TaskKind.CV_GENERATION
    assert snapshot.result.content == "Hello"
    await manager.close()


@pytest.mark.asyncio
async def test_start_task_producer_failure_reports_error(make_producer) -> None:
    errors: list[Exception] = []
    manager = TaskManager(producer=make_producer(), config=_config())

    task_id = await manager.start_task("general_query", "Demo", {"query": "q"}, on_error=errors.append)

    snapshot = await manager.get_task(task_id)
    assert snapshot.status is TaskStatus.ERROR
    assert "no stream scripted" in snapshot.error
    assert isinstance(errors[0], TransportError)
    await manager.close()


@pytest.mark.asyncio
async def test_foreground_task_is_cleaned_up_after_delay(make_stream, make_producer) -> None:
    stream = make_stream()
    stream.record("complete")
    manager = TaskManager(producer=make_producer(stream), config=_config(cleanup_delay_s=0.01))

    task_id = await manager.start_task("general_query", "Demo", {"query": "q"}, background=False)
    await manager.wait(task_id)
    assert await manager.get_task(task_id) is not None

    await asyncio.sleep(0.05)
    assert await manager.get_task(task_id) is None
    await manager.close()


@pytest.mark.asyncio
async def test_stop_removes_task_in_any_state(make_stream) -> None:
    sink = RecordingTaskOutcomeSink()
    manager = TaskManager(config=_config(), telemetry_sink=sink)
    streaming_id = await manager.create_task("general_query", "a")
    pending_id = await manager.create_task("general_query", "b")
    stream = make_stream()
    driver = asyncio.create_task(manager.start_streaming(streaming_id, stream))
    await asyncio.sleep(0.01)

    assert await manager.stop(streaming_id) is True
    assert await manager.stop(pending_id) is True
    assert await manager.stop("missing") is False

    assert await driver is None
    assert await manager.get_task(streaming_id) is None
    assert await manager.list_active() == []
    stream.record("content", "late")
    await _settle(manager)
    assert sink.outcomes(streaming_id) == ["stopped"]
    await manager.close()


@pytest.mark.asyncio
async def test_list_active_and_has_active_streaming(make_stream) -> None:
    manager = TaskManager(config=_config())
    first = await manager.create_task("ps_draft", "a")
    await manager.create_task("cv_generation", "b")
    assert await manager.has_active_streaming() is False

    driver = asyncio.create_task(manager.start_streaming(first, make_stream()))
    await asyncio.sleep(0.01)

    assert await manager.has_active_streaming() is True
    drafts = await manager.list_active(kind="ps_draft")
    assert [snapshot.task_id for snapshot in drafts] == [first]
    assert len(await manager.list_active(status=TaskStatus.PENDING)) == 1

    await manager.close()
    with pytest.raises(asyncio.CancelledError):
        await driver
    assert (await manager.get_task(first)).status is TaskStatus.ERROR


@pytest.mark.asyncio
async def test_update_task_result(make_stream) -> None:
    manager = TaskManager(config=_config())
    task_id = await manager.create_task("general_query", "Demo")

    assert await manager.update_task_result(task_id, {"content": "edited", "steps": ["x"]}) is True
    assert (await manager.get_task(task_id)).result.content == "edited"
    assert await manager.update_task_result(task_id, TaskResult(content="e")) is False
    assert await manager.update_task_result("missing", TaskResult()) is False


@pytest.mark.asyncio
async def test_collector_sweeps_finished_tasks_only(clock, make_stream) -> None:
    sink = RecordingTaskOutcomeSink()
    manager = TaskManager(config=_config(task_ttl_s=60), clock=clock, telemetry_sink=sink)
    done_id = await manager.create_task("general_query", "done")
    await manager.start_streaming(done_id, make_stream(b'data: {"type":"complete"}\n\n'))
    pending_id = await manager.create_task("general_query", "waiting")

    clock.advance(61)
    removed = await manager.collector.sweep()

    assert [snapshot.task_id for snapshot in removed] == [done_id]
    assert await manager.get_task(pending_id) is not None
    await _settle(manager)
    assert sink.outcomes(done_id) == ["completed", "collected"]
    await manager.close()


@pytest.mark.asyncio
async def test_context_manager_starts_and_stops_collector() -> None:
    async with TaskManager(config=TaskManagerConfig(gc_interval_s=60)) as manager:
        assert manager.collector.running
    assert not manager.collector.running


@pytest.mark.asyncio
async def test_close_releases_runner_left_behind_by_cooperative_pause(make_stream, make_producer) -> None:
    replay = make_stream()
    manager = TaskManager(producer=make_producer(replay), config=_config(preemptive_cancel=False))
    task_id = await manager.create_task("general_query", "Demo", {"query": "q"})
    first = make_stream()
    first.record("content", "Partial")
    seen = asyncio.Event()
    driver = asyncio.create_task(manager.start_streaming(task_id, first, on_update=lambda _result: seen.set()))
    await asyncio.wait_for(seen.wait(), 1)

    assert await manager.pause(task_id) is True
    assert await manager.resume(task_id) is True
    await asyncio.sleep(0.01)
    assert not driver.done()

    await manager.close()

    assert await asyncio.wait_for(driver, 1) is None
    assert first.closed
    assert replay.closed
    snapshot = await manager.get_task(task_id)
    assert snapshot.result.content == "Partial"
