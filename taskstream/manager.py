"""Control surface for streaming generation tasks.

``TaskManager`` is the object consumers hold: it creates tasks, binds streams
to them, and exposes pause/resume/stop on top of the registry.

Pausing cannot suspend a network read; it stops processing and discards the
stream. Resuming cannot continue that stream either; it calls the producer
again with the task's resume parameters and binds a fresh runner to the same
record, whose merge policy keeps the visible result idempotent.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from typing import Any

from .accumulator import ContentAccumulator
from .collector import GarbageCollector
from .config import TaskManagerConfig
from .errors import InvalidTransitionError, StartTimeoutError, TaskNotFoundError, TaskStreamError, TransportError
from .models import ResumeParams, TaskKind, TaskRecordModel, TaskResult, TaskStatus
from .producer import Producer, StreamHandle, release_stream
from .registry import Clock, TaskRegistry
from .runner import ErrorCallback, TaskCallbacks, TaskRunner, UpdateCallback, invoke_callback
from .telemetry import NoOpTaskOutcomeSink, Outcome, TaskOutcomeEvent, TaskOutcomeSink

logger = logging.getLogger("taskstream.manager")


def _coerce_params(params: ResumeParams | Mapping[str, Any] | None) -> ResumeParams | None:
    if params is None or isinstance(params, ResumeParams):
        return params
    return ResumeParams.model_validate(dict(params))


class TaskManager:
    def __init__(
        self,
        *,
        producer: Producer | None = None,
        config: TaskManagerConfig | None = None,
        registry: TaskRegistry | None = None,
        telemetry_sink: TaskOutcomeSink | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._config = config or TaskManagerConfig()
        self._clock = clock or time.time
        self._registry = registry or TaskRegistry(clock=self._clock)
        self._producer = producer
        self._telemetry = telemetry_sink or NoOpTaskOutcomeSink()
        self._accumulator = ContentAccumulator(self._config.merge)
        self._collector = GarbageCollector(
            self._registry,
            ttl_s=self._config.task_ttl_s,
            interval_s=self._config.gc_interval_s,
            clock=self._clock,
            on_sweep=self._on_sweep,
        )
        self._callbacks: dict[str, TaskCallbacks] = {}
        self._runners: dict[str, asyncio.Task[TaskRecordModel | None]] = {}
        # Runners replaced by a resume while still blocked on a read (no preemption).
        self._retired: set[asyncio.Task[TaskRecordModel | None]] = set()
        self._resuming: set[str] = set()
        self._ephemeral: set[str] = set()
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def registry(self) -> TaskRegistry:
        return self._registry

    @property
    def config(self) -> TaskManagerConfig:
        return self._config

    @property
    def collector(self) -> GarbageCollector:
        return self._collector

    async def __aenter__(self) -> TaskManager:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def start(self) -> None:
        if self._config.gc_enabled:
            self._collector.start()

    async def close(self) -> None:
        await self._collector.stop()
        runners = [*self._runners.values(), *self._retired]
        for runner in runners:
            runner.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
        background = list(self._background)
        for task in background:
            task.cancel()
        if background:
            await asyncio.gather(*background, return_exceptions=True)
        self._runners.clear()
        self._retired.clear()
        self._background.clear()

    # -- creation -----------------------------------------------------------------

    async def create_task(
        self,
        kind: TaskKind | str,
        title: str,
        resume_params: ResumeParams | Mapping[str, Any] | None = None,
    ) -> str:
        snapshot = await self._registry.create(kind, title, _coerce_params(resume_params))
        logger.info(
            "task_created",
            extra={"task_id": snapshot.task_id, "kind": str(getattr(snapshot.kind, "value", snapshot.kind))},
        )
        return snapshot.task_id

    async def start_streaming(
        self,
        task_id: str,
        stream: StreamHandle,
        on_update: UpdateCallback | None = None,
        on_complete: UpdateCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> TaskRecordModel | None:
        """Bind ``stream`` to a PENDING task and drive it to its end.

        Returns the terminal snapshot, or ``None`` when the task was paused,
        stopped or could not be started. The runner keeps going if the caller
        is cancelled while waiting.
        """
        callbacks = TaskCallbacks(on_update=on_update, on_complete=on_complete, on_error=on_error)
        runner = await self._launch(task_id, stream, callbacks, expected=TaskStatus.PENDING)
        if runner is None:
            return None
        return await asyncio.shield(runner)

    async def start_task(
        self,
        kind: TaskKind | str,
        title: str,
        resume_params: ResumeParams | Mapping[str, Any],
        *,
        on_update: UpdateCallback | None = None,
        on_complete: UpdateCallback | None = None,
        on_error: ErrorCallback | None = None,
        background: bool = True,
    ) -> str:
        """Create a task, obtain its stream from the producer and run it in the background.

        With ``background=False`` the task is cleaned up ``cleanup_delay_s``
        after it completes.
        """
        params = _coerce_params(resume_params)
        task_id = await self.create_task(kind, title, params)
        callbacks = TaskCallbacks(on_update=on_update, on_complete=on_complete, on_error=on_error)
        self._callbacks[task_id] = callbacks
        if not background:
            self._ephemeral.add(task_id)
        try:
            stream = await self._open_stream(params, task_id)  # type: ignore[arg-type]
        except TaskStreamError as exc:
            await self._fail_start(task_id, exc)
            return task_id
        await self._launch(task_id, stream, callbacks, expected=TaskStatus.PENDING)
        return task_id

    # -- control ------------------------------------------------------------------

    async def pause(self, task_id: str) -> bool:
        snapshot = await self._registry.pause(task_id)
        if snapshot is None:
            current = await self._registry.get(task_id)
            logger.warning(
                "task_pause_rejected",
                extra={"task_id": task_id, "status": current.status.value if current else None},
            )
            return False
        logger.info(
            "task_paused",
            extra={"task_id": task_id, "content_length": len(snapshot.result.content)},
        )
        self._emit("paused", snapshot)
        return True

    async def resume(self, task_id: str) -> bool:
        snapshot = await self._registry.get(task_id)
        if snapshot is None or snapshot.status != TaskStatus.PAUSED or snapshot.resume_params is None:
            logger.warning(
                "task_resume_rejected",
                extra={
                    "task_id": task_id,
                    "status": snapshot.status.value if snapshot else None,
                    "has_resume_params": bool(snapshot and snapshot.resume_params),
                },
            )
            return False
        if self._producer is None:
            logger.warning("task_resume_rejected", extra={"task_id": task_id, "reason": "no_producer"})
            return False
        if task_id in self._resuming:
            logger.warning("task_resume_rejected", extra={"task_id": task_id, "reason": "already_resuming"})
            return False

        self._resuming.add(task_id)
        try:
            try:
                stream = await self._open_stream(snapshot.resume_params, task_id)
            except TaskStreamError as exc:
                await self._fail_start(task_id, exc)
                return False
            callbacks = self._callbacks.get(task_id) or TaskCallbacks()
            runner = await self._launch(task_id, stream, callbacks, expected=TaskStatus.PAUSED)
        finally:
            self._resuming.discard(task_id)
        if runner is None:
            return False
        logger.info("task_resumed", extra={"task_id": task_id})
        resumed = await self._registry.get(task_id)
        if resumed is not None:
            self._emit("resumed", resumed)
        return True

    async def stop(self, task_id: str) -> bool:
        snapshot = await self._remove(task_id, reason="stopped")
        if snapshot is None:
            logger.warning("task_stop_unknown", extra={"task_id": task_id})
            return False
        logger.info("task_stopped", extra={"task_id": task_id, "status": snapshot.status.value})
        self._emit("stopped", snapshot)
        return True

    async def cleanup(self, task_id: str) -> bool:
        snapshot = await self._remove(task_id, reason="cleanup")
        if snapshot is None:
            return False
        logger.debug("task_cleaned_up", extra={"task_id": task_id, "status": snapshot.status.value})
        return True

    async def update_task_result(self, task_id: str, result: TaskResult | Mapping[str, Any]) -> bool:
        """Overwrite a task's result computed outside the decode path."""
        if not isinstance(result, TaskResult):
            result = TaskResult.model_validate(dict(result))
        try:
            await self._registry.replace_result(task_id, result)
        except TaskNotFoundError:
            logger.warning("task_result_update_unknown", extra={"task_id": task_id})
            return False
        except ValueError as exc:
            logger.warning("task_result_update_rejected", extra={"task_id": task_id, "reason": str(exc)})
            return False
        return True

    # -- reads --------------------------------------------------------------------

    async def get_task(self, task_id: str) -> TaskRecordModel | None:
        return await self._registry.get(task_id)

    async def list_active(
        self,
        *,
        kind: TaskKind | str | None = None,
        status: TaskStatus | None = None,
    ) -> list[TaskRecordModel]:
        return await self._registry.list_active(kind=kind, status=status)

    async def has_active_streaming(self) -> bool:
        return bool(await self._registry.list_active(status=TaskStatus.STREAMING))

    async def wait(self, task_id: str) -> TaskRecordModel | None:
        """Wait for the task's current runner, then return the latest snapshot."""
        runner = self._runners.get(task_id)
        if runner is not None:
            await asyncio.wait({runner})
        return await self._registry.get(task_id)

    # -- internals ----------------------------------------------------------------

    async def _open_stream(self, params: ResumeParams, task_id: str) -> StreamHandle:
        if self._producer is None:
            raise TransportError("No producer configured", task_id=task_id)
        timeout = self._config.start_timeout_s
        try:
            return await asyncio.wait_for(self._producer(params), timeout=timeout)
        except asyncio.TimeoutError:
            raise StartTimeoutError(timeout, task_id=task_id) from None
        except TaskStreamError:
            raise
        except Exception as exc:
            raise TransportError(str(exc) or type(exc).__name__, task_id=task_id) from exc

    async def _fail_start(self, task_id: str, error: TaskStreamError) -> None:
        snapshot = await self._registry.fail_start(task_id, str(error))
        logger.warning(
            "task_start_failed",
            extra={"task_id": task_id, "error": str(error), "error_type": type(error).__name__},
        )
        if snapshot is None:
            return
        self._emit("failed", snapshot)
        callbacks = self._callbacks.get(task_id)
        if callbacks is not None:
            await invoke_callback(callbacks.on_error, error, task_id=task_id, name="on_error")

    async def _launch(
        self,
        task_id: str,
        stream: StreamHandle,
        callbacks: TaskCallbacks,
        *,
        expected: TaskStatus,
    ) -> asyncio.Task[TaskRecordModel | None] | None:
        current = await self._registry.get(task_id)
        if current is None or current.status != expected:
            logger.warning(
                "task_start_rejected",
                extra={"task_id": task_id, "status": current.status.value if current else None},
            )
            await release_stream(stream)
            return None
        try:
            generation, handle = await self._registry.begin_streaming(
                task_id, preemptive=self._config.preemptive_cancel
            )
        except (TaskNotFoundError, InvalidTransitionError) as exc:
            logger.warning("task_start_rejected", extra={"task_id": task_id, "reason": str(exc)})
            await release_stream(stream)
            return None

        self._callbacks[task_id] = callbacks
        runner = TaskRunner(
            task_id=task_id,
            generation=generation,
            stream=stream,
            registry=self._registry,
            cancel_handle=handle,
            callbacks=callbacks,
            accumulator=self._accumulator,
        )
        task = asyncio.create_task(self._drive(runner), name=f"taskstream-runner-{task_id}")
        handle.bind(task)
        previous = self._runners.get(task_id)
        if previous is not None and not previous.done():
            self._retired.add(previous)
            previous.add_done_callback(self._retired.discard)
        self._runners[task_id] = task
        task.add_done_callback(lambda done, task_id=task_id: self._forget_runner(task_id, done))
        logger.debug("task_streaming", extra={"task_id": task_id, "generation": generation})
        return task

    async def _drive(self, runner: TaskRunner) -> TaskRecordModel | None:
        snapshot = await runner.run()
        if snapshot is None:
            return None
        self._emit("completed" if snapshot.status == TaskStatus.COMPLETED else "failed", snapshot)
        if snapshot.task_id in self._ephemeral:
            self._schedule(self._delayed_cleanup(snapshot.task_id))
        return snapshot

    def _forget_runner(self, task_id: str, task: asyncio.Task[Any]) -> None:
        if self._runners.get(task_id) is task:
            del self._runners[task_id]

    async def _delayed_cleanup(self, task_id: str) -> None:
        await asyncio.sleep(self._config.cleanup_delay_s)
        await self.cleanup(task_id)

    async def _remove(self, task_id: str, *, reason: str) -> TaskRecordModel | None:
        snapshot = await self._registry.remove(task_id, reason=reason)
        self._callbacks.pop(task_id, None)
        self._ephemeral.discard(task_id)
        return snapshot

    async def _on_sweep(self, removed: list[TaskRecordModel]) -> None:
        for snapshot in removed:
            self._callbacks.pop(snapshot.task_id, None)
            self._ephemeral.discard(snapshot.task_id)
            self._emit("collected", snapshot)

    def _emit(self, outcome: Outcome, snapshot: TaskRecordModel) -> None:
        event = TaskOutcomeEvent.from_snapshot(outcome, snapshot, now=self._clock())
        self._schedule(self._telemetry.emit(event))

    def _schedule(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("task_background_failed", extra={"error": repr(exc)})


__all__ = ["TaskManager"]
