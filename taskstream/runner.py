"""Drive one task record through one stream.

A :class:`TaskRunner` is an explicit state machine. :meth:`TaskRunner.next_step`
reads until it can return one of :class:`EventStep`, :class:`EndOfStream`,
:class:`StreamFailure` or :class:`Cancelled`; :meth:`TaskRunner.run` dispatches
those steps against the registry. The runner only writes while the
generation it was bound with is still current, so a paused, stopped or
superseded runner can never touch the record again.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .accumulator import ContentAccumulator
from .cancellation import CancelHandle
from .decoder import StreamDecoder
from .errors import GenerationError, TaskStreamError, TransportError
from .models import EventType, StreamEvent, TaskRecordModel, TaskResult, TaskStatus
from .producer import StreamHandle, release_stream
from .registry import TaskRegistry

logger = logging.getLogger("taskstream.runner")

UpdateCallback = Callable[[TaskResult], Awaitable[None] | None]
ErrorCallback = Callable[[Exception], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class EventStep:
    event: StreamEvent


@dataclass(frozen=True, slots=True)
class EndOfStream:
    pass


@dataclass(frozen=True, slots=True)
class StreamFailure:
    error: Exception


@dataclass(frozen=True, slots=True)
class Cancelled:
    reason: str | None = None


RunnerStep = EventStep | EndOfStream | StreamFailure | Cancelled


class RunnerState(str, Enum):
    IDLE = "idle"
    READING = "reading"
    FINISHED = "finished"


@dataclass(slots=True)
class TaskCallbacks:
    on_update: UpdateCallback | None = None
    on_complete: UpdateCallback | None = None
    on_error: ErrorCallback | None = None


async def invoke_callback(callback: Callable[[Any], Any] | None, payload: Any, *, task_id: str, name: str) -> None:
    if callback is None:
        return
    try:
        outcome = callback(payload)
        if inspect.isawaitable(outcome):
            await outcome
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("task_callback_failed", extra={"task_id": task_id, "callback": name})


class TaskRunner:
    def __init__(
        self,
        *,
        task_id: str,
        generation: int,
        stream: StreamHandle,
        registry: TaskRegistry,
        cancel_handle: CancelHandle,
        callbacks: TaskCallbacks | None = None,
        accumulator: ContentAccumulator | None = None,
    ) -> None:
        self.task_id = task_id
        self.generation = generation
        self.state = RunnerState.IDLE
        self._stream = stream
        self._iterator: AsyncIterator[bytes | str] | None = None
        self._registry = registry
        self._handle = cancel_handle
        self._callbacks = callbacks or TaskCallbacks()
        self._accumulator = accumulator or ContentAccumulator()
        self._decoder = StreamDecoder(task_id=task_id)
        self._pending: deque[StreamEvent] = deque()
        self._exhausted = False
        self.events_processed = 0

    @property
    def cancel_handle(self) -> CancelHandle:
        return self._handle

    async def next_step(self) -> RunnerStep:
        while True:
            if self._handle.cancelled:
                return Cancelled(self._handle.reason)
            if self._pending:
                return EventStep(self._pending.popleft())
            if self._exhausted:
                return EndOfStream()
            if self._iterator is None:
                self._iterator = self._stream.__aiter__()
            self.state = RunnerState.READING
            try:
                chunk = await self._iterator.__anext__()
            except StopAsyncIteration:
                self._exhausted = True
                self._pending.extend(self._decoder.finish())
                continue
            except asyncio.CancelledError:
                if self._handle.cancelled:
                    return Cancelled(self._handle.reason)
                raise
            except Exception as exc:
                if self._handle.cancelled:
                    return Cancelled(self._handle.reason)
                return StreamFailure(exc)
            # A chunk that lands after cancellation is dropped at the top of the loop.
            self._pending.extend(self._decoder.feed(chunk))

    async def run(self) -> TaskRecordModel | None:
        """Consume the stream until completion, failure or cancellation."""
        self.state = RunnerState.READING
        try:
            while True:
                step = await self.next_step()
                if isinstance(step, Cancelled):
                    logger.info(
                        "task_runner_cancelled",
                        extra={"task_id": self.task_id, "reason": step.reason, "events": self.events_processed},
                    )
                    return None
                if isinstance(step, EndOfStream):
                    # No explicit ``complete`` record: the stream ending is the completion.
                    return await self._complete(synthesized=True)
                if isinstance(step, StreamFailure):
                    error = step.error
                    if not isinstance(error, TaskStreamError):
                        error = TransportError(str(error) or type(error).__name__, task_id=self.task_id)
                    return await self._fail(error)
                done, snapshot = await self._dispatch(step.event)
                if done:
                    return snapshot
        except asyncio.CancelledError:
            if self._handle.cancelled:
                return None
            # Cancelled from outside (e.g. manager shutdown): the record must not stay STREAMING.
            await asyncio.shield(self._registry.abandon(self.task_id, self.generation, "runner cancelled"))
            raise
        finally:
            self.state = RunnerState.FINISHED
            await self._release()

    async def _dispatch(self, event: StreamEvent) -> tuple[bool, TaskRecordModel | None]:
        self.events_processed += 1
        if event.type is EventType.COMPLETE:
            return True, await self._complete(synthesized=False)
        if event.type is EventType.ERROR:
            return True, await self._fail(GenerationError(event.content, task_id=self.task_id))

        owned, snapshot = await self._registry.apply(
            self.task_id,
            self.generation,
            lambda result: self._accumulator.apply(result, event),
        )
        if not owned:
            self._handle.cancel("superseded")
            return True, None
        if snapshot is not None:
            await invoke_callback(self._callbacks.on_update, snapshot, task_id=self.task_id, name="on_update")
        return False, None

    async def _complete(self, *, synthesized: bool) -> TaskRecordModel | None:
        def _mark_complete(result: TaskResult) -> bool:
            self._accumulator.complete(result)
            return True

        snapshot = await self._registry.finish(
            self.task_id,
            self.generation,
            TaskStatus.COMPLETED,
            mutate=_mark_complete,
        )
        if snapshot is None:
            return None
        logger.info(
            "task_completed",
            extra={
                "task_id": self.task_id,
                "synthesized": synthesized,
                "content_length": len(snapshot.result.content),
                "events": self.events_processed,
            },
        )
        await invoke_callback(self._callbacks.on_update, snapshot.result, task_id=self.task_id, name="on_update")
        await invoke_callback(self._callbacks.on_complete, snapshot.result, task_id=self.task_id, name="on_complete")
        return snapshot

    async def _fail(self, error: TaskStreamError) -> TaskRecordModel | None:
        snapshot = await self._registry.finish(
            self.task_id,
            self.generation,
            TaskStatus.ERROR,
            error=str(error),
        )
        if snapshot is None:
            return None
        logger.warning(
            "task_failed",
            extra={"task_id": self.task_id, "error": str(error), "error_type": type(error).__name__},
        )
        await invoke_callback(self._callbacks.on_error, error, task_id=self.task_id, name="on_error")
        return snapshot

    async def _release(self) -> None:
        iterator, self._iterator = self._iterator, None
        if iterator is not None:
            await release_stream(iterator)
        await release_stream(self._stream)


__all__ = [
    "Cancelled",
    "EndOfStream",
    "ErrorCallback",
    "EventStep",
    "RunnerState",
    "RunnerStep",
    "StreamFailure",
    "TaskCallbacks",
    "TaskRunner",
    "UpdateCallback",
    "invoke_callback",
]
