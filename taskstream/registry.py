"""In-memory registry of task records.

The registry is the only owner of :class:`TaskRecord` objects. Every
operation runs under a single ``asyncio.Lock`` and hands out detached
:class:`TaskRecordModel` snapshots, so no caller can observe or mutate a
half-updated record.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import secrets
import time
from collections.abc import Callable, Iterable, Mapping

from .cancellation import CancelHandle
from .errors import InvalidTransitionError, TaskNotFoundError
from .models import (
    ResumeParams,
    TaskKind,
    TaskRecord,
    TaskRecordModel,
    TaskResult,
    TaskStatus,
    coerce_kind,
)

logger = logging.getLogger("taskstream.registry")

Clock = Callable[[], float]
ResultMutation = Callable[[TaskResult], bool]

_UPDATABLE_FIELDS = frozenset({"title", "kind", "resume_params"})


def _coerce_field(name: str, value: object) -> object:
    """Validate an ``update`` value before anything touches the stored record."""
    if name == "title":
        if not isinstance(value, str):
            raise TypeError(f"title must be a string, got {type(value).__name__}")
        return value
    if name == "kind":
        if not isinstance(value, str):
            raise TypeError(f"kind must be a TaskKind or string, got {type(value).__name__}")
        return coerce_kind(value)
    if value is None or isinstance(value, ResumeParams):
        return value
    if isinstance(value, Mapping):
        return ResumeParams.model_validate(dict(value))
    raise TypeError(f"resume_params must be ResumeParams or a mapping, got {type(value).__name__}")


class TaskRegistry:
    def __init__(self, *, clock: Clock | None = None) -> None:
        self._records: dict[str, TaskRecord] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or time.time
        self._counter = itertools.count(1)

    def _new_id(self) -> str:
        millis = int(self._clock() * 1000)
        return f"task_{millis}_{next(self._counter)}_{secrets.token_hex(3)}"

    def _require(self, task_id: str) -> TaskRecord:
        record = self._records.get(task_id)
        if record is None:
            raise TaskNotFoundError(task_id)
        return record

    def _owned(self, task_id: str, generation: int) -> TaskRecord | None:
        record = self._records.get(task_id)
        if record is None or record.generation != generation or record.status != TaskStatus.STREAMING:
            return None
        return record

    @staticmethod
    def _release_handle(record: TaskRecord, reason: str) -> None:
        handle, record.cancel_handle = record.cancel_handle, None
        if handle is not None:
            handle.cancel(reason)

    async def create(
        self,
        kind: TaskKind | str,
        title: str,
        resume_params: ResumeParams | None = None,
    ) -> TaskRecordModel:
        async with self._lock:
            record = TaskRecord(
                task_id=self._new_id(),
                kind=coerce_kind(kind),
                title=title,
                start_time=self._clock(),
                resume_params=resume_params,
            )
            self._records[record.task_id] = record
            return TaskRecordModel.from_record(record)

    async def get(self, task_id: str) -> TaskRecordModel | None:
        async with self._lock:
            record = self._records.get(task_id)
            return TaskRecordModel.from_record(record) if record is not None else None

    async def update(self, task_id: str, **changes: object) -> TaskRecordModel:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated directly: {sorted(unknown)}")
        values = {name: _coerce_field(name, value) for name, value in changes.items()}
        async with self._lock:
            record = self._require(task_id)
            for name, value in values.items():
                setattr(record, name, value)
            return TaskRecordModel.from_record(record)

    async def replace_result(self, task_id: str, result: TaskResult) -> TaskRecordModel:
        """Overwrite a result wholesale; content may only grow."""
        async with self._lock:
            record = self._require(task_id)
            if len(result.content) < len(record.result.content):
                raise ValueError("replacement result would shrink content")
            record.result = result.snapshot()
            return TaskRecordModel.from_record(record)

    async def remove(self, task_id: str, *, reason: str = "removed") -> TaskRecordModel | None:
        async with self._lock:
            record = self._records.pop(task_id, None)
            if record is None:
                return None
            self._release_handle(record, reason)
            logger.debug(
                "task_removed",
                extra={"task_id": task_id, "reason": reason, "status": record.status.value},
            )
            return TaskRecordModel.from_record(record)

    async def remove_where(
        self, predicate: Callable[[TaskRecordModel], bool], *, reason: str = "removed"
    ) -> list[TaskRecordModel]:
        async with self._lock:
            removed: list[TaskRecordModel] = []
            for task_id, record in list(self._records.items()):
                snapshot = TaskRecordModel.from_record(record)
                if not predicate(snapshot):
                    continue
                del self._records[task_id]
                self._release_handle(record, reason)
                removed.append(snapshot)
            if removed:
                logger.debug("tasks_removed", extra={"count": len(removed), "reason": reason})
            return removed

    async def list_active(
        self,
        *,
        kind: TaskKind | str | None = None,
        status: TaskStatus | Iterable[TaskStatus] | None = None,
    ) -> list[TaskRecordModel]:
        statuses: set[TaskStatus] | None
        if status is None:
            statuses = None
        elif isinstance(status, TaskStatus):
            statuses = {status}
        else:
            statuses = set(status)
        wanted_kind = coerce_kind(kind) if kind is not None else None
        async with self._lock:
            return [
                TaskRecordModel.from_record(record)
                for record in self._records.values()
                if (wanted_kind is None or record.kind == wanted_kind)
                and (statuses is None or record.status in statuses)
            ]

    async def begin_streaming(self, task_id: str, *, preemptive: bool = True) -> tuple[int, CancelHandle]:
        """Move a PENDING or PAUSED record to STREAMING under a fresh handle."""
        async with self._lock:
            record = self._require(task_id)
            if not record.can_transition(TaskStatus.STREAMING):
                raise InvalidTransitionError(task_id, record.status.value, TaskStatus.STREAMING.value)
            if record.status == TaskStatus.PAUSED and record.resume_params is None:
                raise InvalidTransitionError(task_id, record.status.value, TaskStatus.STREAMING.value)
            handle = CancelHandle(preemptive=preemptive)
            record.status = TaskStatus.STREAMING
            record.cancel_handle = handle
            record.generation += 1
            return record.generation, handle

    async def apply(
        self, task_id: str, generation: int, mutate: ResultMutation
    ) -> tuple[bool, TaskResult | None]:
        """Run ``mutate`` on the stored result if ``generation`` still owns it.

        Returns ``(owned, snapshot)`` where ``snapshot`` is ``None`` when the
        mutation reported no change.
        """
        async with self._lock:
            record = self._owned(task_id, generation)
            if record is None:
                return False, None
            changed = mutate(record.result)
            return True, record.result.snapshot() if changed else None

    async def finish(
        self,
        task_id: str,
        generation: int,
        status: TaskStatus,
        *,
        error: str | None = None,
        mutate: ResultMutation | None = None,
    ) -> TaskRecordModel | None:
        """Terminal transition for the runner that owns ``generation``."""
        if status not in {TaskStatus.COMPLETED, TaskStatus.ERROR}:
            raise ValueError(f"finish() expects a terminal status, got {status}")
        async with self._lock:
            record = self._owned(task_id, generation)
            if record is None:
                return None
            if mutate is not None:
                mutate(record.result)
            self._terminate(record, status, error)
            return TaskRecordModel.from_record(record)

    async def fail_start(self, task_id: str, error: str) -> TaskRecordModel | None:
        """Mark a PENDING/PAUSED record as failed when no stream could be obtained."""
        async with self._lock:
            record = self._records.get(task_id)
            if record is None or not record.can_transition(TaskStatus.ERROR):
                return None
            if record.status == TaskStatus.STREAMING:
                return None
            self._terminate(record, TaskStatus.ERROR, error)
            return TaskRecordModel.from_record(record)

    async def abandon(self, task_id: str, generation: int, error: str) -> TaskRecordModel | None:
        """Terminate a STREAMING record whose runner was cancelled from outside."""
        return await self.finish(task_id, generation, TaskStatus.ERROR, error=error)

    async def pause(self, task_id: str) -> TaskRecordModel | None:
        async with self._lock:
            record = self._records.get(task_id)
            if record is None or record.status != TaskStatus.STREAMING:
                return None
            record.status = TaskStatus.PAUSED
            self._release_handle(record, "paused")
            return TaskRecordModel.from_record(record)

    def _terminate(self, record: TaskRecord, status: TaskStatus, error: str | None) -> None:
        record.status = status
        record.error = error if status == TaskStatus.ERROR else None
        if record.end_time is None:
            record.end_time = self._clock()
        self._release_handle(record, status.value.lower())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._records


__all__ = ["Clock", "TaskRegistry"]
