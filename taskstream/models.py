"""Task records, results and decoded stream events."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from .cancellation import CancelHandle


def utc_timestamp() -> str:
    return datetime.now(UTC).isoformat()


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    STREAMING = "STREAMING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.ERROR})

# Removal is not a status; it is allowed from every state and handled by the registry.
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.STREAMING, TaskStatus.ERROR}),
    TaskStatus.STREAMING: frozenset({TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.PAUSED}),
    TaskStatus.PAUSED: frozenset({TaskStatus.STREAMING, TaskStatus.ERROR}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.ERROR: frozenset(),
}


class TaskKind(str, Enum):
    DRAFT_GENERATION = "draft_generation"
    REPORT_GENERATION = "report_generation"
    GENERAL_QUERY = "general_query"
    PS_DRAFT = "ps_draft"
    CV_GENERATION = "cv_generation"
    RL_GENERATION = "rl_generation"


def coerce_kind(kind: TaskKind | str) -> TaskKind | str:
    if isinstance(kind, TaskKind):
        return kind
    try:
        return TaskKind(kind)
    except ValueError:
        return kind


class EventType(str, Enum):
    CONTENT = "content"
    STEP = "step"
    COMPLETE = "complete"
    ERROR = "error"
    AUXILIARY = "auxiliary"


# Event types whose ``content`` field must be a string.
TEXT_EVENT_TYPES = frozenset({EventType.CONTENT, EventType.STEP, EventType.AUXILIARY})


@dataclass(frozen=True, slots=True)
class StreamEvent:
    type: EventType
    content: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


class ResumeParams(BaseModel):
    """Original request inputs needed to re-issue a generation."""

    query: str
    files: list[str] = Field(default_factory=list)
    assistant_type: str | None = None

    model_config = ConfigDict(extra="allow")


class TaskResult(BaseModel):
    content: str = ""
    steps: list[str] = Field(default_factory=list)
    current_step: str | None = None
    is_complete: bool = False
    auxiliary: list[str] = Field(default_factory=list)
    timestamp: str = Field(default_factory=utc_timestamp)

    def snapshot(self) -> TaskResult:
        return self.model_copy(deep=True)


@dataclass(slots=True)
class TaskRecord:
    task_id: str
    kind: TaskKind | str
    title: str
    status: TaskStatus = TaskStatus.PENDING
    result: TaskResult = field(default_factory=TaskResult)
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    error: str | None = None
    cancel_handle: CancelHandle | None = None
    resume_params: ResumeParams | None = None
    generation: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition(self, target: TaskStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]


class TaskRecordModel(BaseModel):
    """Detached, read-only view of a :class:`TaskRecord`."""

    task_id: str
    kind: TaskKind | str
    title: str
    status: TaskStatus
    result: TaskResult
    start_time: float
    end_time: float | None = None
    error: str | None = None
    resume_params: ResumeParams | None = None
    generation: int = 0

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_record(cls, record: TaskRecord) -> TaskRecordModel:
        return cls(
            task_id=record.task_id,
            kind=record.kind,
            title=record.title,
            status=record.status,
            result=record.result.snapshot(),
            start_time=record.start_time,
            end_time=record.end_time,
            error=record.error,
            resume_params=(
                record.resume_params.model_copy(deep=True) if record.resume_params is not None else None
            ),
            generation=record.generation,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def estimated_progress(self) -> float:
        if self.result.is_complete:
            return 100.0
        return min(len(self.result.content) / 10, 90.0)

    def elapsed(self, now: float | None = None) -> float:
        end = self.end_time if self.end_time is not None else (now if now is not None else time.time())
        return max(end - self.start_time, 0.0)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "EventType",
    "ResumeParams",
    "StreamEvent",
    "TERMINAL_STATUSES",
    "TEXT_EVENT_TYPES",
    "TaskKind",
    "TaskRecord",
    "TaskRecordModel",
    "TaskResult",
    "TaskStatus",
    "coerce_kind",
    "utc_timestamp",
]
