"""Outcome records for finished, paused and removed tasks.

Sinks are fire-and-forget: the manager schedules ``emit`` on the event loop
and never waits for it, so a slow or failing sink cannot stall a task.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

from .models import TaskKind, TaskRecordModel, TaskStatus

logger = logging.getLogger("taskstream.telemetry")

Outcome = Literal["completed", "failed", "paused", "resumed", "stopped", "collected"]


class TaskOutcomeEvent(BaseModel):
    outcome: Outcome
    task_id: str
    kind: TaskKind | str
    title: str
    status: TaskStatus
    content_length: int = 0
    step_count: int = 0
    duration_ms: float | None = None
    error: str | None = None
    created_at_s: float = Field(default_factory=time.time)
    extra: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_snapshot(
        cls,
        outcome: Outcome,
        snapshot: TaskRecordModel,
        *,
        now: float | None = None,
        **extra: Any,
    ) -> TaskOutcomeEvent:
        return cls(
            outcome=outcome,
            task_id=snapshot.task_id,
            kind=snapshot.kind,
            title=snapshot.title,
            status=snapshot.status,
            content_length=len(snapshot.result.content),
            step_count=len(snapshot.result.steps),
            duration_ms=snapshot.elapsed(now) * 1000,
            error=snapshot.error,
            extra=dict(extra),
        )


class TaskOutcomeSink(Protocol):
    async def emit(self, event: TaskOutcomeEvent) -> None: ...


class NoOpTaskOutcomeSink:
    async def emit(self, event: TaskOutcomeEvent) -> None:
        _ = event
        return None


class LoggingTaskOutcomeSink:
    """Write outcomes to the ``taskstream.telemetry`` logger."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    async def emit(self, event: TaskOutcomeEvent) -> None:
        logger.log(self.level, "task_outcome", extra=event.model_dump(mode="json"))


class RecordingTaskOutcomeSink:
    """Keep outcomes in memory; handy for tests and local debugging."""

    def __init__(self) -> None:
        self.events: list[TaskOutcomeEvent] = []

    async def emit(self, event: TaskOutcomeEvent) -> None:
        self.events.append(event)

    def outcomes(self, task_id: str | None = None) -> list[str]:
        return [event.outcome for event in self.events if task_id is None or event.task_id == task_id]


__all__ = [
    "LoggingTaskOutcomeSink",
    "NoOpTaskOutcomeSink",
    "Outcome",
    "RecordingTaskOutcomeSink",
    "TaskOutcomeEvent",
    "TaskOutcomeSink",
]
