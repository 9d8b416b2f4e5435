from __future__ import annotations

from typing import Any


class TaskStreamError(Exception):
    def __init__(
        self,
        *,
        title: str,
        detail: str | None = None,
        task_id: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(detail or title)
        self.title = title
        self.detail = detail
        self.task_id = task_id
        self.extra = extra or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"title": self.title}
        if self.detail:
            payload["detail"] = self.detail
        if self.task_id:
            payload["task_id"] = self.task_id
        if self.extra:
            payload.update(self.extra)
        return payload


class TransportError(TaskStreamError):
    """The stream could not be obtained or failed while being read."""

    def __init__(
        self,
        detail: str,
        *,
        task_id: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            title="Transport failure",
            detail=detail,
            task_id=task_id,
            extra={"status_code": status_code} if status_code is not None else None,
        )
        self.status_code = status_code


class StartTimeoutError(TransportError):
    def __init__(self, timeout_s: float, *, task_id: str | None = None) -> None:
        super().__init__(f"Request timed out after {timeout_s:g}s", task_id=task_id)
        self.title = "Request timed out"
        self.timeout_s = timeout_s


class GenerationError(TaskStreamError):
    """The producer reported an ``error`` event inside the stream."""

    def __init__(self, detail: str | None, *, task_id: str | None = None) -> None:
        super().__init__(
            title="Generation failed",
            detail=detail or "An error occurred during generation",
            task_id=task_id,
        )


class TaskNotFoundError(TaskStreamError):
    def __init__(self, task_id: str) -> None:
        super().__init__(
            title="Task not found",
            detail=f"Task '{task_id}' was not found.",
            task_id=task_id,
        )


class InvalidTransitionError(TaskStreamError):
    def __init__(self, task_id: str, current: str, target: str) -> None:
        super().__init__(
            title="Invalid status transition",
            detail=f"Task '{task_id}' cannot move from {current} to {target}.",
            task_id=task_id,
            extra={"current": current, "target": target},
        )
        self.current = current
        self.target = target


__all__ = [
    "GenerationError",
    "InvalidTransitionError",
    "StartTimeoutError",
    "TaskNotFoundError",
    "TaskStreamError",
    "TransportError",
]
