"""Merge policy applied to decoded events before they reach a task result.

The upstream producer sometimes re-sends text that overlaps with, or fully
repeats, what it already delivered. Content is therefore merged by
containment instead of plain concatenation:

1. a payload already contained in the accumulated text is dropped;
2. a payload that contains the accumulated text and is longer replaces it;
3. anything else is appended.

This is a best-effort workaround for the resend behaviour, not a proven
algorithm; keep it as-is until the producer's intent is known.
"""

from __future__ import annotations

import re
from enum import Enum

from .config import MergeSettings
from .models import EventType, StreamEvent, TaskResult, utc_timestamp

_EXECUTION_TIME = re.compile(r"\[(?:执行时间|execution time):\s*([\d.]+)\s*(?:秒|s)?\]", re.IGNORECASE)


class MergeAction(str, Enum):
    DISCARD = "discard"
    REPLACE = "replace"
    APPEND = "append"


def classify_content(existing: str, incoming: str, settings: MergeSettings | None = None) -> MergeAction:
    settings = settings or MergeSettings()
    if not incoming:
        return MergeAction.DISCARD
    if len(incoming) >= settings.min_duplicate_length and incoming in existing:
        return MergeAction.DISCARD
    if (
        len(incoming) > len(existing)
        and len(existing) >= settings.min_replace_length
        and existing in incoming
    ):
        return MergeAction.REPLACE
    return MergeAction.APPEND


def merge_content(existing: str, incoming: str, settings: MergeSettings | None = None) -> str:
    action = classify_content(existing, incoming, settings)
    if action is MergeAction.DISCARD:
        return existing
    if action is MergeAction.REPLACE:
        return incoming
    return existing + incoming


def execution_time_tag(step: str) -> str | None:
    match = _EXECUTION_TIME.search(step)
    return match.group(1) if match else None


class ContentAccumulator:
    """Apply events to a :class:`TaskResult` in place.

    The accumulator holds no text of its own; the registry calls it while
    holding its lock so each event lands atomically on the stored result.
    """

    def __init__(self, settings: MergeSettings | None = None) -> None:
        self.settings = settings or MergeSettings()

    def is_phase_start(self, step: str) -> bool:
        return any(marker in step for marker in self.settings.phase_markers)

    def is_progress_update(self, step: str) -> bool:
        """Whether ``step`` is a running progress announcement (but not its final one)."""
        if any(marker in step for marker in self.settings.update_done_markers):
            return False
        return any(marker in step for marker in self.settings.update_markers)

    def add_content(self, result: TaskResult, content: str) -> bool:
        merged = merge_content(result.content, content, self.settings)
        if merged == result.content:
            return False
        result.content = merged
        return True

    def add_step(self, result: TaskResult, step: str) -> bool:
        result.current_step = step
        if self.is_progress_update(step):
            for index in range(len(result.steps) - 1, -1, -1):
                if self.is_progress_update(result.steps[index]):
                    result.steps[index] = step
                    return True
            result.steps.append(step)
            return True
        tag = execution_time_tag(step) if self.is_phase_start(step) else None
        if tag is not None:
            for index, existing in enumerate(result.steps):
                if self.is_phase_start(existing) and execution_time_tag(existing) == tag:
                    result.steps[index] = step
                    return True
        result.steps.append(step)
        return True

    def add_auxiliary(self, result: TaskResult, content: str) -> bool:
        result.auxiliary.append(content)
        return True

    def complete(self, result: TaskResult) -> None:
        result.is_complete = True
        result.current_step = None
        result.timestamp = utc_timestamp()

    def apply(self, result: TaskResult, event: StreamEvent) -> bool:
        """Merge one event, returning whether ``result`` changed.

        ``complete`` and ``error`` events are status transitions and are left
        to the runner.
        """
        if event.type is EventType.CONTENT:
            changed = self.add_content(result, event.content or "")
        elif event.type is EventType.STEP:
            changed = self.add_step(result, event.content or "")
        elif event.type is EventType.AUXILIARY:
            changed = self.add_auxiliary(result, event.content or "")
        else:
            return False
        if changed:
            result.timestamp = utc_timestamp()
        return changed


__all__ = [
    "ContentAccumulator",
    "MergeAction",
    "classify_content",
    "execution_time_tag",
    "merge_content",
]
