"""Periodic removal of finished tasks."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable

from .models import TERMINAL_STATUSES, TaskRecordModel
from .registry import Clock, TaskRegistry

logger = logging.getLogger("taskstream.collector")

SweepListener = Callable[[list[TaskRecordModel]], Awaitable[None] | None]


class GarbageCollector:
    """Remove COMPLETED/ERROR records whose ``end_time`` is older than the TTL.

    PENDING, STREAMING and PAUSED records are never touched, whatever their
    age: active or resumable work is not discarded silently.
    """

    def __init__(
        self,
        registry: TaskRegistry,
        *,
        ttl_s: float,
        interval_s: float,
        clock: Clock | None = None,
        on_sweep: SweepListener | None = None,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        if ttl_s < 0:
            raise ValueError("ttl_s must not be negative")
        self._registry = registry
        self.ttl_s = ttl_s
        self.interval_s = interval_s
        self._clock = clock or time.time
        self._on_sweep = on_sweep
        self._task: asyncio.Task[None] | None = None
        self.sweeps = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_expired(self, snapshot: TaskRecordModel, now: float) -> bool:
        if snapshot.status not in TERMINAL_STATUSES or snapshot.end_time is None:
            return False
        return now - snapshot.end_time >= self.ttl_s

    async def sweep(self, now: float | None = None) -> list[TaskRecordModel]:
        current = self._clock() if now is None else now
        removed = await self._registry.remove_where(
            lambda snapshot: self.is_expired(snapshot, current),
            reason="collected",
        )
        self.sweeps += 1
        if removed:
            logger.info(
                "tasks_collected",
                extra={"count": len(removed), "task_ids": [snapshot.task_id for snapshot in removed]},
            )
            if self._on_sweep is not None:
                outcome = self._on_sweep(removed)
                if outcome is not None:
                    await outcome
        return removed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                await self.sweep()
            except Exception:
                logger.exception("task_sweep_failed")

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="taskstream-gc")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


__all__ = ["GarbageCollector", "SweepListener"]
