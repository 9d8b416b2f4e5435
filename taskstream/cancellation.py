"""Cancellation handle owned by a streaming task.

The handle is a flag the runner checks between reads. Setting it guarantees
that no further events are processed; it does not guarantee that a read
already in flight is aborted. When a runner registers its asyncio task and
preemption is enabled, :meth:`CancelHandle.cancel` also cancels that task so
the outstanding read is interrupted, but nothing relies on it.
"""

from __future__ import annotations

import asyncio
import secrets


class CancelHandle:
    def __init__(self, *, preemptive: bool = True) -> None:
        self.handle_id = secrets.token_hex(6)
        self._event = asyncio.Event()
        self._preemptive = preemptive
        self._task: asyncio.Task[object] | None = None
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def bind(self, task: asyncio.Task[object] | None) -> None:
        self._task = task

    def cancel(self, reason: str = "cancelled") -> bool:
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        task = self._task
        if self._preemptive and task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        return True

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "live"
        return f"CancelHandle({self.handle_id}, {state})"


__all__ = ["CancelHandle"]
