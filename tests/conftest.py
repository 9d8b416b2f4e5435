import asyncio
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

# Ensure repository root is on sys.path for test imports.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from taskstream.models import ResumeParams  # noqa: E402
from taskstream.sse import encode_record  # noqa: E402


class ScriptedStream:
    """Stream handle fed by the test; ``end()`` finishes it, ``fail()`` raises."""

    def __init__(self, *chunks: bytes | str) -> None:
        self.queue: asyncio.Queue[object] = asyncio.Queue()
        self.closed = False
        self.reads = 0
        for chunk in chunks:
            self.push(chunk)

    def push(self, chunk: bytes | str) -> None:
        self.queue.put_nowait(chunk)

    def record(self, event_type: str, content: object | None = None, **extra: object) -> None:
        self.push(encode_record(event_type, content, **extra))

    def end(self) -> None:
        self.queue.put_nowait(None)

    def fail(self, exc: BaseException) -> None:
        self.queue.put_nowait(exc)

    def __aiter__(self) -> "ScriptedStream":
        return self

    async def __anext__(self) -> bytes | str:
        item = await self.queue.get()
        self.reads += 1
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item  # type: ignore[return-value]

    async def aclose(self) -> None:
        self.closed = True


class StubProducer:
    """Hand out queued streams and remember the parameters it was called with."""

    def __init__(self, *streams: ScriptedStream, delay: float = 0.0) -> None:
        self.streams = list(streams)
        self.calls: list[ResumeParams] = []
        self.delay = delay

    async def __call__(self, params: ResumeParams) -> ScriptedStream:
        self.calls.append(params)
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.streams:
            raise RuntimeError("no stream scripted")
        return self.streams.pop(0)


class ManualClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def make_stream() -> Callable[..., ScriptedStream]:
    return ScriptedStream


@pytest.fixture
def make_producer() -> Callable[..., StubProducer]:
    return StubProducer

