from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable
from typing import Any

from .models import EventType, StreamEvent


def encode_record(event_type: EventType | str, content: Any | None = None, **extra: Any) -> bytes:
    """Encode one ``data:`` record terminated by a blank line."""
    payload: dict[str, Any] = {"type": EventType(event_type).value}
    if content is not None:
        payload["content"] = content
    payload.update(extra)
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"data: {data}\n\n".encode()


def encode_event(event: StreamEvent) -> bytes:
    extra = {key: value for key, value in event.payload.items() if key not in {"type", "content"}}
    return encode_record(event.type, event.content, **extra)


async def iter_chunks(chunks: Iterable[bytes | str]) -> AsyncIterator[bytes | str]:
    """Expose pre-recorded chunks as an async stream handle."""
    for chunk in chunks:
        yield chunk


__all__ = ["encode_event", "encode_record", "iter_chunks"]
