"""Incremental decoder for ``data:``-prefixed JSON event streams.

Records are separated by a blank line and carry one JSON object in their
``data:`` field. Chunks arrive at arbitrary boundaries, so the decoder keeps
the trailing partial record between calls to :meth:`StreamDecoder.feed`.
A record that cannot be decoded is logged and skipped; it never stops the
stream.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from .models import TEXT_EVENT_TYPES, EventType, StreamEvent

logger = logging.getLogger("taskstream.decoder")

_RECORD_SEPARATOR = "\n\n"
_DATA_PREFIX = "data:"


class StreamDecoder:
    """Turn raw text/byte chunks into :class:`StreamEvent` objects."""

    def __init__(self, *, task_id: str | None = None) -> None:
        self._task_id = task_id
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.skipped = 0

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        text = self._utf8.decode(chunk) if isinstance(chunk, bytes | bytearray) else chunk
        if not text:
            return []
        self._buffer = (self._buffer + text).replace("\r\n", "\n")
        *records, self._buffer = self._buffer.split(_RECORD_SEPARATOR)
        return self._decode_records(records)

    def finish(self) -> list[StreamEvent]:
        """Flush the decoder at end of stream."""
        tail = self._utf8.decode(b"", final=True)
        if tail:
            self._buffer += tail.replace("\r\n", "\n")
        remainder, self._buffer = self._buffer, ""
        if not remainder.strip():
            return []
        return self._decode_records(remainder.split(_RECORD_SEPARATOR))

    @property
    def pending(self) -> str:
        return self._buffer

    def _decode_records(self, records: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for record in records:
            if not record.strip():
                continue
            event = self._decode_record(record)
            if event is not None:
                events.append(event)
        return events

    def _decode_record(self, record: str) -> StreamEvent | None:
        data_lines = [
            line[len(_DATA_PREFIX) :].removeprefix(" ")
            for line in record.split("\n")
            if line.startswith(_DATA_PREFIX)
        ]
        if not data_lines:
            # Comments, keep-alives and bare ``event:`` records carry no payload.
            logger.debug("stream_record_without_data", extra={"task_id": self._task_id})
            return None
        raw = "\n".join(data_lines)
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            return self._skip(record, f"invalid JSON: {exc.msg}")
        if not isinstance(payload, dict):
            return self._skip(record, "payload is not an object")
        try:
            event_type = EventType(payload.get("type"))
        except ValueError:
            return self._skip(record, f"unknown event type {payload.get('type')!r}")

        content = payload.get("content")
        if event_type in TEXT_EVENT_TYPES:
            if not isinstance(content, str):
                return self._skip(record, f"{event_type.value} event without string content")
        elif content is not None and not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False)
        return StreamEvent(type=event_type, content=content, payload=payload)

    def _skip(self, record: str, reason: str) -> None:
        self.skipped += 1
        logger.warning(
            "stream_record_malformed",
            extra={"task_id": self._task_id, "reason": reason, "record": record[:200]},
        )
        return None


async def decode_stream(
    chunks: AsyncIterable[bytes | str],
    *,
    decoder: StreamDecoder | None = None,
) -> AsyncIterator[StreamEvent]:
    """Lazily decode an async chunk source into events."""
    decoder = decoder or StreamDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.finish():
        yield event


def decode_text(text: str) -> list[StreamEvent]:
    """Decode a complete, already buffered stream."""
    decoder = StreamDecoder()
    return [*decoder.feed(text), *decoder.finish()]


def event_to_dict(event: StreamEvent) -> dict[str, Any]:
    data: dict[str, Any] = {"type": event.type.value}
    if event.content is not None:
        data["content"] = event.content
    extra = {key: value for key, value in event.payload.items() if key not in {"type", "content"}}
    if extra:
        data.update(extra)
    return data


__all__ = ["StreamDecoder", "decode_stream", "decode_text", "event_to_dict"]
