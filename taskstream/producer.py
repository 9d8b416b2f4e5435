"""Producer contract and the HTTP producer.

A producer turns request parameters into a single-use, forward-only stream
of raw chunks. Streams cannot be paused or rewound: resuming a task means
calling the producer again with the same parameters.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import suppress
from typing import Any, Protocol, runtime_checkable

from .config import HttpProducerConfig
from .errors import TransportError
from .models import ResumeParams

logger = logging.getLogger("taskstream.producer")


@runtime_checkable
class StreamHandle(Protocol):
    def __aiter__(self) -> AsyncIterator[bytes | str]: ...


Producer = Callable[[ResumeParams], Awaitable[StreamHandle]]


async def release_stream(stream: object) -> None:
    """Close a stream handle if it supports it."""
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    with suppress(Exception):
        await aclose()


def _require_httpx():
    try:
        import httpx
    except ImportError as exc:
        raise RuntimeError("httpx is required for HttpProducer. Install with `pip install httpx`.") from exc
    return httpx


def _error_detail(body: str | None) -> str | None:
    if not body:
        return None
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return body.strip()[:200] or None
    if isinstance(payload, Mapping):
        detail = payload.get("detail") or payload.get("message") or payload.get("error")
        return str(detail) if detail else None
    return None


class HttpStream:
    """Stream handle wrapping an open ``httpx`` streaming response."""

    def __init__(self, response: Any, *, owned_client: Any | None = None) -> None:
        self._response = response
        self._owned_client = owned_client
        self._closed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    async def __aiter__(self) -> AsyncIterator[bytes]:
        httpx = _require_httpx()
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as exc:
            raise TransportError(f"Stream read failed: {exc}") from exc
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        with suppress(Exception):
            await self._response.aclose()
        if self._owned_client is not None:
            with suppress(Exception):
                await self._owned_client.aclose()


class HttpProducer:
    """POST the resume parameters as JSON and stream the response body."""

    def __init__(self, config: HttpProducerConfig, *, client: Any | None = None) -> None:
        self.config = config
        self.client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        headers.update(self.config.headers)
        return headers

    async def __call__(self, params: ResumeParams) -> HttpStream:
        httpx = _require_httpx()
        owned_client = None
        client = self.client
        if client is None:
            # A streaming read has no overall deadline; only connecting is bounded.
            timeout = httpx.Timeout(None, connect=self.config.timeout_s)
            client = owned_client = httpx.AsyncClient(timeout=timeout)
        request = client.build_request(
            "POST",
            self.config.url,
            json=params.model_dump(mode="json"),
            headers=self._headers(),
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            if owned_client is not None:
                await owned_client.aclose()
            raise TransportError(f"Request to {self.config.url} failed: {exc}") from exc
        except BaseException:
            # A start timeout cancels the send; close the owned client before propagating.
            if owned_client is not None:
                await asyncio.shield(owned_client.aclose())
            raise

        if not 200 <= response.status_code < 300:
            body = await response.aread()
            await response.aclose()
            if owned_client is not None:
                await owned_client.aclose()
            detail = _error_detail(body.decode("utf-8", errors="replace"))
            detail_text = f": {detail}" if detail else ""
            raise TransportError(
                f"Request failed ({response.status_code}){detail_text}",
                status_code=response.status_code,
            )
        logger.debug("producer_stream_opened", extra={"url": self.config.url, "status": response.status_code})
        return HttpStream(response, owned_client=owned_client)


__all__ = ["HttpProducer", "HttpStream", "Producer", "StreamHandle", "release_stream"]
