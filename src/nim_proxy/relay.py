"""Backpressure-aware relay of an upstream byte stream to the caller.

A producer task reads the upstream response into a bounded queue and the
consumer drains it into the client connection. A full queue suspends the
producer, so upstream reads follow the pace of the client. Closing either end
cancels the producer and closes the upstream response.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

import httpx
from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_EOF = object()


class StreamRelay:
    def __init__(
        self,
        response: httpx.Response,
        *,
        max_chunks: int = 16,
        idle_timeout_s: Optional[float] = None,
    ):
        self.response = response
        self.max_chunks = max_chunks
        self.idle_timeout_s = idle_timeout_s
        self.chunks_relayed = 0
        self.bytes_relayed = 0
        self.upstream_error: Optional[BaseException] = None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_chunks)
        self._producer: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def _produce(self) -> None:
        try:
            async for chunk in self.response.aiter_bytes():
                if chunk:
                    await self._queue.put(chunk)
        except httpx.HTTPError as exc:
            self.upstream_error = exc
            logger.warning(
                "[relay] Upstream stream failed after %d chunks: %s",
                self.chunks_relayed,
                exc,
            )
        except Exception as exc:  # noqa: BLE001
            self.upstream_error = exc
            logger.exception("[relay] Unexpected error while reading upstream stream")
        await self._queue.put(_EOF)

    async def stream(self) -> AsyncIterator[bytes]:
        if self._closed:
            return
        self._producer = asyncio.create_task(self._produce())
        try:
            while True:
                try:
                    item = await asyncio.wait_for(
                        self._queue.get(), timeout=self.idle_timeout_s
                    )
                except asyncio.TimeoutError:
                    logger.warning(
                        "[relay] Upstream idle for %.1fs; closing stream",
                        self.idle_timeout_s,
                    )
                    break
                if item is _EOF:
                    break
                self.chunks_relayed += 1
                self.bytes_relayed += len(item)
                yield item
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        producer = self._producer
        if producer is not None and not producer.done():
            producer.cancel()
            try:
                await producer
            except asyncio.CancelledError:
                pass
        await self.response.aclose()
        logger.debug(
            "[relay] Closed after %d chunks (%d bytes)",
            self.chunks_relayed,
            self.bytes_relayed,
        )


class RelayStreamingResponse(StreamingResponse):
    """Event-stream response that releases the upstream when the client goes away."""

    def __init__(self, relay: StreamRelay, status_code: int = 200):
        super().__init__(
            relay.stream(),
            status_code=status_code,
            headers=SSE_HEADERS,
            media_type="text/event-stream",
        )
        self.relay = relay

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.relay.aclose()
