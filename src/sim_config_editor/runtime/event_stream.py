"""Server-sent event channel over one aiohttp streaming response.

Each event is written as one ``data: <json>\\n\\n`` frame. While the channel
is open a ``: keepalive`` comment frame is written every heartbeat interval
so proxies do not drop the idle connection.

A channel is opened once and closed exactly once. Sends after close, and
sends that hit a broken connection, are dropped silently: a write racing a
process exit or a client disconnect must never crash the handler.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from typing import Any, Protocol

from aiohttp import web

from ..errors import StreamWriteFailure
from ..events import StreamEvent

__all__ = [
    "Channel",
    "EventStreamChannel",
    "SSE_HEADERS",
    "DEFAULT_HEARTBEAT_INTERVAL",
    "encode_event",
]

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 30.0
DEFAULT_DISCONNECT_POLL_INTERVAL = 1.0

KEEPALIVE_FRAME = b": keepalive\n\n"

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Transport errors a write can raise once the peer is gone.
# aiohttp's ClientConnectionResetError subclasses ConnectionResetError.
_WRITE_ERRORS = (ConnectionError, RuntimeError, OSError)


def encode_event(event: StreamEvent | dict[str, Any]) -> bytes:
    """Frame one event as a text/event-stream ``data:`` message."""
    payload = event.to_wire() if isinstance(event, StreamEvent) else event
    data = json.dumps(payload, ensure_ascii=False)
    return f"data: {data}\n\n".encode("utf-8")


class Channel(Protocol):
    """What sessions and the change notifier need from a push channel."""

    @property
    def is_open(self) -> bool: ...

    async def open(self) -> None: ...

    async def send(self, event: StreamEvent | dict[str, Any]) -> bool: ...

    async def close(self) -> None: ...

    async def wait_disconnected(self) -> None: ...

    def add_close_callback(self, callback: Callable[[Any], None]) -> None: ...


class EventStreamChannel:
    """Push channel bound to one aiohttp request.

    Example:
        channel = EventStreamChannel(request)
        await channel.open()
        await channel.send(StartedEvent())
        await channel.close()
        return channel.response
    """

    def __init__(
        self,
        request: web.Request,
        *,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        disconnect_poll_interval: float = DEFAULT_DISCONNECT_POLL_INTERVAL,
    ) -> None:
        self._request = request
        self._response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        self.heartbeat_interval = heartbeat_interval
        self.disconnect_poll_interval = disconnect_poll_interval

        self._opened = False
        self._closed = False
        self._write_lock = asyncio.Lock()
        self._disconnected = asyncio.Event()
        self._closed_event = asyncio.Event()
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._monitor_task: asyncio.Task[None] | None = None
        self._close_callbacks: list[Callable[[Any], None]] = []
        self.frames_sent = 0

    @property
    def response(self) -> web.StreamResponse:
        return self._response

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def disconnected(self) -> bool:
        return self._disconnected.is_set()

    def add_close_callback(self, callback: Callable[[Any], None]) -> None:
        """Register a callback run once, with this channel, when it closes."""
        if self._closed:
            callback(self)
            return
        self._close_callbacks.append(callback)

    async def open(self) -> None:
        """Send headers immediately and start the heartbeat. Idempotent."""
        if self._opened or self._closed:
            return
        self._opened = True
        try:
            await self._response.prepare(self._request)
        except _WRITE_ERRORS as e:
            logger.debug(f"Client gone before stream opened: {e!r}")
            self._disconnected.set()
            await self.close()
            return

        self._heartbeat_task = asyncio.create_task(self._heartbeat())
        self._monitor_task = asyncio.create_task(self._watch_transport())

    async def send(self, event: StreamEvent | dict[str, Any]) -> bool:
        """Write one event frame.

        Returns:
            False if the channel was closed or the write failed; never raises
        """
        if not self.is_open:
            return False
        try:
            await self._write(encode_event(event))
        except StreamWriteFailure as e:
            logger.debug(f"Dropping event, {e}")
            return False
        self.frames_sent += 1
        return True

    async def _write(self, frame: bytes) -> None:
        async with self._write_lock:
            if not self.is_open:
                raise StreamWriteFailure(ConnectionResetError("channel closed"))
            try:
                await self._response.write(frame)
            except _WRITE_ERRORS as e:
                self._disconnected.set()
                await self.close()
                raise StreamWriteFailure(e) from e

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not self.is_open:
                return
            try:
                await self._write(KEEPALIVE_FRAME)
            except StreamWriteFailure as e:
                logger.debug(f"Error sending keepalive: {e}")
                return

    async def _watch_transport(self) -> None:
        """Detect a client that went away while nothing is being written."""
        while not self._closed:
            transport = self._request.transport
            if transport is None or transport.is_closing():
                logger.debug("Client connection closed")
                self._disconnected.set()
                return
            await asyncio.sleep(self.disconnect_poll_interval)

    async def wait_disconnected(self) -> None:
        """Return once the client connection is known to be gone."""
        await self._disconnected.wait()

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    async def close(self) -> None:
        """Cancel the heartbeat and end the response. Idempotent."""
        if self._closed:
            return
        self._closed = True

        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._monitor_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

        if self._opened and not self._disconnected.is_set():
            async with self._write_lock:
                with contextlib.suppress(*_WRITE_ERRORS):
                    await self._response.write_eof()

        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception as e:
                logger.warning(f"Error in channel close callback: {e}")

        self._closed_event.set()
