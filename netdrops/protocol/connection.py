"""
Duplex message channel owned by one peer session.

Outbound messages go through a queue drained by a single writer task, so
enqueueing never blocks the caller and the wire order always equals the
order in which messages were handed over.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from netdrops.protocol.errors import ConnectionClosed
from netdrops.protocol.messages import WireModel, encode_message

logger = logging.getLogger(__name__)

_STOP = object()


def _consume_result(future: asyncio.Future) -> None:
    # Mark failures as retrieved; fire-and-forget sends are allowed
    if not future.cancelled():
        future.exception()


class Connection:
    """Wraps a transport's text/binary send coroutines behind a FIFO queue."""

    def __init__(
        self,
        send_text: Callable[[str], Awaitable[None]],
        send_bytes: Callable[[bytes], Awaitable[None]],
        name: str = "",
    ) -> None:
        self._send_text = send_text
        self._send_bytes = send_bytes
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue()
        self._writer_task: asyncio.Task | None = None
        self._in_flight: asyncio.Future | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the writer task on the running loop."""
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._write_loop())

    def send_message(self, message: WireModel) -> asyncio.Future:
        """Queue a control message; the future resolves once it is written."""
        return self._enqueue(encode_message(message))

    def send_frame(self, frame: bytes) -> asyncio.Future:
        """Queue a binary frame; the future resolves once it is written."""
        return self._enqueue(frame)

    def _enqueue(self, payload: str | bytes) -> asyncio.Future:
        if self._closed:
            raise ConnectionClosed(f"Connection {self.name} is closed")
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_result)
        self._queue.put_nowait((payload, future))
        return future

    async def _write_loop(self) -> None:
        try:
            while True:
                item = await self._queue.get()
                if item is _STOP:
                    break
                payload, future = item
                self._in_flight = future
                try:
                    if isinstance(payload, str):
                        await self._send_text(payload)
                    else:
                        await self._send_bytes(payload)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.debug(f"Write to {self.name} failed: {e}")
                    self._closed = True
                    self._in_flight = None
                    if not future.done():
                        future.set_exception(ConnectionClosed(str(e)))
                    break
                # Left set on cancellation so _fail_pending() reaches it
                self._in_flight = None
                if not future.done():
                    future.set_result(None)
        finally:
            self._fail_pending()

    def _fail_pending(self) -> None:
        error = ConnectionClosed(f"Connection {self.name} closed before send")
        if self._in_flight is not None and not self._in_flight.done():
            self._in_flight.set_exception(error)
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _STOP:
                continue
            _, future = item
            if not future.done():
                future.set_exception(error)

    async def close(self) -> None:
        """Refuse new sends, write out what is queued, then stop."""
        if self._closed and self._writer_task is None:
            return
        self._closed = True
        if self._writer_task is None:
            self._fail_pending()
            return
        self._queue.put_nowait(_STOP)
        await self._writer_task
        self._writer_task = None

    async def abort(self) -> None:
        """Stop immediately; anything still queued fails with ConnectionClosed."""
        self._closed = True
        if self._writer_task is None:
            self._fail_pending()
            return
        self._writer_task.cancel()
        try:
            await self._writer_task
        except asyncio.CancelledError:
            pass
        self._writer_task = None
