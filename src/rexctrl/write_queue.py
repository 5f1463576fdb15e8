"""
Serialized write pipeline for the BLE link.

The adapter accepts a single outstanding GATT operation, so every outbound
message goes through one worker task that chunks, paces and (once) retries
writes in enqueue order.
"""

import asyncio
import logging
from typing import Optional, Protocol, Tuple

from .codec import TERMINATOR, chunk
from .core import BUSY_RETRY_DELAY_S, CHUNK_PACING_S, CHUNK_SIZE
from .errors import NotConnected, TransientBusy

logger = logging.getLogger(__name__)

_TERMINATOR_BYTES = TERMINATOR.encode("ascii")


class Channel(Protocol):
    """Outbound write channel."""

    @property
    def is_connected(self) -> bool: ...

    async def write_chunk(self, data: bytes) -> None: ...


class WriteQueue:
    """Orders, chunks and retries writes to a channel."""

    def __init__(
        self,
        channel: Channel,
        chunk_size: int = CHUNK_SIZE,
        pacing: float = CHUNK_PACING_S,
        retry_delay: float = BUSY_RETRY_DELAY_S,
    ) -> None:
        """Initialize queue.

        Args:
            channel: Channel receiving the chunk writes
            chunk_size: Maximum bytes per write
            pacing: Delay between chunks of one message (0 to disable)
            retry_delay: Delay before the single busy retry
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._channel = channel
        self.chunk_size = chunk_size
        self.pacing = pacing
        self.retry_delay = retry_delay
        self.retries = 0

        self._pending: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        """Number of messages waiting for the worker."""
        return self._pending.qsize() if self._pending is not None else 0

    def enqueue(self, data: bytes) -> "asyncio.Future[None]":
        """Queue one message for transmission.

        Order is fixed at call time, so callers may enqueue from plain
        (non-async) callbacks running on the event loop.

        Args:
            data: Message bytes; a newline is appended if missing

        Returns:
            Future resolved when the last chunk is written, or failed
            with the send error
        """
        loop = asyncio.get_running_loop()
        if not data.endswith(_TERMINATOR_BYTES):
            data = data + _TERMINATOR_BYTES

        future: asyncio.Future[None] = loop.create_future()
        if self._pending is None:
            self._pending = asyncio.Queue()
        self._pending.put_nowait((data, future))

        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run(self._pending))
        return future

    async def close(self) -> None:
        """Stop the worker and fail anything still queued."""
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        self.fail_pending(NotConnected("Write queue closed"))

    def fail_pending(self, exc: Exception) -> None:
        """Fail every queued (not yet started) message with ``exc``."""
        if self._pending is None:
            return
        while not self._pending.empty():
            _, future = self._pending.get_nowait()
            if not future.done():
                future.set_exception(exc)

    async def _run(self, pending: asyncio.Queue) -> None:
        """Worker loop: one message at a time, in order."""
        while True:
            item: Tuple[bytes, asyncio.Future] = await pending.get()
            data, future = item
            if future.done():
                continue
            try:
                await self._send(data)
            except asyncio.CancelledError:
                if not future.done():
                    future.set_exception(NotConnected("Write queue closed"))
                raise
            except Exception as e:
                logger.debug(f"Write failed: {e}")
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(None)

    async def _send(self, data: bytes) -> None:
        if not self._channel.is_connected:
            raise NotConnected("Not connected")

        pieces = chunk(data, self.chunk_size)
        for index, piece in enumerate(pieces):
            await self._write_with_retry(piece)
            if self.pacing and index < len(pieces) - 1:
                await asyncio.sleep(self.pacing)

    async def _write_with_retry(self, piece: bytes) -> None:
        try:
            await self._channel.write_chunk(piece)
        except TransientBusy as e:
            # One retry only; a second failure fails the whole message
            self.retries += 1
            logger.debug(f"Adapter busy ({e}), retrying in {self.retry_delay}s")
            await asyncio.sleep(self.retry_delay)
            await self._channel.write_chunk(piece)
