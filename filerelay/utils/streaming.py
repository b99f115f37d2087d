"""
Streaming utilities for the archive builder.
Bridges the synchronous zip writer to async part uploads.
"""

import asyncio
import logging
from typing import AsyncIterator, List, Optional

logger = logging.getLogger(__name__)


class ArchiveSink:
    """
    Unseekable, write-only byte sink for ``zipfile.ZipFile``.

    Having no ``tell``/``seek`` makes zipfile write entries with trailing data
    descriptors instead of seeking back to patch local headers, so output is
    strictly append-only. Written bytes accumulate until ``drain`` is called.
    """

    def __init__(self):
        self._buffer = bytearray()
        self.total_bytes = 0

    def write(self, data) -> int:
        size = memoryview(data).nbytes
        self._buffer += data
        self.total_bytes += size
        return size

    def flush(self) -> None:
        pass

    def drain(self) -> bytes:
        """Take everything written since the last drain."""
        data = bytes(self._buffer)
        self._buffer.clear()
        return data

    def __len__(self) -> int:
        return len(self._buffer)


class FixedSizePartSplitter:
    """
    Accumulates a byte stream and cuts it into parts of exactly ``part_size``.

    Only ``flush`` may return a shorter slice (the tail of the stream).
    """

    def __init__(self, part_size: int):
        if part_size <= 0:
            raise ValueError("part_size must be positive")
        self.part_size = part_size
        self.buffer = bytearray()

    def feed(self, data: bytes) -> List[bytes]:
        """Append ``data``; return every full part now available."""
        self.buffer.extend(data)
        parts = []
        while len(self.buffer) >= self.part_size:
            parts.append(bytes(self.buffer[:self.part_size]))
            del self.buffer[:self.part_size]
        return parts

    def flush(self) -> bytes:
        """Return and clear the remainder (may be empty)."""
        data = bytes(self.buffer)
        self.buffer.clear()
        return data

    @property
    def pending_bytes(self) -> int:
        return len(self.buffer)


class ChannelClosed(Exception):
    """The consuming side stopped before the producer finished."""


class ByteChannel:
    """
    Bounded single-producer/single-consumer channel of byte slices.

    Uses a bounded queue for backpressure and ``None`` as the end-of-stream
    sentinel. A put can be tied to the consumer task so that a failed consumer
    never leaves the producer blocked on a full queue.
    """

    def __init__(self, maxsize: int = 4):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.total_bytes = 0
        self._closed = False

    async def put(self, data: bytes, consumer: Optional[asyncio.Task] = None) -> None:
        """
        Send a slice; empty slices are dropped.

        Raises:
            ChannelClosed: If the channel was closed or the consumer finished first
        """
        if self._closed:
            raise ChannelClosed("Channel already closed")
        if not data:
            return
        await self._send(data, consumer)
        self.total_bytes += len(data)

    async def close(self, consumer: Optional[asyncio.Task] = None) -> None:
        """Signal end of stream."""
        if not self._closed:
            self._closed = True
            await self._send(None, consumer)

    async def _send(self, item: Optional[bytes], consumer: Optional[asyncio.Task]) -> None:
        if consumer is None:
            await self.queue.put(item)
            return

        put = asyncio.ensure_future(self.queue.put(item))
        await asyncio.wait({put, consumer}, return_when=asyncio.FIRST_COMPLETED)
        if put.done():
            return

        put.cancel()
        # Surface the consumer's own error when it has one
        if not consumer.cancelled() and consumer.exception() is not None:
            raise consumer.exception()
        raise ChannelClosed("Consumer stopped before end of stream")

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            item = await self.queue.get()
            if item is None:
                return
            yield item
