"""
Streaming Archive Builder - repacks sealed source objects into one ZIP.

Pipeline:
- Producer: reads each source in ranged windows and writes it into a
  store-mode ZIP over an unseekable sink, pushing the emitted bytes onto a
  bounded channel.
- Consumer: accumulates channel bytes, cuts exact STANDARD_PART_SIZE parts and
  starts their uploads without waiting on them.
- Finalize: uploads the tail as the last part, joins every pending upload under
  a wall-clock ceiling, completes the multipart upload and deletes the sources.

Any failure aborts the result multipart upload and raises BuilderFailure.
"""

import asyncio
import logging
import time
import zipfile
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence, Set, Tuple

from botocore.exceptions import ClientError

from filerelay.core.config import settings
from filerelay.core.errors import BuilderFailure, RemoteInconsistency
from filerelay.core.observability import NULL_OBSERVER, Observer
from filerelay.s3.client import MultipartStorageClient, is_not_found
from filerelay.s3.config import (
    ARCHIVE_CONTENT_TYPE,
    MAX_PARTS,
    MIN_PART_SIZE,
    READ_WINDOW_SIZE,
    STANDARD_PART_SIZE,
)
from filerelay.s3.models import CompletedPart
from filerelay.utils.streaming import ArchiveSink, ByteChannel, FixedSizePartSplitter

logger = logging.getLogger(__name__)

DateTime = Tuple[int, int, int, int, int, int]
ProgressCallback = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class ArchiveSource:
    """One object to place in the archive."""

    name: str   # Entry name inside the archive
    key: str    # Storage key of the sealed source object


@dataclass
class ArchiveResult:
    """Published archive."""

    key: str
    size: int
    parts: List[CompletedPart] = field(default_factory=list)

    @property
    def part_sizes(self) -> List[int]:
        return [p.size for p in self.parts]


def archive_entry(name: str, size: int, date_time: DateTime) -> zipfile.ZipInfo:
    """
    ZIP entry header for a stored (uncompressed) file.

    The size is preset so zipfile decides up front whether the entry needs
    ZIP64 fields.
    """
    info = zipfile.ZipInfo(name, date_time=date_time)
    info.compress_type = zipfile.ZIP_STORED
    info.external_attr = 0o644 << 16
    info.file_size = size
    return info


def current_date_time() -> DateTime:
    # ZIP timestamps cannot predate 1980
    return max(time.gmtime()[:6], (1980, 1, 1, 0, 0, 0))


class StreamingArchiveBuilder:
    """Builds one ZIP from N source objects and publishes it as a multipart upload."""

    def __init__(
        self,
        storage: MultipartStorageClient,
        part_size: int = STANDARD_PART_SIZE,
        min_part_size: int = MIN_PART_SIZE,
        read_window: int = READ_WINDOW_SIZE,
        finalize_timeout: float = settings.ARCHIVE_FINALIZE_TIMEOUT,
        channel_depth: int = settings.ARCHIVE_CHANNEL_DEPTH,
        observer: Observer = NULL_OBSERVER,
    ):
        """
        Initialize the builder.

        Args:
            storage: Storage client used to read sources and publish the result
            part_size: Exact size of every non-final output part
            min_part_size: Smallest allowed final part when there are several
            read_window: Bytes fetched per ranged read of a source
            finalize_timeout: Ceiling (seconds) for the final join on pending uploads
            channel_depth: Slices buffered between producer and consumer
            observer: Metrics/event sink
        """
        if min_part_size > part_size:
            raise ValueError("min_part_size cannot exceed part_size")
        self.storage = storage
        self.part_size = part_size
        self.min_part_size = min_part_size
        self.read_window = read_window
        self.finalize_timeout = finalize_timeout
        self.channel_depth = channel_depth
        self.observer = observer

    async def build(
        self,
        sources: Sequence[ArchiveSource],
        result_key: str,
        progress: Optional[ProgressCallback] = None,
        delete_sources: bool = True,
        date_time: Optional[DateTime] = None,
    ) -> ArchiveResult:
        """
        Build and publish the archive.

        Args:
            sources: Objects to pack, in archive order
            result_key: Storage key of the archive
            progress: Awaited with the fraction (0.0 - 1.0) of source bytes packed
            delete_sources: Delete the source objects once the archive is published
            date_time: Timestamp written into every entry (now, UTC, by default)

        Returns:
            ArchiveResult with the published size and parts

        Raises:
            BuilderFailure: If reading, packing, uploading or completing failed
        """
        if not sources:
            raise ValueError("Archive needs at least one source")

        started = time.monotonic()
        date_time = date_time or current_date_time()

        multipart_id = await self.storage.create_multipart(result_key, ARCHIVE_CONTENT_TYPE)
        logger.info(f"[ARCHIVE] Building {result_key} from {len(sources)} source(s)")

        channel = ByteChannel(maxsize=self.channel_depth)
        consumer = asyncio.create_task(self._consume(channel, result_key, multipart_id))
        producer = asyncio.create_task(self._produce(sources, channel, consumer, progress, date_time))

        try:
            await producer
            parts = await consumer
            await self.storage.complete_multipart(result_key, multipart_id, parts)
        except Exception as e:
            for task in (producer, consumer):
                if not task.done():
                    task.cancel()
            await asyncio.gather(producer, consumer, return_exceptions=True)

            logger.error(f"[ARCHIVE] Build of {result_key} failed: {e!r}")
            self.observer.event("archive.failed", level=logging.ERROR, key=result_key, error=repr(e))
            await self.storage.abort_multipart(result_key, multipart_id)
            raise BuilderFailure(f"Failed to build archive {result_key}: {e}") from e

        result = ArchiveResult(key=result_key, size=channel.total_bytes, parts=parts)
        elapsed = time.monotonic() - started
        logger.info(
            f"[ARCHIVE] Published {result_key}: {result.size / 1024 / 1024:.2f}MB "
            f"in {len(parts)} part(s), {elapsed:.1f}s"
        )
        self.observer.timing("archive.build", elapsed * 1000, parts=len(parts))

        if delete_sources:
            await self._delete_sources(sources)

        return result

    # ------------------------------------------------------------------
    # Producer
    # ------------------------------------------------------------------

    async def _produce(
        self,
        sources: Sequence[ArchiveSource],
        channel: ByteChannel,
        consumer: asyncio.Task,
        progress: Optional[ProgressCallback],
        date_time: DateTime,
    ) -> None:
        sizes = await asyncio.gather(*(self._source_size(s) for s in sources))
        total = sum(size for size in sizes if size is not None)
        packed = 0
        reported = -1.0

        async def report(force: bool = False):
            nonlocal reported
            if progress is None:
                return
            fraction = min(1.0, packed / total) if total else 1.0
            if force or fraction - reported >= 0.01:
                reported = fraction
                await progress(fraction)

        sink = ArchiveSink()
        with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_STORED, allowZip64=True) as archive:
            for source, size in zip(sources, sizes):
                if size is None:
                    # Size unknown: read the whole object in one request
                    data = await self.storage.get_object(source.key)
                    with archive.open(archive_entry(source.name, len(data), date_time), mode="w") as entry:
                        entry.write(data)
                    packed += len(data)
                    await channel.put(sink.drain(), consumer)
                    await report()
                    continue

                with archive.open(archive_entry(source.name, size, date_time), mode="w") as entry:
                    for start in range(0, size, self.read_window):
                        end = min(start + self.read_window, size) - 1
                        window = await self.storage.get_range(source.key, start, end)
                        if len(window) != end - start + 1:
                            raise RemoteInconsistency(
                                f"Short read of {source.key} bytes {start}-{end}: got {len(window)}"
                            )
                        entry.write(window)
                        packed += len(window)
                        await channel.put(sink.drain(), consumer)
                        await report()

                # Data descriptor of the entry
                await channel.put(sink.drain(), consumer)
                logger.debug(f"[ARCHIVE] Packed {source.name} ({size} bytes)")

        # Central directory
        await channel.put(sink.drain(), consumer)
        await channel.close(consumer)
        await report(force=True)

    async def _source_size(self, source: ArchiveSource) -> Optional[int]:
        """Size via HEAD, or None when the store cannot report it."""
        try:
            return await self.storage.head_object(source.key)
        except ClientError as e:
            if is_not_found(e):
                raise
            logger.warning(f"[ARCHIVE] HEAD {source.key} failed ({e}), falling back to a full read")
            return None

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    async def _consume(self, channel: ByteChannel, key: str, multipart_id: str) -> List[CompletedPart]:
        splitter = FixedSizePartSplitter(self.part_size)
        pending: Set[asyncio.Task] = set()
        parts: List[CompletedPart] = []
        next_part = 1

        def start_upload(data: bytes):
            nonlocal next_part
            if next_part > MAX_PARTS:
                raise BuilderFailure(f"Archive {key} needs more than {MAX_PARTS} parts")
            pending.add(asyncio.create_task(
                self.storage.upload_part(key, multipart_id, next_part, data)
            ))
            next_part += 1

        def collect_finished():
            for task in [t for t in pending if t.done()]:
                pending.discard(task)
                parts.append(task.result())

        try:
            async for data in channel:
                for part in splitter.feed(data):
                    start_upload(part)
                collect_finished()

            tail = splitter.flush()
            if tail or next_part == 1:
                if next_part > 1 and len(tail) < self.min_part_size:
                    logger.warning(
                        f"[ARCHIVE] Final part of {key} is {len(tail)} bytes, "
                        f"below the {self.min_part_size} byte minimum"
                    )
                    self.observer.increment("archive.short_final_part")
                start_upload(tail)

            if pending:
                await asyncio.wait(
                    pending,
                    timeout=self.finalize_timeout,
                    return_when=asyncio.FIRST_EXCEPTION,
                )
            collect_finished()
            if pending:
                raise BuilderFailure(
                    f"Timed out after {self.finalize_timeout}s waiting for "
                    f"{len(pending)} part upload(s) of {key}"
                )
        finally:
            for task in pending:
                if not task.done():
                    task.cancel()

        parts.sort(key=lambda p: p.part_number)
        return parts

    async def _delete_sources(self, sources: Sequence[ArchiveSource]) -> None:
        results = await asyncio.gather(
            *(self.storage.delete_object(s.key) for s in sources),
            return_exceptions=True,
        )
        for source, result in zip(sources, results):
            if isinstance(result, Exception):
                logger.warning(f"[ARCHIVE] Failed to delete source {source.key}: {result}")
