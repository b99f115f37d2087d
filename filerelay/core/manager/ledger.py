"""
Chunk Ledger - idempotent record of confirmed chunks.

Each confirmed chunk is one create-only key in the metadata store, so two
confirmations of the same chunk can never both be "new". A per-session
counter is incremented only by the confirmation that created the record,
which keeps the uploaded count O(1) to read and free of double counts.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import List

from filerelay.core.errors import InvalidChunk, RemoteInconsistency
from filerelay.core.observability import NULL_OBSERVER, Observer
from filerelay.models.session import ChunkRecord
from filerelay.s3.models import normalize_etag
from filerelay.store.base import DEFAULT_PAGE_SIZE, MetadataStore
from filerelay.store.keys import chunk_key, counter_key, file_chunk_prefix, session_chunk_prefix

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfirmResult:
    is_new: bool
    uploaded_count: int


class ChunkLedger:
    """Per-(session, file, chunk index) confirmation records."""

    def __init__(
        self,
        store: MetadataStore,
        observer: Observer = NULL_OBSERVER,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self.store = store
        self.observer = observer
        self.page_size = page_size

    async def confirm(
        self,
        session_id: str,
        file_name: str,
        chunk_index: int,
        part_number: int,
        etag: str,
    ) -> ConfirmResult:
        """
        Record that a chunk reached storage.

        Args:
            session_id: Session identifier
            file_name: File the chunk belongs to
            chunk_index: 0-based chunk index
            part_number: Provider part number (must be chunk_index + 1)
            etag: ETag the provider returned for the part

        Returns:
            ConfirmResult; ``is_new`` is False for a replayed confirmation

        Raises:
            InvalidChunk: If the index/part number pair is malformed
            RemoteInconsistency: If the chunk was confirmed with a different ETag
        """
        if chunk_index < 0 or part_number != chunk_index + 1:
            raise InvalidChunk(
                f"Part number {part_number} does not match chunk index {chunk_index} of {file_name}"
            )
        etag = normalize_etag(etag)
        if not etag:
            raise InvalidChunk(f"Empty ETag for chunk {chunk_index} of {file_name}")

        key = chunk_key(session_id, file_name, chunk_index)
        record = ChunkRecord(
            session_id=session_id,
            file_name=file_name,
            chunk_index=chunk_index,
            part_number=part_number,
            etag=etag,
        )

        if await self.store.add(key, json.dumps(record.to_dict())):
            count = await self.store.incr(counter_key(session_id))
            self.observer.increment("ledger.chunk_confirmed")
            logger.debug(f"[LEDGER] {session_id} {file_name}#{chunk_index} confirmed ({count} total)")
            return ConfirmResult(is_new=True, uploaded_count=count)

        existing = await self.store.get(key)
        if existing is not None:
            previous = ChunkRecord.from_dict(json.loads(existing))
            if normalize_etag(previous.etag) != etag:
                self.observer.event(
                    "ledger.etag_mismatch",
                    level=logging.ERROR,
                    session_id=session_id,
                    file_name=file_name,
                    chunk_index=chunk_index,
                )
                raise RemoteInconsistency(
                    f"Chunk {chunk_index} of {file_name} was already confirmed with ETag "
                    f"{previous.etag}, got {etag}"
                )

        logger.debug(f"[LEDGER] {session_id} {file_name}#{chunk_index} already confirmed")
        self.observer.increment("ledger.chunk_replayed")
        return ConfirmResult(is_new=False, uploaded_count=await self.uploaded_count(session_id))

    async def uploaded_count(self, session_id: str) -> int:
        raw = await self.store.get(counter_key(session_id))
        return int(raw) if raw else 0

    async def list_confirmed(self, session_id: str, file_name: str) -> List[ChunkRecord]:
        """
        All confirmed chunks of one file, sorted by part number.

        Keys are listed page by page and every page is fetched with one bulk
        read; the page reads run concurrently.
        """
        fetches = []
        async for page in self.store.iter_key_pages(file_chunk_prefix(session_id, file_name), self.page_size):
            fetches.append(asyncio.create_task(self.store.get_many(page)))

        pages = await asyncio.gather(*fetches)
        records = [
            ChunkRecord.from_dict(json.loads(raw))
            for values in pages
            for raw in values
            if raw is not None
        ]
        records.sort(key=lambda r: r.part_number)
        return records

    async def clear(self, session_id: str) -> int:
        """Delete every chunk record and the counter of a session."""
        deleted = 0
        async for page in self.store.iter_key_pages(session_chunk_prefix(session_id), self.page_size):
            await self.store.delete(*page)
            deleted += len(page)
        await self.store.delete(counter_key(session_id))
        logger.info(f"[LEDGER] Cleared {deleted} chunk records of session {session_id}")
        return deleted
