"""
Upload Session Manager - owns the upload lifecycle.

Handles:
- Session init (one remote multipart upload per file, every part pre-authorized)
- Chunk confirmation through the ChunkLedger
- Sealing (gap detection, then remote completion of every source upload)
- Archiving (streaming repack, or a server-side copy for a single ZIP)
- Progress projection from the session record and the ledger
- Download access: access code check, then a signed URL of the archive
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from filerelay.core.auth import (
    credential_matches,
    download_token,
    hash_credential,
    is_valid_credential,
    secrets_equal,
)
from filerelay.core.config import settings
from filerelay.core.errors import (
    AccessDenied,
    Incomplete,
    InvalidChunk,
    InvalidCredential,
    InvalidInput,
    InvalidStateTransition,
    NoFiles,
    RemoteInconsistency,
    SealFailed,
)
from filerelay.core.manager.archive_builder import ArchiveSource, StreamingArchiveBuilder
from filerelay.core.manager.ledger import ChunkLedger
from filerelay.core.observability import NULL_OBSERVER, Observer
from filerelay.models.session import SourceFileTarget, UploadSession, count_chunks, new_token
from filerelay.s3.client import MultipartStorageClient
from filerelay.s3.config import ARCHIVE_CONTENT_TYPE, MAX_PARTS, MIN_PART_SIZE_LIMIT
from filerelay.s3.models import PartUploadDescriptor
from filerelay.store.base import MetadataStore
from filerelay.store.sessions import SessionRepository
from filerelay.utils.content_type import detect_content_type
from shared_schemas.transfer_service import FileDeclaration, SessionState, UploadStatusResponse

logger = logging.getLogger(__name__)

MULTI_FILE_ARCHIVE_NAME = "files.zip"

# Overall progress: first half uploading, second half archiving
UPLOAD_WEIGHT = 0.5


@dataclass
class SessionDescriptor:
    """Result of init: the session plus every file's pre-authorized parts."""

    session: UploadSession
    part_descriptors: Dict[str, List[PartUploadDescriptor]]


@dataclass(frozen=True)
class ChunkProgress:
    is_new: bool
    uploaded_count: int
    total_chunks: int

    @property
    def progress(self) -> float:
        """Upload progress percentage."""
        return round(self.uploaded_count / self.total_chunks * 100, 2) if self.total_chunks else 100.0


def temp_key(session_id: str, file_name: str) -> str:
    return f"temp/{session_id}/{file_name}"


def archive_key(archive_id: str) -> str:
    return f"archives/{archive_id}.zip"


class UploadSessionManager:
    """
    Drives sessions through ingesting -> sealed -> archiving -> done.
    Any non-terminal state may move to failed.
    """

    def __init__(
        self,
        storage: MultipartStorageClient,
        store: MetadataStore,
        ledger: Optional[ChunkLedger] = None,
        builder: Optional[StreamingArchiveBuilder] = None,
        chunk_size: int = settings.CHUNK_SIZE,
        max_file_size: int = settings.MAX_FILE_SIZE,
        observer: Observer = NULL_OBSERVER,
    ):
        if chunk_size < MIN_PART_SIZE_LIMIT:
            logger.warning(
                f"Chunk size {chunk_size} is below the provider minimum part size "
                f"{MIN_PART_SIZE_LIMIT}; multi-chunk files will fail to complete"
            )
        self.storage = storage
        self.sessions = SessionRepository(store)
        self.ledger = ledger or ChunkLedger(store, observer=observer)
        self.builder = builder or StreamingArchiveBuilder(storage, observer=observer)
        self.chunk_size = chunk_size
        self.max_file_size = max_file_size
        self.observer = observer

        # Serializes state changes per session within this process; an entry
        # lives only while some call holds or waits on its lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Init
    # ------------------------------------------------------------------

    def _validate(self, files: Sequence[FileDeclaration], credential: str) -> None:
        """Reject bad input before any remote call is made."""
        if not is_valid_credential(credential):
            raise InvalidCredential()
        if not files:
            raise NoFiles()

        seen = set()
        for declared in files:
            name = declared.name
            if not name or name in (".", "..") or "/" in name or "\\" in name or "\x00" in name:
                raise InvalidInput(f"Invalid file name: {name!r}")
            if name in seen:
                raise InvalidInput(f"Duplicate file name: {name}")
            seen.add(name)

            if declared.size < 0:
                raise InvalidInput(f"Invalid size for {name}: {declared.size}")
            if declared.size > self.max_file_size:
                raise InvalidInput(
                    f"{name} is {declared.size} bytes, larger than the {self.max_file_size} byte limit"
                )
            if count_chunks(declared.size, self.chunk_size) > MAX_PARTS:
                raise InvalidInput(f"{name} needs more than {MAX_PARTS} chunks")

    async def init(self, files: Sequence[FileDeclaration], credential: str) -> SessionDescriptor:
        """
        Open a session.

        Args:
            files: Declared files, in upload order
            credential: Access code protecting the result

        Returns:
            SessionDescriptor with every part's upload descriptor

        Raises:
            InvalidCredential: If the access code is malformed
            NoFiles: If the file list is empty
            InvalidInput: If a file name or size is unacceptable
        """
        self._validate(files, credential)

        session_id = new_token()
        targets: List[SourceFileTarget] = []
        descriptors: Dict[str, List[PartUploadDescriptor]] = {}

        try:
            for declared in files:
                key = temp_key(session_id, declared.name)
                multipart_id = await self.storage.create_multipart(key, detect_content_type(declared.name))
                targets.append(SourceFileTarget(
                    name=declared.name,
                    declared_size=declared.size,
                    storage_key=key,
                    remote_multipart_id=multipart_id,
                    chunk_size=self.chunk_size,
                    total_chunks=count_chunks(declared.size, self.chunk_size),
                ))

            for target in targets:
                descriptors[target.name] = list(await asyncio.gather(*(
                    self.storage.authorize_part_upload(target.storage_key, target.remote_multipart_id, n)
                    for n in range(1, target.total_chunks + 1)
                )))
        except Exception as e:
            logger.error(f"Session init failed, aborting {len(targets)} multipart upload(s): {e}")
            await self._abort_sources(targets)
            raise

        session = UploadSession.create(hash_credential(credential), targets, session_id=session_id)
        await self.sessions.save(session)

        self.observer.increment("session.created", files=len(targets))
        logger.info(
            f"Created session {session_id}: {len(targets)} file(s), {session.total_chunks} chunk(s)"
            f"{' (single zip)' if session.is_single_zip else ''}"
        )
        return SessionDescriptor(session=session, part_descriptors=descriptors)

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    async def confirm_chunk(
        self,
        session_id: str,
        file_name: str,
        chunk_index: int,
        part_number: int,
        etag: str,
    ) -> ChunkProgress:
        """
        Record a chunk the client uploaded directly to storage.

        Raises:
            SessionNotFound: If the session does not exist
            InvalidStateTransition: If the session is no longer ingesting
            InvalidChunk: If the file or chunk index is unknown
            RemoteInconsistency: If the chunk was confirmed with another ETag (session fails)
        """
        session = await self.sessions.load(session_id)
        if session.state != SessionState.INGESTING:
            raise InvalidStateTransition(
                f"Session {session_id} is {session.state.value}, chunks can no longer be confirmed"
            )

        target = session.get_file(file_name)
        if target is None:
            raise InvalidChunk(f"Unknown file in session {session_id}: {file_name}")
        if not 0 <= chunk_index < target.total_chunks:
            raise InvalidChunk(
                f"Chunk index {chunk_index} out of range for {file_name} ({target.total_chunks} chunks)"
            )

        try:
            result = await self.ledger.confirm(session_id, file_name, chunk_index, part_number, etag)
        except RemoteInconsistency as e:
            await self._fail_if_still(session_id, SessionState.INGESTING, str(e))
            raise

        return ChunkProgress(
            is_new=result.is_new,
            uploaded_count=result.uploaded_count,
            total_chunks=session.total_chunks,
        )

    # ------------------------------------------------------------------
    # Seal
    # ------------------------------------------------------------------

    async def seal(self, session_id: str) -> UploadSession:
        """
        Verify every chunk is present and complete each source upload.

        Sealing is recomputed from the ledger on every call. A session that is
        already sealed (or further along) is returned unchanged.

        Raises:
            Incomplete: If any chunk index is missing; the session stays ingesting
            SealFailed: If a remote completion fails; the session stays ingesting
            InvalidStateTransition: If the session has failed
        """
        async with self._lock_for(session_id):
            session = await self.sessions.load(session_id)
            if session.state in (SessionState.SEALED, SessionState.ARCHIVING, SessionState.DONE):
                return session
            if session.state == SessionState.FAILED:
                raise InvalidStateTransition(f"Session {session_id} has failed: {session.error}")

            confirmed = await asyncio.gather(*(
                self.ledger.list_confirmed(session_id, target.name) for target in session.source_files
            ))

            missing: Dict[str, List[int]] = {}
            for target, records in zip(session.source_files, confirmed):
                present = {r.chunk_index for r in records}
                gaps = [i for i in range(target.total_chunks) if i not in present]
                if gaps:
                    missing[target.name] = gaps

            if missing:
                error = Incomplete(missing, {t.name: t.total_chunks for t in session.source_files})
                logger.warning(f"Seal of {session_id} refused: {error.message}")
                raise error

            for target, records in zip(session.source_files, confirmed):
                parts = [r.to_completed_part() for r in records if r.chunk_index < target.total_chunks]
                try:
                    await self.storage.complete_multipart(target.storage_key, target.remote_multipart_id, parts)
                except Exception as e:
                    logger.error(f"Seal of {session_id} failed on {target.name}: {e}")
                    raise SealFailed(target.name, e) from e

            session.transition_to(SessionState.SEALED)
            await self.sessions.save(session)

        self.observer.event("session.sealed", session_id=session_id)
        logger.info(f"Sealed session {session_id}")
        return session

    # ------------------------------------------------------------------
    # Archive
    # ------------------------------------------------------------------

    async def archive(self, session_id: str) -> UploadSession:
        """
        Build and publish the archive of a sealed session.

        Failures are recorded on the session (state failed, error set) rather
        than raised, so this can run as a background task.

        Raises:
            InvalidStateTransition: If the session is not sealed, or another
                writer made it terminal while the archive was being built
        """
        async with self._lock_for(session_id):
            session = await self.sessions.load(session_id)
            if session.state in (SessionState.ARCHIVING, SessionState.DONE):
                return session
            if session.state != SessionState.SEALED:
                raise InvalidStateTransition(
                    f"Session {session_id} is {session.state.value}, only sealed sessions can be archived"
                )

            session.transition_to(SessionState.ARCHIVING)
            await self.sessions.save(session)
            archive_id = new_token(16)
            key = archive_key(archive_id)

            try:
                if session.is_single_zip:
                    name, size = await self._publish_single_zip(session, key)
                else:
                    name, size = await self._publish_repacked(session, key)
            except Exception as e:
                logger.error(f"Archiving of session {session_id} failed: {e}")
                await self._fail(session, str(e))
                return await self.sessions.load(session_id)

            session.mark_done(archive_id, name, size)
            await self._save_live(session)
            await self.ledger.clear(session_id)

        self.observer.event("session.done", session_id=session_id, archive_id=archive_id, size=size)
        logger.info(f"Session {session_id} done: archive {archive_id} ({name}, {size} bytes)")
        return session

    async def _publish_single_zip(self, session: UploadSession, key: str):
        """A lone ZIP is already an archive: copy it into place."""
        source = session.source_files[0]
        await self.storage.copy_object(source.storage_key, key, ARCHIVE_CONTENT_TYPE)
        size = await self.storage.head_object(key)
        await self.storage.delete_object(source.storage_key)
        session.archive_progress = 1.0
        return source.name, size

    async def _publish_repacked(self, session: UploadSession, key: str):
        async def on_progress(fraction: float):
            session.archive_progress = fraction
            await self._save_live(session)

        sources = [ArchiveSource(name=t.name, key=t.storage_key) for t in session.source_files]
        result = await self.builder.build(sources, key, progress=on_progress)
        return MULTI_FILE_ARCHIVE_NAME, result.size

    async def _save_live(self, session: UploadSession) -> None:
        """Save a session unless the stored record has already reached a terminal state."""
        stored = await self.sessions.find(session.session_id)
        if stored is not None and stored.is_terminal:
            raise InvalidStateTransition(
                f"Session {session.session_id} is already {stored.state.value}, not overwriting it"
            )
        await self.sessions.save(session)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def status(self, session_id: str) -> UploadStatusResponse:
        """Project the current state and overall progress of a session."""
        session = await self.sessions.load(session_id)

        if session.state == SessionState.DONE:
            progress = 1.0
        elif session.sealed_at is not None:
            progress = UPLOAD_WEIGHT + (1 - UPLOAD_WEIGHT) * session.archive_progress
        else:
            total = session.total_chunks
            uploaded = min(await self.ledger.uploaded_count(session_id), total)
            progress = UPLOAD_WEIGHT * (uploaded / total if total else 0.0)

        return UploadStatusResponse(
            session_id=session_id,
            state=session.state,
            progress=round(progress * 100, 2),
            archive_id=session.result_archive_id,
            archive_name=session.result_archive_name,
            archive_size=session.result_archive_size,
            error=session.error,
        )

    # ------------------------------------------------------------------
    # Download access
    # ------------------------------------------------------------------

    async def _load_done(self, session_id: str) -> UploadSession:
        session = await self.sessions.load(session_id)
        if session.state != SessionState.DONE:
            raise InvalidStateTransition(
                f"Archive of session {session_id} is not ready ({session.state.value})"
            )
        return session

    async def verify_access(self, session_id: str, credential: str) -> Tuple[UploadSession, str]:
        """
        Check an access code against a finished session.

        Returns:
            The session and a download token for its archive

        Raises:
            SessionNotFound: If the session does not exist
            InvalidStateTransition: If the archive is not ready
            AccessDenied: If the access code does not match
        """
        session = await self._load_done(session_id)
        if not credential_matches(credential, session.credential_hash):
            self.observer.increment("session.access_denied")
            logger.warning(f"Wrong access code for session {session_id}")
            raise AccessDenied()
        return session, download_token(session_id, session.credential_hash)

    async def authorize_download(self, session_id: str, token: str) -> str:
        """
        Exchange a download token for a short-lived signed GET of the archive.

        Raises:
            SessionNotFound: If the session does not exist
            InvalidStateTransition: If the archive is not ready
            AccessDenied: If the token is missing or wrong
        """
        session = await self._load_done(session_id)
        if not token or not secrets_equal(token, download_token(session_id, session.credential_hash)):
            raise AccessDenied("Invalid download token")

        url = await self.storage.authorize_download(
            archive_key(session.result_archive_id),
            session.result_archive_name,
        )
        self.observer.increment("session.download_authorized")
        logger.info(f"Authorized download of {session.result_archive_name} for session {session_id}")
        return url

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _fail_if_still(self, session_id: str, expected: SessionState, error: str) -> None:
        """Fail the stored session, but only if it has not moved on from ``expected``."""
        async with self._lock_for(session_id):
            session = await self.sessions.load(session_id)
            if session.state != expected:
                logger.warning(
                    f"Not failing session {session_id}: it is {session.state.value} now ({error})"
                )
                return
            await self._fail(session, error)

    async def _fail(self, session: UploadSession, error: str) -> None:
        """Record a failure. The caller holds the session lock."""
        stored = await self.sessions.find(session.session_id)
        if session.is_terminal or (stored is not None and stored.is_terminal):
            return
        source_state = session.state
        session.mark_failed(error)
        await self.sessions.save(session)
        self.observer.event("session.failed", level=logging.ERROR, session_id=session.session_id, error=error)
        logger.error(f"Session {session.session_id} failed: {error}")

        if source_state == SessionState.INGESTING:
            await self._abort_sources(session.source_files)

    async def _abort_sources(self, targets: Sequence[SourceFileTarget]) -> None:
        await asyncio.gather(*(
            self.storage.abort_multipart(t.storage_key, t.remote_multipart_id) for t in targets
        ))
