"""
Upload session data models for internal use.
"""

import math
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from filerelay.core.errors import InvalidStateTransition
from filerelay.s3.models import CompletedPart
from filerelay.utils.content_type import is_zip_name
from shared_schemas.transfer_service import SessionState


# Allowed forward moves; FAILED is reachable from every non-terminal state
_TRANSITIONS = {
    SessionState.INGESTING: {SessionState.SEALED, SessionState.FAILED},
    SessionState.SEALED: {SessionState.ARCHIVING, SessionState.FAILED},
    SessionState.ARCHIVING: {SessionState.DONE, SessionState.FAILED},
    SessionState.DONE: set(),
    SessionState.FAILED: set(),
}

TERMINAL_STATES = frozenset({SessionState.DONE, SessionState.FAILED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def new_token(nbytes: int = 24) -> str:
    """Caller-unguessable opaque identifier."""
    return secrets.token_urlsafe(nbytes)


def count_chunks(size: int, chunk_size: int) -> int:
    """Number of chunks a file of ``size`` bytes is split into (at least one)."""
    return max(1, math.ceil(size / chunk_size))


@dataclass
class SourceFileTarget:
    """One logical file within a session, staged under a temporary key."""

    name: str
    declared_size: int
    storage_key: str
    remote_multipart_id: str
    chunk_size: int
    total_chunks: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "declared_size": self.declared_size,
            "storage_key": self.storage_key,
            "remote_multipart_id": self.remote_multipart_id,
            "chunk_size": self.chunk_size,
            "total_chunks": self.total_chunks,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceFileTarget":
        return cls(**data)


@dataclass
class ChunkRecord:
    """One confirmed chunk, keyed by (session_id, file_name, chunk_index)."""

    session_id: str
    file_name: str
    chunk_index: int
    part_number: int
    etag: str
    confirmed_at: datetime = field(default_factory=utcnow)

    def to_completed_part(self) -> CompletedPart:
        return CompletedPart(part_number=self.part_number, etag=self.etag)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "file_name": self.file_name,
            "chunk_index": self.chunk_index,
            "part_number": self.part_number,
            "etag": self.etag,
            "confirmed_at": self.confirmed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkRecord":
        return cls(
            session_id=data["session_id"],
            file_name=data["file_name"],
            chunk_index=int(data["chunk_index"]),
            part_number=int(data["part_number"]),
            etag=data["etag"],
            confirmed_at=_parse_time(data.get("confirmed_at")) or utcnow(),
        )


@dataclass
class UploadSession:
    """One client-initiated multi-file transfer."""

    session_id: str
    credential_hash: str
    source_files: List[SourceFileTarget]

    # Status
    state: SessionState = SessionState.INGESTING
    is_single_zip: bool = False

    # Timestamps
    created_at: datetime = field(default_factory=utcnow)
    sealed_at: Optional[datetime] = None

    # Result (set only once DONE)
    result_archive_id: Optional[str] = None
    result_archive_name: Optional[str] = None
    result_archive_size: Optional[int] = None

    # Archive builder progress, 0.0 - 1.0
    archive_progress: float = 0.0
    error: Optional[str] = None

    @classmethod
    def create(
        cls,
        credential_hash: str,
        source_files: List[SourceFileTarget],
        session_id: Optional[str] = None,
    ) -> "UploadSession":
        """
        Create a new session in the INGESTING state.

        Args:
            credential_hash: One-way hash of the access code
            source_files: Files in upload order
            session_id: Pre-allocated id (a fresh token when omitted)

        Returns:
            New UploadSession instance
        """
        is_single_zip = len(source_files) == 1 and is_zip_name(source_files[0].name)
        return cls(
            session_id=session_id or new_token(),
            credential_hash=credential_hash,
            source_files=list(source_files),
            is_single_zip=is_single_zip,
        )

    @property
    def total_chunks(self) -> int:
        return sum(f.total_chunks for f in self.source_files)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def get_file(self, name: str) -> Optional[SourceFileTarget]:
        for target in self.source_files:
            if target.name == name:
                return target
        return None

    def can_transition_to(self, new_state: SessionState) -> bool:
        return new_state in _TRANSITIONS[self.state]

    def transition_to(self, new_state: SessionState) -> None:
        """
        Move the session forward.

        Raises:
            InvalidStateTransition: If the move is backward or out of a terminal state
        """
        if not self.can_transition_to(new_state):
            raise InvalidStateTransition(
                f"Session {self.session_id} cannot move from {self.state.value} to {new_state.value}"
            )
        if new_state == SessionState.DONE and not self.result_archive_id:
            raise InvalidStateTransition(f"Session {self.session_id} cannot be done without an archive")
        self.state = new_state
        if new_state == SessionState.SEALED:
            self.sealed_at = utcnow()

    def mark_done(self, archive_id: str, archive_name: str, archive_size: int) -> None:
        if not self.can_transition_to(SessionState.DONE):
            raise InvalidStateTransition(f"Session {self.session_id} is {self.state.value}, not archiving")
        self.result_archive_id = archive_id
        self.result_archive_name = archive_name
        self.result_archive_size = archive_size
        self.archive_progress = 1.0
        self.transition_to(SessionState.DONE)

    def mark_failed(self, error: str) -> None:
        self.transition_to(SessionState.FAILED)
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for persistence."""
        return {
            "session_id": self.session_id,
            "credential_hash": self.credential_hash,
            "source_files": [f.to_dict() for f in self.source_files],
            "state": self.state.value,
            "is_single_zip": self.is_single_zip,
            "created_at": self.created_at.isoformat(),
            "sealed_at": self.sealed_at.isoformat() if self.sealed_at else None,
            "result_archive_id": self.result_archive_id,
            "result_archive_name": self.result_archive_name,
            "result_archive_size": self.result_archive_size,
            "archive_progress": self.archive_progress,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UploadSession":
        return cls(
            session_id=data["session_id"],
            credential_hash=data["credential_hash"],
            source_files=[SourceFileTarget.from_dict(f) for f in data["source_files"]],
            state=SessionState(data["state"]),
            is_single_zip=data.get("is_single_zip", False),
            created_at=_parse_time(data.get("created_at")) or utcnow(),
            sealed_at=_parse_time(data.get("sealed_at")),
            result_archive_id=data.get("result_archive_id"),
            result_archive_name=data.get("result_archive_name"),
            result_archive_size=data.get("result_archive_size"),
            archive_progress=float(data.get("archive_progress", 0.0)),
            error=data.get("error"),
        )
