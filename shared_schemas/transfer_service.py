"""
File Relay Service API schemas.
Type-safe contracts for the upload and archive endpoints.
"""

from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class SessionState(str, Enum):
    """Upload session lifecycle state (transitions are monotonic)."""
    INGESTING = "ingesting"    # Chunks being uploaded and confirmed
    SEALED = "sealed"          # All source uploads completed remotely
    ARCHIVING = "archiving"    # Archive builder running
    DONE = "done"              # Archive published
    FAILED = "failed"          # Terminal failure, see error


# ============================================================================
# Init
# ============================================================================

class FileDeclaration(BaseModel):
    """A file the client intends to upload."""
    name: str = Field(..., min_length=1, max_length=1024)
    size: int = Field(..., ge=0, description="Declared size in bytes")


class InitUploadRequest(BaseModel):
    """Request to open an upload session."""
    files: List[FileDeclaration] = Field(default_factory=list)
    password: str = Field(default="", description="Access code protecting the result")


class PartDescriptor(BaseModel):
    """Pre-authorized direct upload target for one chunk."""
    part_number: int
    upload_url: str
    headers: Dict[str, str] = Field(default_factory=dict)


class FileUploadPlan(BaseModel):
    """Upload plan for a single file."""
    name: str
    size: int
    total_chunks: int
    parts: List[PartDescriptor]


class InitUploadResponse(BaseModel):
    """Response to session init."""
    session_id: str
    chunk_size: int
    is_single_zip: bool
    files: List[FileUploadPlan]


# ============================================================================
# Chunk confirmation
# ============================================================================

class ChunkConfirmRequest(BaseModel):
    """Client report that a chunk reached storage."""
    session_id: str
    file_name: str
    chunk_index: int = Field(..., ge=0)
    part_number: int = Field(..., ge=1)
    etag: str = Field(..., min_length=1)


class ChunkConfirmResponse(BaseModel):
    """Progress after a chunk confirmation."""
    uploaded_count: int
    total_chunks: int
    is_new: bool = Field(..., description="False when the chunk had already been confirmed")
    progress: float = Field(..., description="Upload progress percentage")


# ============================================================================
# Completion / status
# ============================================================================

class CompleteUploadRequest(BaseModel):
    """Client signal that every chunk has been uploaded."""
    session_id: str


class CompleteUploadResponse(BaseModel):
    """Result of a completion request."""
    status: SessionState
    archive_id: Optional[str] = None


class UploadStatusResponse(BaseModel):
    """Session status projected from the session store and chunk ledger."""
    session_id: str
    state: SessionState
    progress: float = Field(..., description="Overall progress percentage")
    archive_id: Optional[str] = None
    archive_name: Optional[str] = None
    archive_size: Optional[int] = None
    error: Optional[str] = None


# ============================================================================
# Download access
# ============================================================================

class VerifyAccessRequest(BaseModel):
    """Access code check for a finished session."""
    session_id: str
    password: str


class VerifyAccessResponse(BaseModel):
    """Archive details and the URL that serves it."""
    session_id: str
    archive_name: str
    archive_size: int
    download_url: str = Field(..., description="Relative URL carrying the download token")


# ============================================================================
# Health Check
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response."""
    status: str
    s3_connection: str
    metadata_store: str
