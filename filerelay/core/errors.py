"""
Domain errors for the upload and archive pipeline.

Each error carries a stable ``error_code`` and the HTTP status the API layer
should answer with. Transient storage failures are not represented here: they
surface as botocore/httpx exceptions and are handled by ``RetryPolicy``.
"""

from typing import Dict, List, Optional


class TransferError(Exception):
    """Base class for all upload/archive errors."""

    error_code = "transfer_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# ============================================================================
# Invalid input (user-facing, never retried)
# ============================================================================

class InvalidInput(TransferError):
    error_code = "invalid_input"
    status_code = 400


class InvalidCredential(InvalidInput):
    error_code = "invalid_credential"

    def __init__(self, message: str = "Access code must be 4 digits"):
        super().__init__(message)


class NoFiles(InvalidInput):
    error_code = "no_files"

    def __init__(self, message: str = "No files to upload"):
        super().__init__(message)


class InvalidChunk(InvalidInput):
    error_code = "invalid_chunk"


# ============================================================================
# Session lookup / lifecycle
# ============================================================================

class SessionNotFound(TransferError):
    error_code = "session_not_found"
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__(f"Upload session not found: {session_id}")
        self.session_id = session_id


class AccessDenied(TransferError):
    """Wrong access code or download token."""

    error_code = "access_denied"
    status_code = 401

    def __init__(self, message: str = "Wrong access code"):
        super().__init__(message)


class InvalidStateTransition(TransferError):
    error_code = "invalid_state"
    status_code = 409


class Incomplete(TransferError):
    """Seal attempted before every chunk of every file was confirmed."""

    error_code = "incomplete"
    status_code = 409

    def __init__(self, missing: Dict[str, List[int]], totals: Optional[Dict[str, int]] = None):
        self.missing = missing
        self.totals = totals or {}
        details = []
        for name, indices in missing.items():
            total = self.totals.get(name)
            have = f" ({total - len(indices)}/{total} chunks)" if total is not None else ""
            details.append(f"{name}: missing {len(indices)} chunk(s) {indices}{have}")
        super().__init__("Upload incomplete - " + "; ".join(details))


# ============================================================================
# Remote failures
# ============================================================================

class RemoteInconsistency(TransferError):
    """Remote or ledger state contradicts what the caller reported."""

    error_code = "remote_inconsistency"
    status_code = 409


class SealFailed(TransferError):
    """Completing a source multipart upload failed after retries."""

    error_code = "seal_failed"
    status_code = 502

    def __init__(self, file_name: str, cause: Exception):
        super().__init__(f"Failed to complete upload of {file_name}: {cause}")
        self.file_name = file_name
        self.cause = cause


class BuilderFailure(TransferError):
    """Archive packing or publishing failed; the result upload was aborted."""

    error_code = "builder_failure"
    status_code = 502
