"""
Upload API endpoints.
Clients PUT chunk bytes straight to storage; this API only hands out
pre-authorized part URLs and tracks confirmations, completion and status.
"""

import logging

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter, BackgroundTasks, HTTPException, status

from filerelay.core.dependencies import SessionManager
from filerelay.core.manager.session_manager import SessionDescriptor
from shared_schemas.common import SuccessResponse
from shared_schemas.transfer_service import (
    ChunkConfirmRequest,
    ChunkConfirmResponse,
    CompleteUploadRequest,
    CompleteUploadResponse,
    FileUploadPlan,
    InitUploadRequest,
    InitUploadResponse,
    PartDescriptor,
    SessionState,
    UploadStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/upload",
    tags=["upload"]
)


def _storage_unavailable(action: str, error: Exception) -> HTTPException:
    logger.error(f"[UPLOAD API] Storage error during {action}: {error}")
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"Storage error during {action}: {error}"
    )


def _to_init_response(descriptor: SessionDescriptor) -> InitUploadResponse:
    session = descriptor.session
    return InitUploadResponse(
        session_id=session.session_id,
        chunk_size=session.source_files[0].chunk_size,
        is_single_zip=session.is_single_zip,
        files=[
            FileUploadPlan(
                name=target.name,
                size=target.declared_size,
                total_chunks=target.total_chunks,
                parts=[
                    PartDescriptor(part_number=p.part_number, upload_url=p.url, headers=p.headers)
                    for p in descriptor.part_descriptors[target.name]
                ],
            )
            for target in session.source_files
        ],
    )


@router.post("/init", response_model=InitUploadResponse)
async def init_upload(request: InitUploadRequest, manager: SessionManager):
    """
    Open an upload session.

    Creates one multipart upload per file and returns a pre-signed PUT URL
    for every chunk.

    Example:
        curl -X POST "http://server/api/upload/init" \\
          -H "Content-Type: application/json" \\
          -d '{"files": [{"name": "a.bin", "size": 12582912}], "password": "1234"}'
    """
    try:
        descriptor = await manager.init(request.files, request.password)
    except (ClientError, BotoCoreError) as e:
        raise _storage_unavailable("init", e)

    return _to_init_response(descriptor)


@router.post("/chunk/confirm", response_model=ChunkConfirmResponse)
async def confirm_chunk(request: ChunkConfirmRequest, manager: SessionManager):
    """Record a chunk uploaded directly to storage. Safe to repeat."""
    result = await manager.confirm_chunk(
        session_id=request.session_id,
        file_name=request.file_name,
        chunk_index=request.chunk_index,
        part_number=request.part_number,
        etag=request.etag,
    )
    return ChunkConfirmResponse(
        uploaded_count=result.uploaded_count,
        total_chunks=result.total_chunks,
        is_new=result.is_new,
        progress=result.progress,
    )


@router.post("/complete", response_model=SuccessResponse[CompleteUploadResponse])
async def complete_upload(
    request: CompleteUploadRequest,
    manager: SessionManager,
    background_tasks: BackgroundTasks,
):
    """
    Seal the session and start building the archive in the background.

    Returns 409 with the missing chunks when the upload is incomplete; the
    client can upload them and call this again.
    """
    session = await manager.seal(request.session_id)

    if session.state == SessionState.SEALED:
        background_tasks.add_task(manager.archive, session.session_id)
        message = "Upload sealed, archive is being built"
    else:
        message = f"Upload already {session.state.value}"

    logger.info(f"[UPLOAD API] Complete {session.session_id}: {session.state.value}")
    return SuccessResponse[CompleteUploadResponse](
        success=True,
        message=message,
        data=CompleteUploadResponse(status=session.state, archive_id=session.result_archive_id),
    )


@router.get("/{session_id}/status", response_model=UploadStatusResponse)
async def upload_status(session_id: str, manager: SessionManager):
    """Current state and overall progress of a session."""
    return await manager.status(session_id)
