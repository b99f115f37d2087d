"""
Download API endpoints.
The access code set at init unlocks the finished archive: verifying it yields
a download token, and the token is exchanged for a signed GET of the archive.
"""

import logging

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter, HTTPException, status
from fastapi.responses import RedirectResponse

from filerelay.core.dependencies import SessionManager
from shared_schemas.transfer_service import VerifyAccessRequest, VerifyAccessResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/download",
    tags=["download"]
)


@router.post("/verify", response_model=VerifyAccessResponse)
async def verify_access(request: VerifyAccessRequest, manager: SessionManager):
    """
    Check the access code of a finished upload.

    Example:
        curl -X POST "http://server/api/download/verify" \\
          -H "Content-Type: application/json" \\
          -d '{"session_id": "abc", "password": "1234"}'
    """
    session, token = await manager.verify_access(request.session_id, request.password)
    return VerifyAccessResponse(
        session_id=session.session_id,
        archive_name=session.result_archive_name,
        archive_size=session.result_archive_size,
        download_url=f"{router.prefix}/{session.session_id}?token={token}",
    )


@router.get("/{session_id}")
async def download_archive(session_id: str, manager: SessionManager, token: str = ""):
    """Redirect to a short-lived signed URL of the archive."""
    try:
        url = await manager.authorize_download(session_id, token)
    except (ClientError, BotoCoreError) as e:
        logger.error(f"[DOWNLOAD API] Storage error signing {session_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Storage error during download: {e}"
        )

    return RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
