"""
Response envelopes shared by every file relay endpoint.
"""

from typing import Dict, Generic, List, TypeVar
from pydantic import BaseModel, Field


T = TypeVar('T')


class SuccessResponse(BaseModel, Generic[T]):
    """
    Generic success response wrapper.

    Example:
        SuccessResponse[CompleteUploadResponse](
            success=True,
            message="Upload sealed, archive is being built",
            data=CompleteUploadResponse(status=SessionState.SEALED)
        )
    """
    success: bool
    message: str | None = None
    data: T


class ErrorResponse(BaseModel):
    """Error body; error_code is stable, detail is for humans."""
    success: bool = False
    detail: str
    error_code: str | None = None


class IncompleteUploadResponse(ErrorResponse):
    """Error body of a completion refused because chunks are missing."""
    missing: Dict[str, List[int]] = Field(
        default_factory=dict,
        description="File name -> 0-based indices of chunks never confirmed"
    )
