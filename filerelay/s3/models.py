"""
Typed request/response models for the S3 multipart protocol.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List


def normalize_etag(etag: str) -> str:
    """Strip surrounding quotes and whitespace so ETags compare reliably."""
    return etag.strip().strip('"')


@dataclass(frozen=True)
class CompletedPart:
    """One uploaded part of a multipart upload."""

    part_number: int
    etag: str
    size: int = 0

    def to_request(self) -> Dict[str, object]:
        # S3 expects the quoted form it returned from UploadPart
        return {"PartNumber": self.part_number, "ETag": f'"{normalize_etag(self.etag)}"'}


@dataclass
class CompleteMultipartRequest:
    """
    Body of a CompleteMultipartUpload call.

    Parts are kept sorted by part number; duplicate part numbers and an empty
    part list are rejected before anything goes over the wire.
    """

    parts: List[CompletedPart] = field(default_factory=list)

    def __post_init__(self):
        if not self.parts:
            raise ValueError("CompleteMultipartUpload requires at least one part")
        self.parts = sorted(self.parts, key=lambda p: p.part_number)
        numbers = [p.part_number for p in self.parts]
        if len(set(numbers)) != len(numbers):
            raise ValueError(f"Duplicate part numbers in completion request: {numbers}")
        if numbers[0] < 1:
            raise ValueError("Part numbers start at 1")

    @classmethod
    def from_parts(cls, parts: Iterable[CompletedPart]) -> "CompleteMultipartRequest":
        return cls(parts=list(parts))

    def to_request(self) -> Dict[str, List[Dict[str, object]]]:
        """Structure boto3 serializes into the provider's XML body."""
        return {"Parts": [p.to_request() for p in self.parts]}


@dataclass(frozen=True)
class PartUploadDescriptor:
    """Pre-authorized direct upload target handed to the client."""

    part_number: int
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
