"""
Content-Type helpers for staged source objects.
"""

import mimetypes

DEFAULT_CONTENT_TYPE = "application/octet-stream"
ZIP_EXTENSIONS = (".zip",)


def detect_content_type(filename: str) -> str:
    """
    MIME type of a source file from its extension.

    The type is stored on the staged object, so a single ZIP that is copied
    into place as the archive keeps a sensible type.

    Examples:
        >>> detect_content_type("report.pdf")
        'application/pdf'

        >>> detect_content_type("unknown.xyz")
        'application/octet-stream'
    """
    guessed_type, _ = mimetypes.guess_type(filename, strict=False)
    return guessed_type or DEFAULT_CONTENT_TYPE


def is_zip_name(filename: str) -> bool:
    """True when the name says the file is already a ZIP archive."""
    return filename.lower().endswith(ZIP_EXTENSIONS)
