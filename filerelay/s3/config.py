"""
S3 multipart configuration.
Provider limits plus the tunable sizes taken from settings.
"""

from filerelay.core.config import settings

# Provider limits (S3 / R2 / MinIO multipart contract)
MIN_PART_SIZE_LIMIT = 5 * 1024 * 1024           # 5MB minimum for every non-final part
MAX_PART_SIZE = 5 * 1024 * 1024 * 1024          # 5GB maximum for a single part
MAX_PARTS = 10000                                # Maximum parts per multipart upload

# Source uploads
PART_URL_EXPIRATION = settings.PART_URL_EXPIRATION
PART_CONTENT_TYPE = "application/octet-stream"

# Archive download
DOWNLOAD_URL_EXPIRATION = settings.DOWNLOAD_URL_EXPIRATION

# Archive output (every part but the last is exactly STANDARD_PART_SIZE)
STANDARD_PART_SIZE = settings.STANDARD_PART_SIZE
MIN_PART_SIZE = settings.MIN_PART_SIZE
READ_WINDOW_SIZE = settings.ARCHIVE_READ_WINDOW
ARCHIVE_CONTENT_TYPE = "application/zip"

# Browser uploads go straight to the bucket, so the bucket needs CORS rules
# that allow part PUTs and expose the ETag header the client must confirm.
CORS_ALLOWED_METHODS = ["GET", "PUT", "POST", "HEAD"]
CORS_EXPOSE_HEADERS = ["ETag", "Content-Length"]
CORS_MAX_AGE_SECONDS = 3600
