"""
Configuration management for File Relay Service.
Loads environment variables using Pydantic Settings.
"""

from typing import List, Optional, Union
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


MB = 1024 * 1024


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "File Relay Service"
    APP_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    # Object store (any S3-compatible endpoint: MinIO, R2, AWS)
    S3_ENDPOINT: str = "localhost:9000"
    S3_ACCESS_KEY: str = "minioadmin"
    S3_SECRET_KEY: str = "minioadmin"
    S3_SECURE: bool = False
    S3_REGION: str = "us-east-1"
    S3_BUCKET: str = "file-relay"

    # Metadata store (in-process store when unset)
    REDIS_URL: Optional[str] = None

    # CORS Configuration (will be parsed by model_validator)
    CORS_ORIGINS: Union[str, List[str]] = ["*"]

    # Ingestion
    CHUNK_SIZE: int = 5 * MB                    # Must be >= provider minimum part size
    MAX_FILE_SIZE: int = 10 * 1024 * MB         # 10GB per file
    CREDENTIAL_PATTERN: str = r"^\d{4}$"        # 4-digit access code

    # Retry policy
    MAX_RETRY_ATTEMPTS: int = 5
    RETRY_DELAY_BASE: float = 1.0               # seconds
    RETRY_JITTER: float = 1.0                   # seconds

    # Remote calls
    STORAGE_CALL_TIMEOUT: float = 180.0         # per call, slow networks included
    STORAGE_MAX_WORKERS: int = 8
    PART_URL_EXPIRATION: int = 86400            # 24 hours
    DOWNLOAD_URL_EXPIRATION: int = 3600         # 1 hour

    # Archive builder
    STANDARD_PART_SIZE: int = 50 * MB
    MIN_PART_SIZE: int = 5 * MB
    ARCHIVE_READ_WINDOW: int = 10 * MB
    ARCHIVE_FINALIZE_TIMEOUT: float = 60.0
    ARCHIVE_CHANNEL_DEPTH: int = 4

    @model_validator(mode="before")
    @classmethod
    def parse_env_values(cls, values):
        """Parse environment variables from strings to proper types."""

        # Parse CORS_ORIGINS from comma-separated string to list
        if isinstance(values.get("CORS_ORIGINS"), str):
            values["CORS_ORIGINS"] = [
                origin.strip() for origin in values["CORS_ORIGINS"].split(",")
            ]

        return values

    @property
    def endpoint_url(self) -> str:
        """Object store endpoint with protocol."""
        if self.S3_ENDPOINT.startswith(("http://", "https://")):
            return self.S3_ENDPOINT
        protocol = "https" if self.S3_SECURE else "http"
        return f"{protocol}://{self.S3_ENDPOINT}"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        env_parse_none_str=None,
    )


# Global settings instance
settings = Settings()
