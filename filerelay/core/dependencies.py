"""
Shared dependencies for FastAPI endpoints.
"""

import logging
from typing import Annotated, Optional

from fastapi import Depends

from filerelay.core.config import settings
from filerelay.core.manager.archive_builder import StreamingArchiveBuilder
from filerelay.core.manager.session_manager import UploadSessionManager
from filerelay.core.observability import LoggingObserver, Observer
from filerelay.core.retry import RetryPolicy
from filerelay.s3.client import MultipartStorageClient
from filerelay.store.base import MetadataStore
from filerelay.store.memory import InMemoryMetadataStore
from filerelay.store.redis_store import RedisMetadataStore

logger = logging.getLogger(__name__)


_observer: Observer = LoggingObserver()

# Singletons, created on first use
_storage_client: Optional[MultipartStorageClient] = None
_metadata_store: Optional[MetadataStore] = None
_session_manager: Optional[UploadSessionManager] = None


def build_retry_policy(observer: Observer = _observer) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.MAX_RETRY_ATTEMPTS,
        base_delay=settings.RETRY_DELAY_BASE,
        jitter=settings.RETRY_JITTER,
        call_timeout=settings.STORAGE_CALL_TIMEOUT,
        observer=observer,
    )


async def get_storage_client() -> MultipartStorageClient:
    """Get or create the global storage client."""
    global _storage_client
    if _storage_client is None:
        _storage_client = MultipartStorageClient(
            bucket=settings.S3_BUCKET,
            retry_policy=build_retry_policy(),
            max_workers=settings.STORAGE_MAX_WORKERS,
            observer=_observer,
        )
    return _storage_client


async def get_metadata_store() -> MetadataStore:
    """
    Get or create the global metadata store.
    Redis when REDIS_URL is set, otherwise an in-process store.
    """
    global _metadata_store
    if _metadata_store is None:
        if settings.REDIS_URL:
            _metadata_store = RedisMetadataStore.from_url(settings.REDIS_URL)
        else:
            logger.warning("REDIS_URL not set, using in-process metadata store (not durable)")
            _metadata_store = InMemoryMetadataStore()
    return _metadata_store


async def get_session_manager() -> UploadSessionManager:
    """Get or create the global session manager."""
    global _session_manager
    if _session_manager is None:
        storage = await get_storage_client()
        _session_manager = UploadSessionManager(
            storage=storage,
            store=await get_metadata_store(),
            builder=StreamingArchiveBuilder(storage, observer=_observer),
            observer=_observer,
        )
    return _session_manager


async def close_resources():
    """Release the global clients."""
    global _storage_client, _metadata_store, _session_manager
    if _metadata_store is not None:
        await _metadata_store.close()
        _metadata_store = None
    if _storage_client is not None:
        _storage_client.close()
        _storage_client = None
    _session_manager = None


# Dependency annotations
SessionManager = Annotated[UploadSessionManager, Depends(get_session_manager)]
StorageClient = Annotated[MultipartStorageClient, Depends(get_storage_client)]
Store = Annotated[MetadataStore, Depends(get_metadata_store)]
