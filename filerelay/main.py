"""
File Relay Service - Main Application
Chunked direct-to-storage uploads, repacked server-side into one ZIP archive.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from filerelay.api import downloads, uploads
from filerelay.core.config import settings
from filerelay.core.dependencies import (
    Store,
    StorageClient,
    close_resources,
    get_metadata_store,
    get_storage_client,
)
from filerelay.core.errors import Incomplete, TransferError
from shared_schemas.common import ErrorResponse, IncompleteUploadResponse
from shared_schemas.transfer_service import HealthCheckResponse

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Runs on startup and shutdown.
    """
    # Startup
    logger.info(f"Starting {settings.APP_NAME}...")

    try:
        storage = await get_storage_client()
        storage.ensure_bucket_exists()
        storage.apply_cors(settings.CORS_ORIGINS)
        logger.info(f"Bucket ready: {settings.S3_BUCKET}")
    except Exception as e:
        logger.error(f"Failed to initialize bucket: {e}")
        # Continue anyway - health check reports the storage state

    await get_metadata_store()
    logger.info(f"{settings.APP_NAME} started successfully")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.APP_NAME}...")
    await close_resources()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description="Chunked direct-to-storage uploads repacked into a single ZIP archive",
    version=settings.APP_VERSION,
    lifespan=lifespan
)


# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


# Include API routers
app.include_router(uploads.router)
app.include_router(downloads.router)


@app.get("/", tags=["root"])
async def root():
    """Root endpoint with service information."""
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "endpoints": {
            "init": "POST /api/upload/init",
            "confirm": "POST /api/upload/chunk/confirm",
            "complete": "POST /api/upload/complete",
            "status": "GET /api/upload/{session_id}/status",
            "verify": "POST /api/download/verify",
            "download": "GET /api/download/{session_id}?token=...",
            "health": "/health"
        },
        "documentation": {
            "swagger": "/docs",
            "redoc": "/redoc"
        }
    }


@app.get("/health", tags=["health"], response_model=HealthCheckResponse)
async def health_check(storage: StorageClient, store: Store):
    """Health check endpoint."""
    s3_connection = "ok"
    metadata_store = "ok"

    try:
        await asyncio.get_running_loop().run_in_executor(storage.executor, storage.check_connection)
    except Exception as e:
        logger.error(f"Health check failed (storage): {e}")
        s3_connection = "failed"

    try:
        await store.ping()
    except Exception as e:
        logger.error(f"Health check failed (metadata store): {e}")
        metadata_store = "failed"

    healthy = s3_connection == "ok" and metadata_store == "ok"
    response = HealthCheckResponse(
        status="healthy" if healthy else "unhealthy",
        s3_connection=s3_connection,
        metadata_store=metadata_store
    )
    if not healthy:
        return JSONResponse(status_code=503, content=response.model_dump())
    return response


@app.exception_handler(TransferError)
async def transfer_error_handler(request: Request, exc: TransferError):
    """Map domain errors to their HTTP status with a standard error body."""
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
    else:
        logger.warning(f"{exc.error_code} on {request.url.path}: {exc.message}")

    if isinstance(exc, Incomplete):
        body = IncompleteUploadResponse(detail=exc.message, error_code=exc.error_code, missing=exc.missing)
    else:
        body = ErrorResponse(detail=exc.message, error_code=exc.error_code)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "detail": "Internal server error"
        }
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "filerelay.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=settings.LOG_LEVEL.lower()
    )
