"""
Multipart storage client.
Retry-wrapped façade over the S3 multipart protocol (create, pre-signed part
upload, complete, abort, head, ranged get) used by both the ingestion and the
archive side.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, List, Optional, TypeVar, Union
from urllib.parse import quote

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.client import Config
from botocore.exceptions import ClientError

from filerelay.core.config import settings
from filerelay.core.observability import NULL_OBSERVER, Observer
from filerelay.core.retry import RetryPolicy
from filerelay.s3.config import (
    CORS_ALLOWED_METHODS,
    CORS_EXPOSE_HEADERS,
    CORS_MAX_AGE_SECONDS,
    DOWNLOAD_URL_EXPIRATION,
    MAX_PART_SIZE,
    PART_CONTENT_TYPE,
    PART_URL_EXPIRATION,
)
from filerelay.s3.models import (
    CompletedPart,
    CompleteMultipartRequest,
    PartUploadDescriptor,
    normalize_etag,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def error_code(error: ClientError) -> str:
    """Provider error code of a botocore ClientError ('NoSuchUpload', '404', ...)."""
    return str(error.response.get("Error", {}).get("Code", ""))


def is_not_found(error: BaseException) -> bool:
    return isinstance(error, ClientError) and error_code(error) in ("404", "NoSuchKey", "NotFound")


class MultipartStorageClient:
    """Wrapper for S3 multipart operations against a single bucket."""

    def __init__(
        self,
        bucket: str,
        client: Any = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_workers: int = 8,
        observer: Observer = NULL_OBSERVER,
    ):
        """
        Initialize the storage client.

        Args:
            bucket: Bucket holding temp sources and archives
            client: Pre-built boto3 S3 client (built from settings when omitted)
            retry_policy: Policy wrapping every remote call
            max_workers: Executor threads running blocking boto3 calls
            observer: Metrics/event sink
        """
        self.bucket = bucket
        self.client = client or build_boto3_client()
        self.retry = retry_policy or RetryPolicy()
        self.observer = observer

        # Blocking boto3 calls run here, off the event loop
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="s3-call")

        logger.info(f"Storage client initialized for bucket: {bucket}")

    async def _call(self, label: str, fn: Callable[[], T]) -> T:
        """Run a blocking boto3 call on the executor under the retry policy."""
        loop = asyncio.get_running_loop()
        return await self.retry.execute(
            lambda: loop.run_in_executor(self.executor, fn),
            label=label,
        )

    # ------------------------------------------------------------------
    # Multipart protocol
    # ------------------------------------------------------------------

    async def create_multipart(self, key: str, content_type: Optional[str] = None) -> str:
        """
        Start a multipart upload.

        Args:
            key: Object key
            content_type: MIME type stored on the final object

        Returns:
            Provider multipart upload id
        """
        extra = {"ContentType": content_type} if content_type else {}

        def _create():
            return self.client.create_multipart_upload(Bucket=self.bucket, Key=key, **extra)

        response = await self._call(f"Create multipart upload for {key}", _create)
        upload_id = response["UploadId"]
        logger.info(f"[MULTIPART] Created upload for {self.bucket}/{key}: {upload_id}")
        return upload_id

    async def authorize_part_upload(
        self,
        key: str,
        multipart_id: str,
        part_number: int,
        expiration: int = PART_URL_EXPIRATION,
    ) -> PartUploadDescriptor:
        """
        Pre-sign a direct PUT of one part so bytes never pass through this service.

        Returns:
            Descriptor with the signed URL and the headers the client must send
        """

        def _sign():
            return self.client.generate_presigned_url(
                "upload_part",
                Params={
                    "Bucket": self.bucket,
                    "Key": key,
                    "UploadId": multipart_id,
                    "PartNumber": part_number,
                },
                ExpiresIn=expiration,
            )

        url = await self._call(f"Sign part {part_number} of {key}", _sign)
        return PartUploadDescriptor(
            part_number=part_number,
            url=url,
            headers={"Content-Type": PART_CONTENT_TYPE},
        )

    async def upload_part(self, key: str, multipart_id: str, part_number: int, data: bytes) -> CompletedPart:
        """Upload one part from this process (archive output)."""
        if len(data) > MAX_PART_SIZE:
            raise ValueError(f"Part {part_number} exceeds provider maximum: {len(data)} bytes")

        def _upload():
            return self.client.upload_part(
                Bucket=self.bucket,
                Key=key,
                UploadId=multipart_id,
                PartNumber=part_number,
                Body=data,
            )

        response = await self._call(f"Upload part {part_number} of {key}", _upload)
        etag = response.get("ETag")
        if not etag:
            raise ClientError(
                {"Error": {"Code": "MissingETag", "Message": f"No ETag returned for part {part_number}"}},
                "UploadPart",
            )
        self.observer.increment("storage.part_uploaded", bytes=len(data))
        logger.debug(f"[MULTIPART] Uploaded part {part_number} of {key}: {len(data)} bytes")
        return CompletedPart(part_number=part_number, etag=normalize_etag(etag), size=len(data))

    async def complete_multipart(
        self,
        key: str,
        multipart_id: str,
        parts: Union[CompleteMultipartRequest, Iterable[CompletedPart]],
    ) -> None:
        """
        Complete a multipart upload.

        Completing an upload that was already completed is a no-op: when the
        provider no longer knows the upload id but the object exists, the
        earlier completion is taken as authoritative.

        Raises:
            ClientError: If the provider rejects the part list
            ValueError: If the part list is empty or has duplicates
        """
        request = parts if isinstance(parts, CompleteMultipartRequest) else CompleteMultipartRequest.from_parts(parts)

        def _complete():
            return self.client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=multipart_id,
                MultipartUpload=request.to_request(),
            )

        try:
            await self._call(f"Complete multipart upload for {key}", _complete)
        except ClientError as e:
            if error_code(e) != "NoSuchUpload" or not await self.object_exists(key):
                raise
            logger.info(f"[MULTIPART] Upload {multipart_id} for {key} was already completed")
            return

        logger.info(f"[MULTIPART] Completed {self.bucket}/{key} with {len(request.parts)} parts")

    async def abort_multipart(self, key: str, multipart_id: str) -> None:
        """Abort a multipart upload. Best effort: failures are logged, never raised."""

        def _abort():
            return self.client.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=multipart_id)

        try:
            await self._call(f"Abort multipart upload for {key}", _abort)
            logger.info(f"[MULTIPART] Aborted upload {multipart_id} for {key}")
        except Exception as e:
            logger.error(f"[MULTIPART] Failed to abort upload {multipart_id} for {key}: {e}")

    # ------------------------------------------------------------------
    # Object access
    # ------------------------------------------------------------------

    async def head_object(self, key: str) -> int:
        """
        Get the size of an object.

        Raises:
            ClientError: If the object does not exist
        """

        def _head():
            return self.client.head_object(Bucket=self.bucket, Key=key)

        response = await self._call(f"Head {key}", _head)
        return int(response["ContentLength"])

    async def object_exists(self, key: str) -> bool:
        try:
            await self.head_object(key)
            return True
        except ClientError as e:
            if is_not_found(e):
                return False
            raise

    async def get_range(self, key: str, start: int, end: int) -> bytes:
        """
        Read bytes ``start..end`` (inclusive, HTTP Range semantics) of an object.
        """
        if start < 0 or end < start:
            raise ValueError(f"Invalid byte range {start}-{end}")

        def _get():
            response = self.client.get_object(Bucket=self.bucket, Key=key, Range=f"bytes={start}-{end}")
            return response["Body"].read()

        return await self._call(f"Read {key} bytes {start}-{end}", _get)

    async def get_object(self, key: str) -> bytes:
        """Read a whole object into memory (fallback for small or unsized objects)."""

        def _get():
            return self.client.get_object(Bucket=self.bucket, Key=key)["Body"].read()

        return await self._call(f"Read {key}", _get)

    async def authorize_download(
        self,
        key: str,
        file_name: str,
        expiration: int = DOWNLOAD_URL_EXPIRATION,
    ) -> str:
        """
        Pre-sign a direct GET of an object, served as an attachment named ``file_name``.

        Returns:
            Presigned URL string
        """

        def _sign():
            return self.client.generate_presigned_url(
                "get_object",
                Params={
                    "Bucket": self.bucket,
                    "Key": key,
                    "ResponseContentDisposition": f'attachment; filename="{quote(file_name)}"',
                },
                ExpiresIn=expiration,
            )

        url = await self._call(f"Sign download of {key}", _sign)
        logger.info(f"Generated download URL for {self.bucket}/{key} (expires in {expiration}s)")
        return url

    async def delete_object(self, key: str) -> None:
        def _delete():
            return self.client.delete_object(Bucket=self.bucket, Key=key)

        await self._call(f"Delete {key}", _delete)
        logger.info(f"Deleted object: {self.bucket}/{key}")

    async def copy_object(self, source_key: str, dest_key: str, content_type: Optional[str] = None) -> None:
        """
        Server-side copy within the bucket.

        Uses boto3's managed copy so objects above the single-request copy
        limit are copied part by part.
        """
        extra = {"ContentType": content_type, "MetadataDirective": "REPLACE"} if content_type else {}

        def _copy():
            self.client.copy(
                {"Bucket": self.bucket, "Key": source_key},
                self.bucket,
                dest_key,
                ExtraArgs=extra,
                Config=TransferConfig(use_threads=False),
            )

        await self._call(f"Copy {source_key} to {dest_key}", _copy)
        logger.info(f"Copied {self.bucket}/{source_key} -> {dest_key}")

    # ------------------------------------------------------------------
    # Bucket bootstrap
    # ------------------------------------------------------------------

    def ensure_bucket_exists(self) -> None:
        """
        Ensure bucket exists, create if it doesn't.

        Raises:
            ClientError: If bucket creation fails
        """
        try:
            self.client.head_bucket(Bucket=self.bucket)
            logger.info(f"Bucket exists: {self.bucket}")
        except ClientError as e:
            if error_code(e) in ("404", "NoSuchBucket"):
                self.client.create_bucket(Bucket=self.bucket)
                logger.info(f"Created bucket: {self.bucket}")
            else:
                logger.error(f"Error checking bucket {self.bucket}: {e}")
                raise

    def apply_cors(self, origins: List[str]) -> None:
        """
        Allow browsers to PUT parts directly and read back the ETag header.

        Raises:
            ClientError: If the provider rejects the configuration
        """
        self.client.put_bucket_cors(
            Bucket=self.bucket,
            CORSConfiguration={
                "CORSRules": [
                    {
                        "AllowedOrigins": origins,
                        "AllowedMethods": CORS_ALLOWED_METHODS,
                        "AllowedHeaders": ["*"],
                        "ExposeHeaders": CORS_EXPOSE_HEADERS,
                        "MaxAgeSeconds": CORS_MAX_AGE_SECONDS,
                    }
                ]
            },
        )
        logger.info(f"Applied CORS rules to bucket {self.bucket} for origins {origins}")

    def check_connection(self) -> None:
        """Raise if the bucket is unreachable."""
        self.client.head_bucket(Bucket=self.bucket)

    def close(self) -> None:
        self.executor.shutdown(wait=False)


def build_boto3_client():
    """Create the boto3 S3 client from settings."""
    return boto3.client(
        "s3",
        endpoint_url=settings.endpoint_url,
        aws_access_key_id=settings.S3_ACCESS_KEY,
        aws_secret_access_key=settings.S3_SECRET_KEY,
        config=Config(
            signature_version="s3v4",
            connect_timeout=10,
            read_timeout=settings.STORAGE_CALL_TIMEOUT,
            # RetryPolicy owns retries; botocore must not retry underneath it
            retries={"max_attempts": 0, "mode": "standard"},
        ),
        region_name=settings.S3_REGION,
    )
