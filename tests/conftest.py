"""
Shared fixtures: an in-memory stand-in for the boto3 S3 client and the
components wired on top of it.
"""

import hashlib
import io
import itertools
import logging
import threading
from collections import defaultdict
from typing import Dict, List, Optional
from urllib.parse import urlencode

import pytest
from botocore.exceptions import ClientError

from filerelay.core.manager.archive_builder import StreamingArchiveBuilder
from filerelay.core.manager.ledger import ChunkLedger
from filerelay.core.manager.session_manager import UploadSessionManager
from filerelay.core.observability import Observer
from filerelay.core.retry import RetryPolicy
from filerelay.s3.client import MultipartStorageClient
from filerelay.store.memory import InMemoryMetadataStore

BUCKET = "test-bucket"
KB = 1024
CHUNK = 5 * KB


def client_error(code: str, status: int, operation: str = "Operation", message: str = "") -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": message or code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


class FakeS3:
    """
    Thread-safe in-memory implementation of the boto3 S3 calls the service makes.

    ``failures[operation]`` holds exceptions raised (one per call, in order)
    before the operation runs; a None entry lets that call through.
    """

    def __init__(self, min_part_size: int = 0):
        self.min_part_size = min_part_size
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, Optional[str]] = {}
        self.uploads: Dict[str, dict] = {}
        self.completed_uploads: List[str] = []
        self.aborted_uploads: List[str] = []
        self.buckets = set()
        self.cors_rules: List[dict] = []
        self.failures: Dict[str, List[Exception]] = defaultdict(list)
        self.calls: Dict[str, int] = defaultdict(int)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _enter(self, operation: str):
        with self._lock:
            self.calls[operation] += 1
            if self.failures[operation]:
                error = self.failures[operation].pop(0)
                if error is not None:
                    raise error

    # Multipart ---------------------------------------------------------

    def create_multipart_upload(self, Bucket, Key, ContentType=None):
        self._enter("create_multipart_upload")
        with self._lock:
            upload_id = f"upload-{next(self._ids)}"
            self.uploads[upload_id] = {"key": Key, "parts": {}, "content_type": ContentType}
        return {"Bucket": Bucket, "Key": Key, "UploadId": upload_id}

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn=3600):
        self._enter("generate_presigned_url")
        if ClientMethod == "get_object":
            query = urlencode({
                "response-content-disposition": Params.get("ResponseContentDisposition", ""),
                "X-Amz-Expires": ExpiresIn,
            })
            return f"https://s3.test/{Params['Bucket']}/{Params['Key']}?{query}"
        query = urlencode({
            "uploadId": Params["UploadId"],
            "partNumber": Params["PartNumber"],
            "X-Amz-Expires": ExpiresIn,
        })
        return f"https://s3.test/{Params['Bucket']}/{Params['Key']}?{query}"

    def store_part(self, upload_id: str, part_number: int, data: bytes) -> str:
        """What a direct PUT to a pre-signed URL does; returns the quoted ETag."""
        with self._lock:
            upload = self.uploads.get(upload_id)
            if upload is None:
                raise client_error("NoSuchUpload", 404, "UploadPart")
            etag = f'"{hashlib.md5(data).hexdigest()}"'
            upload["parts"][part_number] = (etag, bytes(data))
        return etag

    def upload_part(self, Bucket, Key, UploadId, PartNumber, Body):
        self._enter("upload_part")
        return {"ETag": self.store_part(UploadId, PartNumber, Body)}

    def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        self._enter("complete_multipart_upload")
        with self._lock:
            upload = self.uploads.get(UploadId)
            if upload is None:
                raise client_error("NoSuchUpload", 404, "CompleteMultipartUpload")

            requested = MultipartUpload["Parts"]
            numbers = [p["PartNumber"] for p in requested]
            if numbers != sorted(numbers):
                raise client_error("InvalidPartOrder", 400, "CompleteMultipartUpload")

            chunks = []
            for i, part in enumerate(requested):
                stored = upload["parts"].get(part["PartNumber"])
                if stored is None or stored[0] != part["ETag"]:
                    raise client_error("InvalidPart", 400, "CompleteMultipartUpload")
                if i < len(requested) - 1 and len(stored[1]) < self.min_part_size:
                    raise client_error("EntityTooSmall", 400, "CompleteMultipartUpload")
                chunks.append(stored[1])

            self.objects[Key] = b"".join(chunks)
            self.content_types[Key] = upload["content_type"]
            del self.uploads[UploadId]
            self.completed_uploads.append(UploadId)
        return {"Bucket": Bucket, "Key": Key}

    def abort_multipart_upload(self, Bucket, Key, UploadId):
        self._enter("abort_multipart_upload")
        with self._lock:
            if self.uploads.pop(UploadId, None) is None:
                raise client_error("NoSuchUpload", 404, "AbortMultipartUpload")
            self.aborted_uploads.append(UploadId)
        return {}

    # Objects -----------------------------------------------------------

    def head_object(self, Bucket, Key):
        self._enter("head_object")
        with self._lock:
            if Key not in self.objects:
                raise client_error("404", 404, "HeadObject", "Not Found")
            return {"ContentLength": len(self.objects[Key])}

    def get_object(self, Bucket, Key, Range=None):
        self._enter("get_object")
        with self._lock:
            if Key not in self.objects:
                raise client_error("NoSuchKey", 404, "GetObject")
            data = self.objects[Key]
        if Range:
            start, end = Range.replace("bytes=", "").split("-")
            data = data[int(start):int(end) + 1]
        return {"Body": io.BytesIO(data), "ContentLength": len(data)}

    def delete_object(self, Bucket, Key):
        self._enter("delete_object")
        with self._lock:
            self.objects.pop(Key, None)
        return {}

    def copy(self, CopySource, Bucket, Key, ExtraArgs=None, Config=None):
        self._enter("copy")
        with self._lock:
            if CopySource["Key"] not in self.objects:
                raise client_error("404", 404, "HeadObject", "Not Found")
            self.objects[Key] = self.objects[CopySource["Key"]]
            self.content_types[Key] = (ExtraArgs or {}).get("ContentType")

    # Buckets -----------------------------------------------------------

    def head_bucket(self, Bucket):
        self._enter("head_bucket")
        if Bucket not in self.buckets:
            raise client_error("404", 404, "HeadBucket", "Not Found")
        return {}

    def create_bucket(self, Bucket):
        self._enter("create_bucket")
        self.buckets.add(Bucket)
        return {}

    def put_bucket_cors(self, Bucket, CORSConfiguration):
        self._enter("put_bucket_cors")
        self.cors_rules = CORSConfiguration["CORSRules"]
        return {}


class RecordingObserver(Observer):
    """Keeps every metric and event for assertions."""

    def __init__(self):
        self.events: List[tuple] = []
        self.counters: Dict[str, int] = defaultdict(int)

    def increment(self, name, value=1, **tags):
        self.counters[name] += value

    def event(self, name, level=logging.INFO, **fields):
        self.events.append((name, fields))

    def named(self, name: str) -> List[dict]:
        return [fields for event, fields in self.events if event == name]


async def no_sleep(delay: float) -> None:
    return None


def make_retry_policy(observer: Optional[Observer] = None, max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        base_delay=0.0,
        jitter=0.0,
        observer=observer or Observer(),
        sleep=no_sleep,
    )


@pytest.fixture
def fake_s3():
    s3 = FakeS3()
    s3.buckets.add(BUCKET)
    return s3


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
def storage(fake_s3, observer):
    client = MultipartStorageClient(
        bucket=BUCKET,
        client=fake_s3,
        retry_policy=make_retry_policy(observer),
        max_workers=4,
        observer=observer,
    )
    yield client
    client.close()


@pytest.fixture
def store():
    return InMemoryMetadataStore()


@pytest.fixture
def ledger(store, observer):
    return ChunkLedger(store, observer=observer, page_size=3)


@pytest.fixture
def builder(storage, observer):
    return StreamingArchiveBuilder(
        storage,
        part_size=8 * KB,
        min_part_size=1 * KB,
        read_window=3 * KB,
        finalize_timeout=5.0,
        observer=observer,
    )


@pytest.fixture
def manager(storage, store, ledger, builder, observer):
    return UploadSessionManager(
        storage=storage,
        store=store,
        ledger=ledger,
        builder=builder,
        chunk_size=CHUNK,
        max_file_size=100 * KB,
        observer=observer,
    )
