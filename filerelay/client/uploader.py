"""
Upload client.
Splits local files into chunks, PUTs them straight to the pre-signed part URLs
with a bounded worker pool, confirms each chunk, then completes the session and
polls until the archive is ready.

Usage:
    python -m filerelay.client.uploader report.pdf photos.zip --password 1234
"""

import asyncio
import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import httpx

from filerelay.core.config import settings
from filerelay.core.observability import NULL_OBSERVER, Observer
from filerelay.core.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3


class UploadFailed(Exception):
    """The server rejected the upload or archiving failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UploadCancelled(Exception):
    """The upload was cancelled before completion was requested."""


class FileRelayUploader:
    """Async client for the upload API."""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        retry_policy: Optional[RetryPolicy] = None,
        observer: Observer = NULL_OBSERVER,
    ):
        """
        Initialize the uploader.

        Args:
            base_url: Service root, e.g. "http://localhost:8000"
            client: HTTP client (one is created and owned when omitted)
            concurrency: Simultaneous chunk uploads per file
            retry_policy: Policy for chunk PUTs and API calls
            observer: Metrics/event sink
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.STORAGE_CALL_TIMEOUT, connect=30.0)
        )
        self.concurrency = concurrency
        self.retry = retry_policy or RetryPolicy(
            max_attempts=settings.MAX_RETRY_ATTEMPTS,
            base_delay=settings.RETRY_DELAY_BASE,
            jitter=settings.RETRY_JITTER,
            observer=observer,
        )
        self.observer = observer
        self._cancelled = False

    async def close(self):
        if self._owns_client:
            await self.client.aclose()

    def cancel(self) -> None:
        """
        Stop claiming new chunks.

        In-flight chunk uploads finish; completion is never requested for a
        cancelled upload, so the server commits nothing.
        """
        if not self._cancelled:
            logger.warning("[UPLOADER] Cancel requested, finishing in-flight chunks")
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    # ------------------------------------------------------------------
    # API calls
    # ------------------------------------------------------------------

    async def _api(self, method: str, path: str, label: str, json: Optional[dict] = None) -> Dict[str, Any]:
        async def call():
            response = await self.client.request(method, f"{self.base_url}{path}", json=json)
            if response.status_code < 500 and response.is_error:
                # Surface the server's explanation; the status decides whether to retry
                raise UploadFailed(
                    f"{label} failed ({response.status_code}): {_detail(response)}",
                    status_code=response.status_code,
                )
            response.raise_for_status()
            return response.json()

        return await self.retry.execute(call, label=label)

    async def init(self, paths: Sequence[Path], password: str) -> Dict[str, Any]:
        files = [{"name": p.name, "size": p.stat().st_size} for p in paths]
        return await self._api("POST", "/api/upload/init", "Init upload", {"files": files, "password": password})

    async def confirm(self, session_id: str, file_name: str, chunk_index: int, part_number: int, etag: str):
        return await self._api(
            "POST",
            "/api/upload/chunk/confirm",
            f"Confirm {file_name}#{chunk_index}",
            {
                "session_id": session_id,
                "file_name": file_name,
                "chunk_index": chunk_index,
                "part_number": part_number,
                "etag": etag,
            },
        )

    async def complete(self, session_id: str) -> Dict[str, Any]:
        body = await self._api("POST", "/api/upload/complete", "Complete upload", {"session_id": session_id})
        return body["data"]

    async def status(self, session_id: str) -> Dict[str, Any]:
        return await self._api("GET", f"/api/upload/{session_id}/status", "Upload status")

    # ------------------------------------------------------------------
    # Chunk upload
    # ------------------------------------------------------------------

    async def put_part(self, part: Dict[str, Any], data: bytes) -> str:
        """PUT one chunk to its pre-signed URL and return the ETag."""

        async def call():
            response = await self.client.put(part["upload_url"], content=data, headers=part.get("headers") or {})
            response.raise_for_status()
            etag = response.headers.get("ETag")
            if not etag:
                raise UploadFailed(
                    f"No ETag returned for part {part['part_number']}; "
                    f"the bucket CORS rules must expose the ETag header"
                )
            return etag

        return await self.retry.execute(call, label=f"PUT part {part['part_number']}")

    async def upload_file(self, session_id: str, path: Path, plan: Dict[str, Any], chunk_size: int) -> int:
        """
        Upload every chunk of one file with a bounded worker pool.

        Returns:
            Number of chunks uploaded and confirmed by this call
        """
        queue: asyncio.Queue = asyncio.Queue()
        for index, part in enumerate(plan["parts"]):
            queue.put_nowait((index, part))

        loop = asyncio.get_running_loop()
        done = 0
        total = plan["total_chunks"]

        def read_chunk(index: int) -> bytes:
            with path.open("rb") as fh:
                fh.seek(index * chunk_size)
                return fh.read(chunk_size)

        async def worker():
            nonlocal done
            while not self._cancelled:
                try:
                    index, part = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                data = await loop.run_in_executor(None, read_chunk, index)
                etag = await self.put_part(part, data)
                result = await self.confirm(session_id, plan["name"], index, part["part_number"], etag)
                done += 1
                self.observer.increment("uploader.chunk_uploaded", bytes=len(data))
                logger.info(
                    f"[UPLOADER] {plan['name']} chunk {index + 1}/{total} confirmed "
                    f"(session {result['progress']:.1f}%)"
                )

        workers = [asyncio.create_task(worker()) for _ in range(min(self.concurrency, total))]
        try:
            await asyncio.gather(*workers)
        except Exception:
            self.cancel()
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        return done

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    async def wait_for_archive(
        self,
        session_id: str,
        poll_interval: float = 1.0,
        timeout: float = 600.0,
    ) -> Dict[str, Any]:
        """
        Poll until the session is done.

        Raises:
            UploadFailed: If archiving failed
            TimeoutError: If the archive is not ready within ``timeout`` seconds
        """
        deadline = time.monotonic() + timeout
        while True:
            status = await self.status(session_id)
            if status["state"] == "done":
                return status
            if status["state"] == "failed":
                raise UploadFailed(f"Archiving failed: {status.get('error')}")
            if time.monotonic() >= deadline:
                raise TimeoutError(f"Archive of {session_id} not ready after {timeout}s")
            await asyncio.sleep(poll_interval)

    async def upload(
        self,
        paths: Sequence[Path],
        password: str,
        wait: bool = True,
        poll_interval: float = 1.0,
        timeout: float = 600.0,
    ) -> Dict[str, Any]:
        """
        Upload files and (optionally) wait for the archive.

        Returns:
            Final status body (or the completion body when ``wait`` is False)

        Raises:
            UploadCancelled: If ``cancel`` was called before all chunks were confirmed
            UploadFailed: If the server rejected the upload or archiving failed
        """
        paths = [Path(p) for p in paths]
        started = time.monotonic()

        init = await self.init(paths, password)
        session_id = init["session_id"]
        chunk_size = init["chunk_size"]
        logger.info(f"[UPLOADER] Session {session_id}: {len(paths)} file(s), chunk size {chunk_size}")

        by_name = {p.name: p for p in paths}
        for plan in init["files"]:
            await self.upload_file(session_id, by_name[plan["name"]], plan, chunk_size)
            if self._cancelled:
                raise UploadCancelled(f"Upload {session_id} cancelled")

        completion = await self.complete(session_id)
        logger.info(f"[UPLOADER] Session {session_id} completed: {completion['status']}")
        if not wait:
            return {"session_id": session_id, **completion}

        status = await self.wait_for_archive(session_id, poll_interval, timeout)
        logger.info(
            f"[UPLOADER] Archive {status['archive_id']} ready ({status['archive_name']}, "
            f"{status['archive_size']} bytes) in {time.monotonic() - started:.1f}s"
        )
        return status


def _detail(response: httpx.Response) -> str:
    try:
        return response.json().get("detail", response.text)
    except ValueError:
        return response.text


def _parse_args(argv: Optional[List[str]] = None):
    import argparse

    parser = argparse.ArgumentParser(
        prog="filerelay-upload",
        description="Upload files in chunks and have them packed into one ZIP archive.",
    )
    parser.add_argument("files", nargs="+", help="Files to upload")
    parser.add_argument("--password", required=True, help="4-digit access code")
    parser.add_argument(
        "--server",
        default=os.environ.get("FILE_RELAY_URL", "http://localhost:8000"),
        help="Service URL (default: $FILE_RELAY_URL or http://localhost:8000)",
    )
    parser.add_argument("--concurrency", type=int, default=DEFAULT_CONCURRENCY, help="Parallel chunk uploads")
    parser.add_argument("--no-wait", action="store_true", help="Do not wait for the archive to be built")
    parser.add_argument("--timeout", type=float, default=600.0, help="Seconds to wait for the archive")
    return parser.parse_args(argv)


async def _run(args) -> int:
    uploader = FileRelayUploader(args.server, concurrency=args.concurrency)

    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, uploader.cancel)
    except (NotImplementedError, RuntimeError):
        pass  # Not supported on this platform

    try:
        result = await uploader.upload(
            [Path(f) for f in args.files],
            args.password,
            wait=not args.no_wait,
            timeout=args.timeout,
        )
    except UploadCancelled as e:
        logger.warning(str(e))
        return 130
    except (UploadFailed, TimeoutError, httpx.HTTPError) as e:
        logger.error(f"Upload failed: {e}")
        return 1
    finally:
        await uploader.close()

    print(result)
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    missing = [f for f in args.files if not Path(f).is_file()]
    if missing:
        print(f"ERROR: not a file: {', '.join(missing)}", file=sys.stderr)
        sys.exit(2)

    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
