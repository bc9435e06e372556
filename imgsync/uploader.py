"""Batched upload of edited images back to the publishing server."""

import asyncio
import logging
import time
from collections.abc import Callable
from pathlib import PurePosixPath
from typing import Any, Protocol
from urllib.parse import urlparse

import httpx

from .errors import (
    ImageNotFoundError,
    PermanentItemError,
    RemoteApiError,
    TransientError,
    UploadFailedError,
)
from .index_store import IndexStore
from .models import ImageRecord, ImageStatus, UploadContext, UploadError, UploadResult, utcnow

logger = logging.getLogger(__name__)

UPLOAD_PATH = "/api/publish/upload_product_image_new"

_RETRYABLE = (TransientError, RemoteApiError, httpx.HTTPError, OSError)


class UploadTransport(Protocol):
    async def post_multipart(
        self, url: str, data: bytes, fields: dict[str, str], filename: str
    ) -> Any: ...


def extract_uploaded_url(response: Any) -> str:
    """Pull the stored image URL out of an upload response.

    The server answers ``{"statusCode": 200, "dataClass": "<url>"}``; a bare
    URL string or a ``{"url": ...}`` object are accepted too.

    Raises:
        RemoteApiError: If the envelope reports a failure
        PermanentItemError: If no http(s) URL is present
    """
    data = response
    if isinstance(response, dict):
        status = response.get("statusCode")
        if status is not None and status != 200:
            raise RemoteApiError(
                f"Upload rejected: {response.get('message') or status}", status_code=status
            )
        data = response.get("dataClass", response)
    if isinstance(data, dict):
        data = data.get("url") or data.get("imageUrl")

    if not isinstance(data, str) or urlparse(data).scheme not in ("http", "https"):
        raise PermanentItemError(f"Upload response has no image URL: {response!r}")
    return data


class UploadOrchestrator:
    """Uploads local image files with bounded concurrency and retries."""

    def __init__(
        self,
        store: IndexStore,
        transport: UploadTransport,
        upload_url: str = UPLOAD_PATH,
        max_concurrency: int = 3,
        retry_count: int = 3,
        retry_delay: float = 1.0,
    ):
        self.store = store
        self.storage = store.storage
        self.transport = transport
        self.upload_url = upload_url
        self.max_concurrency = max(1, max_concurrency)
        self.retry_count = max(1, retry_count)
        self.retry_delay = retry_delay
        self._cancelled = False

    def cancel(self) -> None:
        """Stop after the running chunk; remaining items count as cancelled."""
        self._cancelled = True
        logger.info("Upload cancellation requested")

    async def upload(
        self,
        items: list[str],
        context: UploadContext,
        on_progress: Callable[[int, int, str], None] | None = None,
        on_item_success: Callable[[str, str], None] | None = None,
        on_item_error: Callable[[Exception, str], None] | None = None,
        on_complete: Callable[[UploadResult, int], None] | None = None,
    ) -> UploadResult:
        """Upload images and record their server URLs.

        Args:
            items: Image identities (remote URL, local path or record id)
            context: Product and account the files belong to
            on_progress: Called per finished item as ``(current, total, identity)``
            on_item_success: Called as ``(identity, new_url)``
            on_item_error: Called as ``(error, identity)``
            on_complete: Called once as ``(result, duration_ms)`` after saving

        Returns:
            UploadResult with per-item outcomes
        """
        self._cancelled = False
        started = time.monotonic()
        result = UploadResult(total=len(items))
        done = 0

        logger.info(f"Uploading {len(items)} images for {context.apply_code}")

        for start in range(0, len(items), self.max_concurrency):
            if self._cancelled:
                result.cancelled = len(items) - start
                logger.info(f"Upload cancelled, {result.cancelled} items not started")
                break

            chunk = items[start:start + self.max_concurrency]
            outcomes = await asyncio.gather(
                *(self._upload_one(identity, context) for identity in chunk),
                return_exceptions=True,
            )
            for identity, outcome in zip(chunk, outcomes):
                if isinstance(outcome, Exception):
                    attempts = outcome.attempts if isinstance(outcome, UploadFailedError) else 1
                    result.failed += 1
                    result.errors.append(UploadError(
                        image_id=identity, message=str(outcome), attempts=attempts,
                    ))
                    logger.error(f"Failed to upload {identity}: {outcome}")
                    if on_item_error:
                        on_item_error(outcome, identity)
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    record, new_url = outcome
                    self._record_success(record, new_url)
                    result.success += 1
                    result.new_urls[identity] = new_url
                    if on_item_success:
                        on_item_success(identity, new_url)

                done += 1
                if on_progress:
                    on_progress(done, result.total, identity)

        self.store.save()
        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Upload complete: {result.success} uploaded, {result.failed} failed, "
            f"{result.cancelled} cancelled in {result.duration_ms} ms"
        )
        if on_complete:
            on_complete(result, result.duration_ms)
        return result

    def _read_file(self, identity: str) -> tuple[ImageRecord, bytes]:
        record = self.store.find_image(identity)
        if record is None:
            raise ImageNotFoundError(f"Image not found: {identity}")
        if not record.local_path:
            raise PermanentItemError(f"Image has no local file: {identity}")
        try:
            data = self.storage.read_bytes(record.local_path)
        except FileNotFoundError as e:
            raise PermanentItemError(f"Local file missing: {record.local_path}") from e
        if not data:
            raise PermanentItemError(f"Local file is empty: {record.local_path}")
        return record, data

    async def _upload_one(self, identity: str, context: UploadContext) -> tuple[ImageRecord, str]:
        record, data = self._read_file(identity)
        filename = PurePosixPath(record.local_path).name
        fields = context.form_fields()

        last_error: Exception | None = None
        for attempt in range(1, self.retry_count + 1):
            try:
                response = await self.transport.post_multipart(
                    self.upload_url, data, fields, filename
                )
                return record, extract_uploaded_url(response)
            except _RETRYABLE as e:
                last_error = e
                logger.warning(
                    f"Upload attempt {attempt}/{self.retry_count} failed for {identity}: {e}"
                )
                if attempt < self.retry_count:
                    await asyncio.sleep(attempt * self.retry_delay)

        raise UploadFailedError(identity, self.retry_count, last_error)

    def _record_success(self, record: ImageRecord, new_url: str) -> None:
        now = utcnow()
        for shared in self.store.records_sharing(record):
            shared.remote_url = new_url
            shared.status = ImageStatus.COMPLETED
            shared.uploaded_at = now
            shared.completed_at = shared.completed_at or now
            shared.timestamp = now
        logger.debug(f"Uploaded {record.local_path} -> {new_url}")
