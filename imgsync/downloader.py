"""Batched image downloader that keeps the index and local files in step."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Protocol
from urllib.parse import urlparse

import httpx

from .errors import DownloadFailedError, PermanentItemError, TransientError
from .index_store import IndexStore
from .models import (
    BatchResult,
    DownloadError,
    DownloadItem,
    ImageRecord,
    ImageStatus,
    utcnow,
)
from .paths import resolve_path, with_numeric_suffix
from .state import migrate_status

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, DownloadItem], None]
ErrorCallback = Callable[[Exception, DownloadItem], None]

# Local edits are never overwritten by a re-fetch
_PROTECTED_STATUSES = frozenset({ImageStatus.EDITING, ImageStatus.COMPLETED})


class FetchTransport(Protocol):
    async def fetch(self, url: str) -> bytes: ...


@dataclass
class _Fetch:
    """One network fetch serving every slot that wants the same URL."""

    url: str
    apply_code: str
    target: str
    record: ImageRecord
    items: list[DownloadItem] = field(default_factory=list)


class DownloadOrchestrator:
    """Downloads product images with bounded concurrency and retries."""

    def __init__(
        self,
        store: IndexStore,
        transport: FetchTransport,
        max_concurrency: int = 3,
        retry_count: int = 3,
        retry_delay: float = 1.0,
        freshness_days: int = 7,
    ):
        """Initialize downloader.

        Args:
            store: Index store, also giving access to local storage
            transport: Network collaborator providing ``fetch(url)``
            max_concurrency: Fetches per chunk
            retry_count: Attempts per fetch
            retry_delay: Base backoff in seconds, multiplied by the attempt number
            freshness_days: Age under which a cached file is not re-fetched
        """
        self.store = store
        self.storage = store.storage
        self.transport = transport
        self.max_concurrency = max(1, max_concurrency)
        self.retry_count = max(1, retry_count)
        self.retry_delay = retry_delay
        self.freshness = timedelta(days=freshness_days)

    @staticmethod
    def check_item(item: DownloadItem) -> None:
        """Raise PermanentItemError for items that can never be downloaded."""
        if not item.apply_code:
            raise PermanentItemError(f"Missing product code for {item.remote_url!r}")
        if not item.remote_url:
            raise PermanentItemError(f"Missing image URL in {item.apply_code} {item.slot.describe()}")
        if urlparse(item.remote_url).scheme not in ("http", "https"):
            raise PermanentItemError(f"Unsupported image URL: {item.remote_url}")

    def should_download(self, item: DownloadItem) -> bool:
        """Whether an item needs a network fetch."""
        record = self.store.find_slot_record(item.apply_code, item.slot, item.remote_url)
        if record is None:
            return True
        if record.status == ImageStatus.DOWNLOAD_FAILED:
            return False
        if not record.local_path or not self.storage.exists(record.local_path):
            return True
        if migrate_status(record.status) in _PROTECTED_STATUSES:
            return False
        if record.timestamp is None:
            return True
        return utcnow() - record.timestamp > self.freshness

    def _plan_path(self, item: DownloadItem, record: ImageRecord, reserved: set[str]) -> str:
        """Pick a file path no other image of the product uses."""
        base = resolve_path(item.remote_url, item.apply_code)
        path = base
        counter = 1
        while path in reserved or self.store.is_path_referenced(path, exclude=record):
            path = with_numeric_suffix(base, counter)
            counter += 1
        if path != base:
            logger.debug(f"Path collision for {item.remote_url}, using {path}")
        return path

    async def download_batch(
        self,
        items: list[DownloadItem],
        on_progress: ProgressCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> BatchResult:
        """Download a batch of images and index them.

        Args:
            items: Images wanted at product slots
            on_progress: Called once per item as ``(current, total, item)``
            on_error: Called once per failed item as ``(error, item)``

        Returns:
            BatchResult with success, failed and skipped counts
        """
        result = BatchResult(total=len(items))
        done = 0

        def report(item: DownloadItem) -> None:
            nonlocal done
            done += 1
            if on_progress:
                on_progress(done, result.total, item)

        def fail(item: DownloadItem, error: Exception, attempts: int, permanent: bool) -> None:
            result.failed += 1
            result.errors.append(DownloadError(
                item=item, message=str(error), attempts=attempts, permanent=permanent,
            ))
            logger.error(f"Failed to download {item.remote_url}: {error}")
            if on_error:
                on_error(error, item)
            report(item)

        fetches: dict[tuple[str, str], _Fetch] = {}
        reserved: set[str] = set()

        for item in items:
            try:
                self.check_item(item)
            except PermanentItemError as e:
                fail(item, e, 0, True)
                continue

            if not self.should_download(item):
                result.skipped += 1
                logger.debug(f"Skipping cached image: {item.remote_url}")
                report(item)
                continue

            record = self.store.attach_image(item.apply_code, item.slot, item.remote_url)
            key = (item.apply_code, item.remote_url)
            if key not in fetches:
                target = record.local_path or self._plan_path(item, record, reserved)
                reserved.add(target)
                fetches[key] = _Fetch(item.remote_url, item.apply_code, target, record)
            fetches[key].items.append(item)

        queue = list(fetches.values())
        logger.info(
            f"Downloading {len(queue)} images "
            f"({result.skipped} skipped, {result.failed} rejected)"
        )

        for start in range(0, len(queue), self.max_concurrency):
            chunk = queue[start:start + self.max_concurrency]
            outcomes = await asyncio.gather(
                *(self._fetch_with_retry(fetch) for fetch in chunk),
                return_exceptions=True,
            )
            for fetch, outcome in zip(chunk, outcomes):
                if isinstance(outcome, Exception):
                    attempts = outcome.attempts if isinstance(outcome, DownloadFailedError) else 1
                    permanent = isinstance(outcome, PermanentItemError)
                    for item in fetch.items:
                        fail(item, outcome, attempts, permanent)
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    self._index(fetch, outcome)
                    for item in fetch.items:
                        result.success += 1
                        report(item)

        self.store.save()
        logger.info(
            f"Download batch complete: {result.success} downloaded, "
            f"{result.failed} failed, {result.skipped} skipped"
        )
        return result

    async def _fetch_with_retry(self, fetch: _Fetch) -> int:
        """Fetch and write one file.

        Returns:
            Bytes written

        Raises:
            PermanentItemError: For errors that retrying cannot fix
            DownloadFailedError: When every attempt failed
        """
        last_error: Exception | None = None
        for attempt in range(1, self.retry_count + 1):
            try:
                data = await self.transport.fetch(fetch.url)
                if not data:
                    raise TransientError(f"Empty response for {fetch.url}")
                size = self.storage.write_bytes(fetch.target, data)
                logger.debug(f"Downloaded: {fetch.target} ({size} bytes)")
                return size
            except (TransientError, httpx.HTTPError, OSError) as e:
                last_error = e
                logger.warning(
                    f"Download attempt {attempt}/{self.retry_count} failed for {fetch.url}: {e}"
                )
                if attempt < self.retry_count:
                    await asyncio.sleep(attempt * self.retry_delay)

        raise DownloadFailedError(fetch.url, self.retry_count, last_error)

    def _index(self, fetch: _Fetch, size: int) -> None:
        fetch.record.local_path = fetch.target
        now = utcnow()
        for record in self.store.records_sharing(fetch.record):
            record.local_path = fetch.target
            record.status = ImageStatus.PENDING_EDIT
            record.file_size = size
            record.timestamp = now
            record.previous_status = None

    def skip_failed_images(self, errors: list[DownloadError]) -> int:
        """Mark failed downloads as ``download_failed`` so later syncs skip them.

        A failed refresh of an image whose cached file is still on disk leaves
        the record untouched.

        Returns:
            Number of records marked
        """
        marked = 0
        for error in errors:
            item = error.item
            record = self.store.find_slot_record(item.apply_code, item.slot, item.remote_url)
            if record is None or record.status == ImageStatus.DOWNLOAD_FAILED:
                continue
            if record.local_path and self.storage.exists(record.local_path):
                logger.warning(
                    f"Refresh of {item.remote_url} failed, keeping cached {record.local_path}"
                )
                continue
            record.status = ImageStatus.DOWNLOAD_FAILED
            record.local_path = ""
            record.file_size = 0
            record.touch()
            marked += 1

        if marked:
            self.store.save()
            logger.info(f"Marked {marked} images as download_failed")
        return marked
