"""Incremental synchronization against the remote product list."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from .downloader import DownloadOrchestrator, ErrorCallback, ProgressCallback
from .errors import ImgSyncError, ProductBusyError
from .index_store import IndexStore
from .journal import ErrorType, RunResult, SyncKind
from .journal_manager import JournalManager
from .models import DownloadItem, RemoteProductSummary, SyncReport, utcnow
from .processor import process_product_data

logger = logging.getLogger(__name__)

AUTO_SYNC_INTERVAL = timedelta(hours=2)
AUTO_SYNC_CHECK_SECONDS = 60.0


class ProductSource(Protocol):
    async def get_product_list(self) -> list[RemoteProductSummary]: ...

    async def get_product_images(self, apply_code: str) -> dict: ...


class InFlightGuard:
    """Tracks products with a running batch so two batches never overlap."""

    def __init__(self):
        self._active: set[str] = set()

    @property
    def active(self) -> frozenset[str]:
        return frozenset(self._active)

    def is_busy(self, apply_code: str) -> bool:
        return apply_code in self._active

    def acquire(self, apply_codes: list[str]) -> None:
        """Claim products for a batch.

        Raises:
            ProductBusyError: If any product already has a running batch
        """
        busy = sorted(set(apply_codes) & self._active)
        if busy:
            raise ProductBusyError(f"Batch already running for: {', '.join(busy)}")
        self._active.update(apply_codes)

    def release(self, apply_codes: list[str]) -> None:
        self._active.difference_update(apply_codes)

    @contextmanager
    def hold(self, apply_codes: list[str]) -> Iterator[None]:
        """Claim products for the duration of a block."""
        codes = list(dict.fromkeys(apply_codes))
        self.acquire(codes)
        try:
            yield
        finally:
            self.release(codes)


def _summary_of(product: RemoteProductSummary | dict) -> RemoteProductSummary:
    if isinstance(product, RemoteProductSummary):
        return product
    return RemoteProductSummary.model_validate(product)


class SyncCoordinator:
    """Mirrors new remote products into the index and downloads their images."""

    def __init__(
        self,
        store: IndexStore,
        source: ProductSource,
        downloader: DownloadOrchestrator,
        journal: JournalManager | None = None,
        guard: InFlightGuard | None = None,
    ):
        self.store = store
        self.source = source
        self.downloader = downloader
        self.journal = journal
        self.guard = guard or InFlightGuard()
        self._running = False

    @property
    def in_progress(self) -> bool:
        return self._running

    async def _sync_products(
        self,
        remote_products: list[RemoteProductSummary | dict],
        on_progress: Callable[[int, int, str], None] | None = None,
    ) -> tuple[list[DownloadItem], list[str], int]:
        items: list[DownloadItem] = []
        failed: list[str] = []

        summaries = [_summary_of(p) for p in remote_products]
        new: dict[str, RemoteProductSummary] = {}
        for summary in summaries:
            if self.store.find_product(summary.apply_code) is None:
                new.setdefault(summary.apply_code, summary)

        logger.info(
            f"Incremental sync: {len(summaries)} remote products, "
            f"{len(new)} new, {len(summaries) - len(new)} already indexed"
        )

        for i, (code, summary) in enumerate(new.items(), 1):
            try:
                detail = await self.source.get_product_images(code)
                seed = summary.model_dump(mode="json", by_alias=True, exclude_none=True)
                self.store.merge_product_detail(code, {**seed, **detail})
                product_items = process_product_data(detail, code)
                items.extend(product_items)
                logger.info(f"[{i}/{len(new)}] {code}: {len(product_items)} images")
            except (ImgSyncError, httpx.HTTPError) as e:
                logger.error(f"[{i}/{len(new)}] Failed to sync product {code}: {e}")
                failed.append(code)
            if on_progress:
                on_progress(i, len(new), code)

        if len(new) > len(failed):
            self.store.save()
        return items, failed, len(new)

    async def incremental_sync(
        self,
        remote_products: list[RemoteProductSummary | dict],
        on_progress: Callable[[int, int, str], None] | None = None,
    ) -> list[DownloadItem]:
        """Index products not seen before.

        Known products are left untouched; for new ones the detail is
        fetched and merged. A failing detail fetch skips that product.

        Args:
            remote_products: Remote product list entries
            on_progress: Called per new product as ``(current, total, apply_code)``

        Returns:
            Download items of the newly indexed products
        """
        items, _, _ = await self._sync_products(remote_products, on_progress)
        return items

    async def run(
        self,
        remote_products: list[RemoteProductSummary | dict] | None = None,
        kind: SyncKind = SyncKind.MANUAL,
        on_progress: ProgressCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> SyncReport:
        """Run a full sync: product list, incremental sync, download, failure marking.

        Args:
            remote_products: Product list; fetched from the source when omitted
            kind: What started the run, recorded in the journal
            on_progress: Download progress callback
            on_error: Download error callback

        Returns:
            SyncReport of the run

        Raises:
            ProductBusyError: If a batch is already running for a listed product
        """
        run_id = self.journal.start_run(kind).id if self.journal else None
        self._running = True
        try:
            if remote_products is None:
                try:
                    remote_products = await self.source.get_product_list()
                except (ImgSyncError, httpx.HTTPError) as e:
                    if self.journal:
                        self.journal.log_error(ErrorType.LIST_FAILED, str(e), run_id=run_id, save=False)
                    raise

            codes = [_summary_of(p).apply_code for p in remote_products]
            if self.journal and run_id:
                self.journal.journal.runs[-1].apply_codes = list(dict.fromkeys(codes))

            with self.guard.hold(codes):
                items, failed, new_count = await self._sync_products(remote_products)
                batch = await self.downloader.download_batch(items, on_progress, on_error)
                marked = self.downloader.skip_failed_images(batch.errors)
        except (ImgSyncError, httpx.HTTPError, ValidationError) as e:
            logger.error(f"Sync failed: {e}")
            if self.journal and run_id:
                self.journal.complete_run(run_id, RunResult(success=False, error_message=str(e)))
            raise
        finally:
            self._running = False

        report = SyncReport(
            products_seen=len(set(codes)),
            products_new=new_count,
            products_failed=failed,
            images_queued=len(items),
            download=batch,
            marked_failed=marked,
        )
        if self.journal and run_id:
            self._record(run_id, report)

        logger.info(
            f"Sync complete: {report.products_new} new products, "
            f"{batch.success} downloaded, {batch.skipped} skipped, {batch.failed} failed"
        )
        return report

    def _record(self, run_id: str, report: SyncReport) -> None:
        for code in report.products_failed:
            self.journal.log_error(
                ErrorType.DETAIL_FAILED,
                f"Product detail could not be fetched: {code}",
                run_id=run_id,
                apply_code=code,
                save=False,
            )
        for error in report.download.errors:
            self.journal.log_error(
                ErrorType.DOWNLOAD_FAILED,
                error.message,
                run_id=run_id,
                apply_code=error.item.apply_code,
                url=error.item.remote_url,
                attempts=error.attempts,
                save=False,
            )
        self.journal.complete_run(run_id, RunResult(
            success=True,
            products_seen=report.products_seen,
            products_new=report.products_new,
            images_downloaded=report.download.success,
            images_failed=report.download.failed,
            images_skipped=report.download.skipped,
        ))


class AutoSyncPolicy:
    """Decides when a background sync is due."""

    def __init__(self, interval: timedelta = AUTO_SYNC_INTERVAL):
        self.interval = interval

    def should_sync(self, now: datetime, last_sync_at: datetime | None, in_progress: bool) -> bool:
        """A sync is due when none is running and the interval has elapsed."""
        if in_progress:
            return False
        if last_sync_at is None:
            return True
        return now - last_sync_at >= self.interval

    def next_sync_at(self, last_sync_at: datetime | None) -> datetime | None:
        if last_sync_at is None:
            return None
        return last_sync_at + self.interval


class AutoSyncScheduler:
    """Periodically runs a sync callback when the policy says it is due."""

    def __init__(
        self,
        policy: AutoSyncPolicy,
        sync: Callable[[], Awaitable[Any]],
        last_sync_at: Callable[[], datetime | None],
        check_interval: float = AUTO_SYNC_CHECK_SECONDS,
    ):
        """Initialize scheduler.

        Args:
            policy: Interval policy
            sync: Coroutine function performing one sync
            last_sync_at: Returns the time of the last successful sync
            check_interval: Seconds between checks
        """
        self.policy = policy
        self.sync = sync
        self.last_sync_at = last_sync_at
        self.check_interval = check_interval
        self._in_progress = False
        self._stop = asyncio.Event()

    async def check_and_sync(self) -> bool:
        """Run one sync if due.

        Returns:
            True if a sync was started
        """
        if not self.policy.should_sync(utcnow(), self.last_sync_at(), self._in_progress):
            return False

        self._in_progress = True
        logger.info("Auto sync due, starting")
        try:
            await self.sync()
        except (ImgSyncError, ValidationError) as e:
            logger.error(f"Auto sync failed, retrying at next check: {e}")
        finally:
            self._in_progress = False
        return True

    async def run_forever(self) -> None:
        """Check on every interval until stop() is called."""
        self._stop.clear()
        logger.info(f"Auto sync every {self.policy.interval}, checking every {self.check_interval}s")
        while not self._stop.is_set():
            await self.check_and_sync()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.check_interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stop.set()
