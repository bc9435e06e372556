"""Tests for the download orchestrator."""

import asyncio
import time
from datetime import timedelta

from imgsync import downloader as downloader_module
from imgsync.downloader import DownloadOrchestrator
from imgsync.models import DownloadItem, ImageKind, ImageStatus, Slot, utcnow
from imgsync.processor import process_product_data

A = "https://cdn.example.com/a.jpg"
B = "https://cdn.example.com/b.jpg"


def _downloader(store, fetcher, **kwargs):
    kwargs.setdefault("retry_delay", 0)
    return DownloadOrchestrator(store, fetcher, **kwargs)


class TestDownloadBatch:
    """Tests for download_batch."""

    def test_single_image_then_skip(self, store, fetcher, detail_factory):
        detail = detail_factory("P1", originals=[A])
        store.merge_product_detail("P1", detail)
        items = process_product_data(detail)
        downloader = _downloader(store, fetcher)

        result = asyncio.run(downloader.download_batch(items))
        assert (result.success, result.failed, result.skipped) == (1, 0, 0)
        record = store.find_image(A)
        assert record.status == ImageStatus.PENDING_EDIT
        assert record.local_path == "P1/a.jpg"
        assert store.storage.read_bytes("P1/a.jpg") == f"image-bytes:{A}".encode()

        again = asyncio.run(downloader.download_batch(items))
        assert (again.success, again.failed, again.skipped) == (0, 0, 1)
        assert fetcher.calls == [A]

    def test_index_is_persisted(self, store, fetcher, storage):
        item = DownloadItem(remote_url=A, apply_code="P1")
        asyncio.run(_downloader(store, fetcher).download_batch([item]))
        assert '"P1/a.jpg"' in storage.read_text("index.json")

    def test_progress_for_every_item(self, store, fetcher):
        items = [DownloadItem(remote_url=A, apply_code="P1"), DownloadItem(remote_url="", apply_code="P1")]
        calls = []
        asyncio.run(_downloader(store, fetcher).download_batch(
            items, on_progress=lambda current, total, item: calls.append((current, total))
        ))
        assert sorted(calls) == [(1, 2), (2, 2)]

    def test_shared_url_fetched_once(self, store, fetcher, detail_factory):
        detail = detail_factory("P1", originals=[A], skus=[[A]])
        store.merge_product_detail("P1", detail)
        result = asyncio.run(_downloader(store, fetcher).download_batch(process_product_data(detail)))

        assert result.success == 2
        assert fetcher.calls == [A]
        record = store.find_image(A)
        assert len(store.slots_for(record)) == 2

    def test_same_file_name_gets_suffix(self, store, fetcher):
        items = [
            DownloadItem(remote_url="https://one.example.com/x/pic.jpg", apply_code="P1"),
            DownloadItem(remote_url="https://two.example.com/y/pic.jpg", apply_code="P1"),
        ]
        asyncio.run(_downloader(store, fetcher).download_batch(items))
        assert store.find_image("https://one.example.com/x/pic.jpg").local_path == "P1/pic.jpg"
        assert store.find_image("https://two.example.com/y/pic.jpg").local_path == "P1/pic_1.jpg"

    def test_unknown_product_is_created(self, store, fetcher):
        item = DownloadItem(remote_url=A, apply_code="P4", slot=Slot(kind=ImageKind.SKU, sku_index=2, position=0))
        asyncio.run(_downloader(store, fetcher).download_batch([item]))
        product = store.find_product("P4")
        assert product.find_sku(2) is not None

    def test_saves_once(self, store, fetcher, monkeypatch):
        saves = []
        monkeypatch.setattr(store, "save", lambda: saves.append(1))
        items = [DownloadItem(remote_url=f"https://cdn.example.com/{i}.jpg", apply_code="P1") for i in range(7)]
        asyncio.run(_downloader(store, fetcher).download_batch(items))
        assert saves == [1]


class TestRetries:
    """Tests for retry and failure handling."""

    def test_retry_exhaustion(self, store, fetcher_factory):
        fetcher = fetcher_factory(failing={B})
        errors = []
        items = [DownloadItem(remote_url=A, apply_code="P1"), DownloadItem(remote_url=B, apply_code="P1")]

        result = asyncio.run(_downloader(store, fetcher, retry_count=3).download_batch(
            items, on_error=lambda error, item: errors.append(item.remote_url)
        ))

        assert fetcher.calls.count(B) == 3
        assert (result.success, result.failed) == (1, 1)
        assert result.errors[0].attempts == 3
        assert not result.errors[0].permanent
        assert errors == [B]

    def test_permanent_error_not_retried(self, store, fetcher):
        item = DownloadItem(remote_url="ftp://cdn.example.com/a.jpg", apply_code="P1")
        result = asyncio.run(_downloader(store, fetcher).download_batch([item]))
        assert result.failed == 1
        assert result.errors[0].permanent
        assert fetcher.calls == []

    def test_skip_failed_images(self, store, fetcher_factory):
        fetcher = fetcher_factory(failing={B})
        downloader = _downloader(store, fetcher, retry_count=1)
        items = [DownloadItem(remote_url=B, apply_code="P1")]

        result = asyncio.run(downloader.download_batch(items))
        assert downloader.skip_failed_images(result.errors) == 1
        record = store.find_image(B)
        assert record.status == ImageStatus.DOWNLOAD_FAILED
        assert record.local_path == ""

        again = asyncio.run(downloader.download_batch(items))
        assert again.skipped == 1
        assert fetcher.calls == [B]


class TestFreshness:
    """Tests for the re-fetch decision."""

    def test_stale_pending_edit_is_refetched(self, store, fetcher):
        item = DownloadItem(remote_url=A, apply_code="P1")
        downloader = _downloader(store, fetcher)
        asyncio.run(downloader.download_batch([item]))
        store.find_image(A).timestamp = utcnow() - timedelta(days=8)

        result = asyncio.run(downloader.download_batch([item]))
        assert result.success == 1
        assert fetcher.calls == [A, A]
        assert store.find_image(A).local_path == "P1/a.jpg"

    def test_stale_edited_image_is_kept(self, store, fetcher):
        item = DownloadItem(remote_url=A, apply_code="P1")
        downloader = _downloader(store, fetcher)
        asyncio.run(downloader.download_batch([item]))
        record = store.find_image(A)
        record.status = ImageStatus.EDITING
        record.timestamp = utcnow() - timedelta(days=30)

        assert not downloader.should_download(item)

    def test_missing_file_is_refetched(self, store, fetcher):
        item = DownloadItem(remote_url=A, apply_code="P1")
        downloader = _downloader(store, fetcher)
        asyncio.run(downloader.download_batch([item]))
        store.storage.delete("P1/a.jpg")
        assert downloader.should_download(item)

    def test_failed_refresh_keeps_cached_file(self, store, fetcher, fetcher_factory):
        item = DownloadItem(remote_url=A, apply_code="P1")
        asyncio.run(_downloader(store, fetcher).download_batch([item]))
        store.find_image(A).timestamp = utcnow() - timedelta(days=8)

        downloader = _downloader(store, fetcher_factory(failing={A}), retry_count=3)
        result = asyncio.run(downloader.download_batch([item]))
        assert result.failed == 1
        assert downloader.skip_failed_images(result.errors) == 0

        record = store.find_image(A)
        assert record.status == ImageStatus.PENDING_EDIT
        assert record.local_path == "P1/a.jpg"
        assert store.storage.exists("P1/a.jpg")

    def test_exactly_seven_days_is_not_refetched(self, store, fetcher, monkeypatch):
        item = DownloadItem(remote_url=A, apply_code="P1")
        downloader = _downloader(store, fetcher)
        asyncio.run(downloader.download_batch([item]))

        now = utcnow()
        store.find_image(A).timestamp = now - timedelta(days=7)
        monkeypatch.setattr(downloader_module, "utcnow", lambda: now)
        assert not downloader.should_download(item)

        store.find_image(A).timestamp = now - timedelta(days=7, seconds=1)
        assert downloader.should_download(item)


class TestConcurrency:
    """Tests for bounded concurrency."""

    def test_chunks_of_three(self, store, fetcher_factory):
        delay = 0.05
        fetcher = fetcher_factory(delay=delay)
        items = [DownloadItem(remote_url=f"https://cdn.example.com/{i}.jpg", apply_code="P1") for i in range(10)]

        started = time.monotonic()
        result = asyncio.run(_downloader(store, fetcher, max_concurrency=3).download_batch(items))
        elapsed = time.monotonic() - started

        assert result.success == 10
        assert fetcher.max_active <= 3
        assert elapsed >= 4 * delay * 0.9
