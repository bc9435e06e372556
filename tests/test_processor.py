"""Tests for product payload processing."""

import pytest

from imgsync.errors import PermanentItemError
from imgsync.models import DownloadItem, ImageKind
from imgsync.processor import (
    process_multiple_products,
    process_product_data,
    validate_items,
)

A = "https://cdn.example.com/a.jpg"
B = "https://cdn.example.com/b.jpg"
C = "https://cdn.example.com/c.jpg"


class TestProcessProductData:
    """Tests for process_product_data."""

    def test_all_collections(self, detail_factory):
        detail = detail_factory("P1", originals=[A], skus=[[B]], scenes=[C])
        items = process_product_data(detail)
        assert [(i.remote_url, i.slot.kind) for i in items] == [
            (A, ImageKind.ORIGINAL),
            (B, ImageKind.SKU),
            (C, ImageKind.SCENE),
        ]
        assert all(i.apply_code == "P1" for i in items)

    def test_envelope(self, detail_factory):
        payload = {"statusCode": 200, "dataClass": detail_factory("P1", originals=[A])}
        assert len(process_product_data(payload)) == 1

    def test_apply_code_argument(self):
        items = process_product_data({"originalImages": [{"imageUrl": A}]}, apply_code="P7")
        assert items[0].apply_code == "P7"

    def test_missing_apply_code(self):
        with pytest.raises(PermanentItemError):
            process_product_data({"originalImages": [{"imageUrl": A}]})

    def test_invalid_payload(self):
        with pytest.raises(PermanentItemError):
            process_product_data(["not", "a", "dict"])

    def test_sku_index_from_payload(self):
        detail = {"applyCode": "P1", "publishSkus": [{"skuIndex": 5, "skuImages": [{"imageUrl": A}]}]}
        assert process_product_data(detail)[0].slot.sku_index == 5

    def test_scene_url_key_and_empty_entries(self):
        detail = {"applyCode": "P1", "senceImages": [{"url": A}, {"imageUrl": ""}, "junk"]}
        items = process_product_data(detail)
        assert [i.remote_url for i in items] == [A]


class TestValidateItems:
    """Tests for validate_items."""

    def test_shared_urls_are_not_errors(self):
        items = [DownloadItem(remote_url=A, apply_code="P1"), DownloadItem(remote_url=A, apply_code="P1")]
        report = validate_items(items)
        assert report.is_valid
        assert report.shared_urls == [A]

    def test_errors(self):
        items = [
            DownloadItem(remote_url="", apply_code="P1"),
            DownloadItem(remote_url="ftp://x/a.jpg", apply_code=""),
        ]
        report = validate_items(items)
        assert not report.is_valid
        assert len(report.errors) == 3

    def test_process_multiple_products(self, detail_factory):
        items = process_multiple_products([
            detail_factory("P1", originals=[A]),
            detail_factory("P2", originals=[B, C]),
        ])
        assert len(items) == 3

    def test_process_multiple_rejects_bad_urls(self, detail_factory):
        with pytest.raises(PermanentItemError):
            process_multiple_products([detail_factory("P1", originals=["ftp://x/a.jpg"])])
