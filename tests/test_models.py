"""Tests for Pydantic models."""

from datetime import datetime, timezone

from imgsync.models import (
    ImageKind,
    ImageRecord,
    ImageStatus,
    ProductRecord,
    RemoteProductSummary,
    Slot,
    UploadContext,
)


class TestImageRecord:
    """Tests for ImageRecord model."""

    def test_defaults(self):
        record = ImageRecord(remote_url="https://cdn.example.com/a.jpg")
        assert record.status == ImageStatus.NOT_DOWNLOADED
        assert record.local_path == ""
        assert record.file_size == 0
        assert len(record.record_id) == 32

    def test_legacy_image_url_key(self):
        record = ImageRecord.model_validate({"imageUrl": "https://cdn.example.com/a.jpg"})
        assert record.remote_url == "https://cdn.example.com/a.jpg"

        data = record.model_dump(mode="json", by_alias=True)
        assert data["remoteUrl"] == "https://cdn.example.com/a.jpg"
        assert "imageUrl" not in data

    def test_millisecond_timestamp_is_aware(self):
        record = ImageRecord.model_validate({"remoteUrl": "u", "timestamp": 1700000000000})
        assert record.timestamp.year == 2023
        assert record.timestamp.tzinfo is not None

    def test_naive_timestamp_becomes_utc(self):
        record = ImageRecord.model_validate({"remoteUrl": "u", "timestamp": "2024-05-01T10:00:00"})
        assert record.timestamp == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    def test_unknown_fields_are_preserved(self):
        record = ImageRecord.model_validate({"remoteUrl": "u", "imageId": "remote-7", "width": 800})
        data = record.model_dump(mode="json", by_alias=True)
        assert data["imageId"] == "remote-7"
        assert data["width"] == 800

    def test_legacy_status_is_readable(self):
        record = ImageRecord.model_validate({"remoteUrl": "u", "status": "downloaded"})
        assert record.status == ImageStatus.DOWNLOADED

    def test_identity_falls_back_to_local_path(self):
        assert ImageRecord(local_path="P1/a.jpg").identity == "P1/a.jpg"
        assert ImageRecord(remote_url="u", local_path="P1/a.jpg").identity == "u"


class TestProductRecord:
    """Tests for ProductRecord model."""

    def test_camel_case_keys(self):
        product = ProductRecord.model_validate({"applyCode": "P1", "packageList": [1]})
        assert product.apply_code == "P1"
        assert product.package_list == [1]

    def test_missing_sku_collection_is_none(self):
        product = ProductRecord(apply_code="P1")
        assert product.collection(ImageKind.SKU, 2) is None
        assert product.collection(ImageKind.ORIGINAL) is product.original_images

    def test_ensure_collection_creates_sku(self):
        product = ProductRecord(apply_code="P1")
        slots = product.ensure_collection(ImageKind.SKU, 2)
        assert slots == []
        assert product.find_sku(2) is not None


class TestSlot:
    """Tests for Slot addressing."""

    def test_same_collection(self):
        assert Slot(kind=ImageKind.ORIGINAL, position=0).same_collection(Slot(kind=ImageKind.ORIGINAL, position=3))
        assert not Slot(kind=ImageKind.ORIGINAL).same_collection(Slot(kind=ImageKind.SCENE))
        assert not Slot(kind=ImageKind.SKU, sku_index=0).same_collection(Slot(kind=ImageKind.SKU, sku_index=1))

    def test_describe(self):
        assert Slot(kind=ImageKind.SKU, sku_index=1).describe() == "sku[1]"
        assert Slot(kind=ImageKind.SCENE).describe() == "scene"


class TestRemoteModels:
    """Tests for remote payload models."""

    def test_summary_name_aliases(self):
        summary = RemoteProductSummary.model_validate({"applyCode": "P1", "chineseName": "衬衫"})
        assert summary.name == "衬衫"

    def test_upload_form_fields(self):
        context = UploadContext(apply_code="P1", user_id=42, user_code="abc")
        assert context.form_fields() == {"applyCode": "P1", "userId": "42", "userCode": "abc"}
