"""Data models for the product image index."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_record_id() -> str:
    """Generate a synthetic image record id."""
    return uuid.uuid4().hex


class ImageStatus(str, Enum):
    """Status of a cached image."""

    NOT_DOWNLOADED = "not_downloaded"
    PENDING_EDIT = "pending_edit"
    EDITING = "editing"
    COMPLETED = "completed"
    DOWNLOAD_FAILED = "download_failed"

    # Legacy statuses, read from old index files only
    DOWNLOADED = "downloaded"
    MODIFIED = "modified"
    SYNCED = "synced"
    LOCAL_ADDED = "local_added"


# Statuses that do not require a local file
FILELESS_STATUSES = frozenset({ImageStatus.NOT_DOWNLOADED, ImageStatus.DOWNLOAD_FAILED})


class ImageKind(str, Enum):
    """Image collection within a product."""

    ORIGINAL = "original"
    SKU = "sku"
    SCENE = "scene"


class CamelModel(BaseModel):
    """Base model serialized with the camelCase keys of the index document."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ImageRecord(CamelModel):
    """A single cached image, shared by every slot that references it."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    record_id: str = Field(default_factory=new_record_id, description="Synthetic arena id")
    remote_url: str = Field(
        default="",
        validation_alias=AliasChoices("remoteUrl", "imageUrl", "remote_url"),
        serialization_alias="remoteUrl",
        description="Remote URL, identity within its collection",
    )
    local_path: str = Field(default="", description="Path relative to the storage root")
    status: ImageStatus = Field(default=ImageStatus.NOT_DOWNLOADED)
    timestamp: datetime | None = Field(default=None, description="Last state-write time")
    file_size: int = Field(default=0)
    previous_status: ImageStatus | None = Field(default=None)
    editing_started_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)
    uploaded_at: datetime | None = Field(default=None)
    added_locally: bool = Field(default=False)

    @field_validator("timestamp", "editing_started_at", "completed_at", "uploaded_at")
    @classmethod
    def _ensure_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def identity(self) -> str:
        """Identity used by callers: remote URL, or local path for local-only images."""
        return self.remote_url or self.local_path

    def touch(self) -> None:
        """Stamp the last state-write time."""
        self.timestamp = utcnow()


class ImageSlot(CamelModel):
    """Reference from a collection position to an arena record."""

    image_id: str = Field(description="Arena record id")
    index: int | None = Field(default=None, description="Display order in the collection")


class SkuEntry(CamelModel):
    """A published SKU and its images."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    sku_index: int = Field(default=0)
    attr_classes: list[Any] = Field(default_factory=list)
    sku_images: list[ImageSlot] = Field(default_factory=list)


class ProductRecord(CamelModel):
    """A remote product and its three image collections."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    apply_code: str = Field(description="Unique product key")
    name: str | None = Field(default=None, description="Display name")
    package_list: list[Any] = Field(default_factory=list)
    status: str | int | None = Field(default=None, description="Remote workflow stage")
    original_images: list[ImageSlot] = Field(default_factory=list)
    publish_skus: list[SkuEntry] = Field(default_factory=list)
    sence_images: list[ImageSlot] = Field(default_factory=list)

    def find_sku(self, sku_index: int) -> SkuEntry | None:
        """Find a SKU by its index."""
        for sku in self.publish_skus:
            if sku.sku_index == sku_index:
                return sku
        return None

    def collection(self, kind: ImageKind, sku_index: int | None = None) -> list[ImageSlot] | None:
        """Return the slot list for a collection, or None if the SKU does not exist."""
        if kind == ImageKind.ORIGINAL:
            return self.original_images
        if kind == ImageKind.SCENE:
            return self.sence_images
        sku = self.find_sku(sku_index or 0)
        return sku.sku_images if sku else None

    def ensure_collection(self, kind: ImageKind, sku_index: int | None = None) -> list[ImageSlot]:
        """Return the slot list for a collection, creating the SKU if needed."""
        existing = self.collection(kind, sku_index)
        if existing is not None:
            return existing
        sku = SkuEntry(sku_index=sku_index or 0)
        self.publish_skus.append(sku)
        return sku.sku_images


class Slot(BaseModel):
    """Logical address of an image within a product."""

    kind: ImageKind = Field(default=ImageKind.ORIGINAL)
    sku_index: int | None = Field(default=None, description="SKU index for sku images")
    position: int | None = Field(default=None, description="Position in the source collection")

    def same_collection(self, other: "Slot") -> bool:
        """Whether two slots address the same collection."""
        if self.kind != other.kind:
            return False
        if self.kind == ImageKind.SKU:
            return (self.sku_index or 0) == (other.sku_index or 0)
        return True

    def describe(self) -> str:
        """Short human-readable form."""
        if self.kind == ImageKind.SKU:
            return f"sku[{self.sku_index or 0}]"
        return self.kind.value


class DownloadItem(BaseModel):
    """A remote image wanted at a product slot."""

    remote_url: str = Field(description="Remote image URL")
    apply_code: str = Field(description="Owning product")
    slot: Slot = Field(default_factory=Slot)


class DownloadError(BaseModel):
    """A failed download item."""

    item: DownloadItem
    message: str
    attempts: int = Field(default=0)
    permanent: bool = Field(default=False)


class BatchResult(BaseModel):
    """Outcome of a download batch."""

    total: int = Field(default=0)
    success: int = Field(default=0)
    failed: int = Field(default=0)
    skipped: int = Field(default=0)
    errors: list[DownloadError] = Field(default_factory=list)


class UploadContext(BaseModel):
    """Product and account an upload belongs to."""

    apply_code: str
    user_id: int | str | None = Field(default=None)
    user_code: str | None = Field(default=None)

    def form_fields(self) -> dict[str, str]:
        """Multipart form fields sent with each file."""
        return {
            "applyCode": self.apply_code,
            "userId": "" if self.user_id is None else str(self.user_id),
            "userCode": self.user_code or "",
        }


class UploadError(BaseModel):
    """A failed upload item."""

    image_id: str
    message: str
    attempts: int = Field(default=0)


class UploadResult(BaseModel):
    """Outcome of an upload batch."""

    total: int = Field(default=0)
    success: int = Field(default=0)
    failed: int = Field(default=0)
    cancelled: int = Field(default=0)
    new_urls: dict[str, str] = Field(default_factory=dict)
    errors: list[UploadError] = Field(default_factory=list)
    duration_ms: int = Field(default=0)


class MigrationResult(BaseModel):
    """Outcome of a legacy status migration."""

    migrated: int = Field(default=0)
    total: int = Field(default=0)


class LocalImportResult(BaseModel):
    """Outcome of importing one file from disk."""

    file_name: str
    success: bool = Field(default=True)
    local_path: str | None = Field(default=None)
    remote_url: str | None = Field(default=None)
    error: str | None = Field(default=None)


class StorageStats(BaseModel):
    """Summary of the cached index."""

    total_products: int = Field(default=0)
    total_images: int = Field(default=0)
    total_size: int = Field(default=0)
    by_status: dict[str, int] = Field(default_factory=dict)
    last_update: datetime | None = Field(default=None)


class RemoteProductSummary(CamelModel):
    """An entry of the remote product list."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    apply_code: str
    name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("name", "chineseName", "productName"),
    )
    status: str | int | None = Field(default=None)


class SyncReport(BaseModel):
    """Outcome of a full sync run."""

    products_seen: int = Field(default=0)
    products_new: int = Field(default=0)
    products_failed: list[str] = Field(default_factory=list)
    images_queued: int = Field(default=0)
    download: BatchResult = Field(default_factory=BatchResult)
    marked_failed: int = Field(default=0)
