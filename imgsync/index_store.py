"""Index of cached products and images, persisted as one JSON document."""

import json
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import ImageNotFoundError, IndexPersistenceError, ProductNotFoundError
from .models import (
    FILELESS_STATUSES,
    ImageKind,
    ImageRecord,
    ImageSlot,
    ImageStatus,
    LocalImportResult,
    ProductRecord,
    SkuEntry,
    Slot,
    StorageStats,
    utcnow,
)
from .paths import local_import_path, normalize_filename, with_numeric_suffix
from .processor import iter_detail_images, sku_index_of
from .storage import LocalStorage

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"
LOCAL_URL_PREFIX = "local://"

_COLLECTION_FIELDS = {"original_images", "publish_skus", "sence_images"}
_COLLECTION_KEYS = ("originalImages", "publishSkus", "senceImages")


@dataclass
class SlotRef:
    """A collection position resolved to its arena record."""

    product: ProductRecord
    kind: ImageKind
    sku_index: int | None
    position: int
    slot: ImageSlot
    record: ImageRecord

    def as_slot(self) -> Slot:
        index = self.slot.index if self.slot.index is not None else self.position
        return Slot(kind=self.kind, sku_index=self.sku_index, position=index)


class IndexStore:
    """In-memory index of products whose images live in a flat record arena."""

    def __init__(self, storage: LocalStorage, index_file: str = INDEX_FILE):
        """Initialize the store.

        Args:
            storage: Storage holding the images and the index document
            index_file: Index document path relative to the storage root
        """
        self.storage = storage
        self.index_file = index_file
        self.products: list[ProductRecord] = []
        self.images: dict[str, ImageRecord] = {}

    # =========================================================================
    # Persistence
    # =========================================================================

    def load(self) -> None:
        """Load the index document, falling back to an empty index on corruption."""
        self.products = []
        self.images = {}

        if not self.storage.exists(self.index_file):
            logger.info("No index file found, starting with an empty index")
            return

        try:
            raw = json.loads(self.storage.read_text(self.index_file))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load index {self.index_file}: {e}; starting empty")
            return

        if not isinstance(raw, list):
            logger.error(f"Index {self.index_file} is not a product list; starting empty")
            return

        for entry in raw:
            self._load_product(entry)

        logger.info(f"Loaded {len(self.products)} products, {len(self.images)} images")

    def save(self) -> None:
        """Write the whole index atomically.

        Raises:
            IndexPersistenceError: If the document cannot be written
        """
        payload = json.dumps(self.to_document(), indent=2, ensure_ascii=False)
        try:
            self.storage.write_text(self.index_file, payload)
        except OSError as e:
            logger.error(f"Failed to save index: {e}")
            raise IndexPersistenceError(f"Could not write {self.index_file}: {e}") from e
        logger.info(f"Index saved: {len(self.products)} products")

    def to_document(self) -> list[dict[str, Any]]:
        """Serialize to the persisted form, images embedded per slot."""
        return [self._dump_product(product) for product in self.products]

    def _dump_product(self, product: ProductRecord) -> dict[str, Any]:
        data = product.model_dump(
            mode="json", by_alias=True, exclude_none=True, exclude=_COLLECTION_FIELDS
        )
        data["originalImages"] = self._dump_collection(product.original_images)
        data["publishSkus"] = []
        for sku in product.publish_skus:
            sku_data = sku.model_dump(
                mode="json", by_alias=True, exclude_none=True, exclude={"sku_images"}
            )
            sku_data["skuImages"] = self._dump_collection(sku.sku_images)
            data["publishSkus"].append(sku_data)
        data["senceImages"] = self._dump_collection(product.sence_images)
        return data

    def _dump_collection(self, slots: list[ImageSlot]) -> list[dict[str, Any]]:
        entries = []
        for slot in slots:
            record = self.images.get(slot.image_id)
            if record is None:
                continue
            entry = record.model_dump(mode="json", by_alias=True, exclude_none=True)
            if slot.index is not None:
                entry["index"] = slot.index
            entries.append(entry)
        return entries

    def _load_product(self, entry: Any) -> None:
        if not isinstance(entry, dict):
            logger.warning(f"Skipping non-object product entry: {entry!r}")
            return

        data = {k: v for k, v in entry.items() if k not in _COLLECTION_KEYS}
        try:
            product = ProductRecord.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Skipping corrupt product entry ({e.error_count()} errors)")
            return

        if self.find_product(product.apply_code):
            logger.warning(f"Skipping duplicate product entry: {product.apply_code}")
            return

        self.products.append(product)
        product.original_images = self._fold_collection(product, entry.get("originalImages"))

        raw_skus = entry.get("publishSkus")
        for position, raw_sku in enumerate(raw_skus if isinstance(raw_skus, list) else []):
            if not isinstance(raw_sku, dict):
                continue
            sku_data = {k: v for k, v in raw_sku.items() if k != "skuImages"}
            try:
                sku = SkuEntry.model_validate(sku_data)
            except ValidationError:
                logger.warning(f"Product {product.apply_code}: resetting corrupt SKU {position}")
                sku = SkuEntry(sku_index=position)
            sku.sku_images = self._fold_collection(product, raw_sku.get("skuImages"))
            product.publish_skus.append(sku)

        product.sence_images = self._fold_collection(product, entry.get("senceImages"))

    def _fold_collection(self, product: ProductRecord, raw_images: Any) -> list[ImageSlot]:
        slots: list[ImageSlot] = []
        if not isinstance(raw_images, list):
            return slots

        for raw in raw_images:
            if not isinstance(raw, dict):
                continue
            data = dict(raw)
            index = data.pop("index", None)
            if not isinstance(index, int):
                index = None
            try:
                record = ImageRecord.model_validate(data)
            except ValidationError as e:
                url = data.get("remoteUrl") or data.get("imageUrl")
                url = url if isinstance(url, str) else ""
                logger.warning(
                    f"Product {product.apply_code}: resetting corrupt image record "
                    f"{url!r} ({e.error_count()} errors)"
                )
                record = ImageRecord(remote_url=url, timestamp=utcnow())
            record = self._intern(product, record)
            slots.append(ImageSlot(image_id=record.record_id, index=index))
        return slots

    def _intern(self, product: ProductRecord, record: ImageRecord) -> ImageRecord:
        """Add a record to the arena, reusing an existing record for the same file."""
        existing = self.images.get(record.record_id)
        if existing is None and record.local_path:
            existing = next(
                (r for r in self.images.values() if r.local_path == record.local_path), None
            )
        if existing is None and record.remote_url:
            existing = next(
                (
                    r
                    for r in self._product_records(product)
                    if r.remote_url == record.remote_url
                    and not (r.local_path and record.local_path and r.local_path != record.local_path)
                ),
                None,
            )

        if existing is None:
            self.images[record.record_id] = record
            return record

        if record.timestamp and (not existing.timestamp or record.timestamp > existing.timestamp):
            state = record.model_dump(exclude={"record_id"})
            for key, value in state.items():
                setattr(existing, key, value)
        return existing

    # =========================================================================
    # Queries
    # =========================================================================

    def find_product(self, apply_code: str) -> ProductRecord | None:
        """Find a product by apply code."""
        for product in self.products:
            if product.apply_code == apply_code:
                return product
        return None

    def get_product(self, apply_code: str) -> ProductRecord:
        product = self.find_product(apply_code)
        if product is None:
            raise ProductNotFoundError(f"Product not found: {apply_code}")
        return product

    def iter_slots(self, product: ProductRecord | None = None) -> Iterator[SlotRef]:
        """Iterate every slot of one or all products, in document order."""
        products = [product] if product is not None else self.products
        for prod in products:
            for position, slot in enumerate(prod.original_images):
                record = self.images.get(slot.image_id)
                if record is not None:
                    yield SlotRef(prod, ImageKind.ORIGINAL, None, position, slot, record)
            for sku in prod.publish_skus:
                for position, slot in enumerate(sku.sku_images):
                    record = self.images.get(slot.image_id)
                    if record is not None:
                        yield SlotRef(prod, ImageKind.SKU, sku.sku_index, position, slot, record)
            for position, slot in enumerate(prod.sence_images):
                record = self.images.get(slot.image_id)
                if record is not None:
                    yield SlotRef(prod, ImageKind.SCENE, None, position, slot, record)

    def _product_records(self, product: ProductRecord) -> Iterator[ImageRecord]:
        seen: set[str] = set()
        for ref in self.iter_slots(product):
            if ref.record.record_id not in seen:
                seen.add(ref.record.record_id)
                yield ref.record

    def images_for_product(self, apply_code: str) -> list[ImageRecord]:
        """Distinct image records of a product, in slot order."""
        product = self.find_product(apply_code)
        return list(self._product_records(product)) if product else []

    def find_image(self, identity: str) -> ImageRecord | None:
        """Find a record by remote URL first, then local path, then arena id."""
        if not identity:
            return None
        refs = list(self.iter_slots())
        for ref in refs:
            if ref.record.remote_url == identity:
                return ref.record
        for ref in refs:
            if ref.record.local_path == identity:
                return ref.record
        return self.images.get(identity)

    def get_image(self, identity: str) -> ImageRecord:
        record = self.find_image(identity)
        if record is None:
            raise ImageNotFoundError(f"Image not found: {identity}")
        return record

    def find_slot_record(self, apply_code: str, slot: Slot, remote_url: str) -> ImageRecord | None:
        """Record at the same logical slot (collection) with the given URL."""
        product = self.find_product(apply_code)
        if product is None:
            return None
        for ref in self.iter_slots(product):
            if ref.record.remote_url == remote_url and ref.as_slot().same_collection(slot):
                return ref.record
        return None

    def slots_for(self, record: ImageRecord) -> list[SlotRef]:
        """All slots referencing a record."""
        return [ref for ref in self.iter_slots() if ref.record.record_id == record.record_id]

    def records_sharing(self, record: ImageRecord) -> list[ImageRecord]:
        """The record plus every other record pointing at the same local file."""
        if not record.local_path:
            return [record]
        return [record] + [
            r
            for r in self.images.values()
            if r.record_id != record.record_id and r.local_path == record.local_path
        ]

    def is_path_referenced(self, local_path: str, exclude: ImageRecord | None = None) -> bool:
        """Whether any record other than ``exclude`` uses a local path."""
        return any(
            r.local_path == local_path and (exclude is None or r.record_id != exclude.record_id)
            for r in self.images.values()
        )

    def images_by_status(self, status: ImageStatus) -> list[SlotRef]:
        """Slots whose record is in a status."""
        return [ref for ref in self.iter_slots() if ref.record.status == status]

    def find_image_by_filename(self, filename: str) -> ImageRecord | None:
        """Match a document file name (any directory, any case) to a record."""
        target = normalize_filename(filename)
        if not target:
            return None
        for ref in self.iter_slots():
            if ref.record.local_path and normalize_filename(ref.record.local_path) == target:
                return ref.record
        return None

    # =========================================================================
    # Products
    # =========================================================================

    def get_or_create_product(
        self, apply_code: str, seed: dict[str, Any] | None = None
    ) -> ProductRecord:
        """Return an existing product or insert a new one.

        Args:
            apply_code: Product key
            seed: Remote metadata applied to the product (collections ignored)
        """
        product = self.find_product(apply_code)
        if product is None:
            product = ProductRecord(apply_code=apply_code)
            self.products.append(product)
            logger.debug(f"Created product {apply_code}")
        if seed:
            self._apply_metadata(product, seed)
        return product

    def _apply_metadata(self, product: ProductRecord, seed: dict[str, Any]) -> None:
        meta = {k: v for k, v in seed.items() if k not in _COLLECTION_KEYS}
        meta["applyCode"] = product.apply_code
        try:
            fresh = ProductRecord.model_validate(meta)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid metadata for {product.apply_code}: {e.error_count()} errors")
            return
        for name in fresh.model_fields_set - _COLLECTION_FIELDS - {"apply_code"}:
            setattr(product, name, getattr(fresh, name))
        for key, value in (fresh.model_extra or {}).items():
            setattr(product, key, value)

    def merge_product_detail(self, apply_code: str, detail: dict[str, Any]) -> ProductRecord:
        """Replace a product's collections with the images of a remote detail.

        New images start as ``not_downloaded``; records already cached for the
        same URL in this product keep their state.
        """
        product = self.get_or_create_product(apply_code, detail)
        known = {r.remote_url: r for r in self._product_records(product) if r.remote_url}

        product.original_images = []
        product.sence_images = []
        product.publish_skus = []

        raw_skus = detail.get("publishSkus") or []
        for position, raw_sku in enumerate(raw_skus):
            if not isinstance(raw_sku, dict):
                continue
            sku_data = {k: v for k, v in raw_sku.items() if k != "skuImages"}
            sku_data["skuIndex"] = sku_index_of(raw_sku, position)
            try:
                product.publish_skus.append(SkuEntry.model_validate(sku_data))
            except ValidationError:
                product.publish_skus.append(SkuEntry(sku_index=sku_data["skuIndex"]))

        for slot, raw, url in iter_detail_images(detail):
            record = known.get(url)
            if record is None:
                record = self._record_from_remote(raw, url)
                known[url] = record
                self.images[record.record_id] = record
            collection = product.ensure_collection(slot.kind, slot.sku_index)
            collection.append(ImageSlot(image_id=record.record_id, index=slot.position))

        self._prune()
        return product

    @staticmethod
    def _record_from_remote(raw: dict[str, Any], url: str) -> ImageRecord:
        data = {
            k: v
            for k, v in raw.items()
            if k not in ("index", "status", "localPath", "recordId", "imageUrl", "url")
        }
        data.update(remoteUrl=url, status=ImageStatus.NOT_DOWNLOADED.value, timestamp=utcnow())
        try:
            return ImageRecord.model_validate(data)
        except ValidationError:
            return ImageRecord(remote_url=url, timestamp=utcnow())

    def remove_product(self, apply_code: str) -> bool:
        """Remove a product and delete the files no other record references."""
        product = self.find_product(apply_code)
        if product is None:
            logger.warning(f"Cannot remove unknown product: {apply_code}")
            return False

        owned = list(self._product_records(product))
        self.products.remove(product)
        self._prune()

        deleted = 0
        for record in owned:
            if record.local_path and not self.is_path_referenced(record.local_path):
                if self.storage.delete(record.local_path):
                    deleted += 1
        self.storage.remove_empty_folder(apply_code)

        self.save()
        logger.info(f"Removed product {apply_code} ({deleted} files deleted)")
        return True

    def clear(self) -> int:
        """Drop every index entry, keeping the files on disk."""
        cleared = len(self.products)
        self.products = []
        self.images = {}
        self.save()
        logger.info(f"Cleared index ({cleared} products); local files kept")
        return cleared

    # =========================================================================
    # Images
    # =========================================================================

    def attach_image(self, apply_code: str, slot: Slot, remote_url: str) -> ImageRecord:
        """Find or create the record for a URL at a product slot.

        A URL already used elsewhere in the product reuses that record, so
        every referencing slot shares one file and one status.
        """
        product = self.get_or_create_product(apply_code)
        existing = self.find_slot_record(apply_code, slot, remote_url)
        if existing is not None:
            return existing

        record = next((r for r in self._product_records(product) if r.remote_url == remote_url), None)
        if record is None:
            record = ImageRecord(remote_url=remote_url, timestamp=utcnow())
            self.images[record.record_id] = record

        collection = product.ensure_collection(slot.kind, slot.sku_index)
        collection.append(ImageSlot(image_id=record.record_id, index=slot.position))
        return record

    def add_local_images(
        self,
        apply_code: str,
        files: list[Path | str],
        kind: ImageKind,
        sku_index: int | None = None,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> list[LocalImportResult]:
        """Import files from disk into a product collection.

        Files are processed one by one so numeric-suffix de-duplication sees
        every earlier import; the index is saved once at the end.
        """
        product = self.get_or_create_product(apply_code)
        collection = product.ensure_collection(kind, sku_index)
        results: list[LocalImportResult] = []

        for i, file in enumerate(files, 1):
            source = Path(file)
            try:
                data = source.read_bytes()
                base = local_import_path(source.name, apply_code)
                target = base
                counter = 1
                while self.storage.exists(target) or self.is_path_referenced(target):
                    target = with_numeric_suffix(base, counter)
                    counter += 1

                self.storage.write_bytes(target, data)
                record = ImageRecord(
                    remote_url=f"{LOCAL_URL_PREFIX}{target}",
                    local_path=target,
                    status=ImageStatus.PENDING_EDIT,
                    timestamp=utcnow(),
                    file_size=len(data),
                    added_locally=True,
                )
                self.images[record.record_id] = record
                collection.append(ImageSlot(image_id=record.record_id, index=len(collection)))
                results.append(LocalImportResult(
                    file_name=source.name,
                    local_path=target,
                    remote_url=record.remote_url,
                ))
                logger.debug(f"Imported {source.name} -> {target}")
            except (OSError, ValueError) as e:
                logger.error(f"Failed to import {source}: {e}")
                results.append(LocalImportResult(file_name=source.name, success=False, error=str(e)))

            if on_progress:
                on_progress(i, len(files))

        self.save()
        imported = sum(1 for r in results if r.success)
        logger.info(f"Imported {imported}/{len(files)} files into {apply_code} {kind.value}")
        return results

    def reorder_image(
        self,
        apply_code: str,
        kind: ImageKind,
        sku_index: int | None,
        image_identity: str,
        target_index: int,
        position: str = "before",
    ) -> list[ImageSlot]:
        """Move an image before or after a target position and renumber the collection."""
        product = self.get_product(apply_code)
        collection = product.collection(kind, sku_index)
        if collection is None:
            raise ValueError(f"SKU {sku_index} does not exist in {apply_code}")
        if not collection:
            raise ValueError(f"{kind.value} collection of {apply_code} is empty")
        if position not in ("before", "after"):
            raise ValueError(f"Invalid insert position: {position}")

        source_index = next(
            (
                i
                for i, slot in enumerate(collection)
                if slot.image_id == image_identity
                or self._slot_matches(slot, image_identity)
            ),
            -1,
        )
        if source_index == -1:
            raise ImageNotFoundError(f"Image not in collection: {image_identity}")
        if not 0 <= target_index < len(collection):
            raise ValueError(f"Target index {target_index} out of range [0, {len(collection) - 1}]")

        final_index = target_index if position == "before" else target_index + 1
        if source_index < final_index:
            final_index -= 1

        if source_index != final_index:
            moved = collection.pop(source_index)
            collection.insert(final_index, moved)
            for i, slot in enumerate(collection):
                slot.index = i
            self.save()
        return collection

    def _slot_matches(self, slot: ImageSlot, identity: str) -> bool:
        record = self.images.get(slot.image_id)
        return record is not None and identity in (record.remote_url, record.local_path)

    def delete_image(
        self, apply_code: str, kind: ImageKind, remote_url: str, sku_index: int | None = None
    ) -> bool:
        """Remove an image from a collection; the local file is kept."""
        product = self.find_product(apply_code)
        if product is None:
            logger.warning(f"Cannot delete image, unknown product: {apply_code}")
            return False

        if kind == ImageKind.SKU and sku_index is None:
            collections = [sku.sku_images for sku in product.publish_skus]
        else:
            collection = product.collection(kind, sku_index)
            collections = [collection] if collection is not None else []

        for collection in collections:
            for i, slot in enumerate(collection):
                record = self.images.get(slot.image_id)
                if record is not None and record.remote_url == remote_url:
                    del collection[i]
                    self._prune()
                    self.save()
                    return True

        logger.warning(f"Image to delete not found: {remote_url}")
        return False

    def delete_image_by_index(
        self, apply_code: str, kind: ImageKind, image_index: int, sku_index: int | None = None
    ) -> bool:
        """Remove the image at a collection position; the local file is kept."""
        product = self.find_product(apply_code)
        if product is None:
            return False
        collection = product.collection(kind, sku_index)
        if collection is None or not 0 <= image_index < len(collection):
            logger.warning(f"Invalid image position {image_index} in {apply_code} {kind.value}")
            return False
        del collection[image_index]
        self._prune()
        self.save()
        return True

    def reset_failed_images(self, apply_code: str | None = None) -> int:
        """Make ``download_failed`` images eligible for download again."""
        reset = 0
        records = self.images_for_product(apply_code) if apply_code else list(self.images.values())
        for record in records:
            if record.status == ImageStatus.DOWNLOAD_FAILED:
                record.status = ImageStatus.NOT_DOWNLOADED
                record.touch()
                reset += 1
        if reset:
            self.save()
        return reset

    def _prune(self) -> int:
        """Drop arena records no slot references."""
        referenced = {
            slot.image_id
            for product in self.products
            for slot in (
                product.original_images
                + product.sence_images
                + [s for sku in product.publish_skus for s in sku.sku_images]
            )
        }
        orphans = [rid for rid in self.images if rid not in referenced]
        for rid in orphans:
            del self.images[rid]
        return len(orphans)

    # =========================================================================
    # Integrity
    # =========================================================================

    def validate_and_repair(self) -> int:
        """Reset records whose status needs a file that is missing.

        Returns:
            Number of repaired records; the caller saves when it is non-zero
        """
        repaired = 0
        for record in self.images.values():
            if record.status in FILELESS_STATUSES:
                continue
            if record.local_path and self.storage.exists(record.local_path):
                continue

            logger.warning(
                f"Repairing {record.identity or record.record_id}: status "
                f"{record.status.value} without local file {record.local_path!r}"
            )
            record.status = ImageStatus.NOT_DOWNLOADED
            record.local_path = ""
            record.file_size = 0
            record.previous_status = None
            record.touch()
            repaired += 1

        if repaired:
            logger.info(f"Repaired {repaired} image records")
        return repaired

    # =========================================================================
    # Summary & Reporting
    # =========================================================================

    def status_stats(self) -> dict[str, int]:
        """Count distinct records per canonical edit status."""
        stats = {
            ImageStatus.PENDING_EDIT.value: 0,
            ImageStatus.EDITING.value: 0,
            ImageStatus.COMPLETED.value: 0,
            "other": 0,
        }
        for record in self.images.values():
            key = record.status.value
            if key in stats:
                stats[key] += 1
            else:
                stats["other"] += 1
        return stats

    def storage_stats(self) -> StorageStats:
        """Summary of products, images, sizes and statuses."""
        stats = StorageStats(total_products=len(self.products), total_images=len(self.images))
        for record in self.images.values():
            stats.by_status[record.status.value] = stats.by_status.get(record.status.value, 0) + 1
            stats.total_size += record.file_size
            if record.timestamp and (stats.last_update is None or record.timestamp > stats.last_update):
                stats.last_update = record.timestamp
        return stats
