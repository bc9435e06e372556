"""Conversion of remote product payloads into download items."""

import logging
from collections import Counter
from collections.abc import Iterator
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, Field

from .errors import PermanentItemError
from .models import DownloadItem, ImageKind, Slot

logger = logging.getLogger(__name__)


class ItemListReport(BaseModel):
    """Validation report for a list of download items."""

    is_valid: bool = Field(default=True)
    errors: list[str] = Field(default_factory=list)
    total: int = Field(default=0)
    by_kind: dict[str, int] = Field(default_factory=dict)
    shared_urls: list[str] = Field(default_factory=list, description="URLs used by several slots")


def unwrap_detail(payload: Any) -> dict:
    """Return the product detail from an API envelope or a bare detail dict."""
    if not isinstance(payload, dict):
        raise PermanentItemError("Invalid product payload")
    if "dataClass" in payload:
        payload = payload["dataClass"]
        if not isinstance(payload, dict):
            raise PermanentItemError("Invalid product payload: dataClass is not an object")
    return payload


def extract_image_url(item: Any) -> str | None:
    """Image URL of a remote image entry (scene images may use ``url``)."""
    if not isinstance(item, dict):
        return None
    url = item.get("imageUrl") or item.get("remoteUrl") or item.get("url")
    return url if isinstance(url, str) and url else None


def sku_index_of(sku: dict, position: int) -> int:
    value = sku.get("skuIndex")
    return value if isinstance(value, int) else position


def iter_detail_images(detail: dict) -> Iterator[tuple[Slot, dict, str]]:
    """Yield (slot, raw image entry, url) for every image in a product detail."""
    for i, item in enumerate(detail.get("originalImages") or []):
        url = extract_image_url(item)
        if url:
            yield Slot(kind=ImageKind.ORIGINAL, position=i), item, url

    for sku_pos, sku in enumerate(detail.get("publishSkus") or []):
        if not isinstance(sku, dict):
            continue
        sku_index = sku_index_of(sku, sku_pos)
        for i, item in enumerate(sku.get("skuImages") or []):
            url = extract_image_url(item)
            if url:
                yield Slot(kind=ImageKind.SKU, sku_index=sku_index, position=i), item, url

    for i, item in enumerate(detail.get("senceImages") or []):
        url = extract_image_url(item)
        if url:
            yield Slot(kind=ImageKind.SCENE, position=i), item, url


def process_product_data(payload: Any, apply_code: str | None = None) -> list[DownloadItem]:
    """Turn a product detail payload into download items.

    Args:
        payload: API envelope or bare product detail
        apply_code: Product code to use when the detail omits it

    Returns:
        One DownloadItem per image slot
    """
    detail = unwrap_detail(payload)
    code = detail.get("applyCode") or apply_code
    if not code:
        raise PermanentItemError("Product payload is missing applyCode")

    items = [
        DownloadItem(remote_url=url, apply_code=code, slot=slot)
        for slot, _, url in iter_detail_images(detail)
    ]
    logger.debug(f"Product {code}: {len(items)} images")
    return items


def validate_items(items: list[DownloadItem]) -> ItemListReport:
    """Check required fields and report URLs shared by several slots."""
    report = ItemListReport(total=len(items))
    kinds: Counter[str] = Counter()
    urls: Counter[tuple[str, str]] = Counter()

    for i, item in enumerate(items):
        if not item.remote_url:
            report.errors.append(f"Item {i}: missing remote_url")
        elif urlparse(item.remote_url).scheme not in ("http", "https"):
            report.errors.append(f"Item {i}: unsupported URL {item.remote_url}")
        if not item.apply_code:
            report.errors.append(f"Item {i}: missing apply_code")
        kinds[item.slot.kind.value] += 1
        urls[(item.apply_code, item.remote_url)] += 1

    report.is_valid = not report.errors
    report.by_kind = dict(kinds)
    report.shared_urls = sorted({url for (_, url), n in urls.items() if n > 1})
    return report


def process_multiple_products(payloads: list[Any]) -> list[DownloadItem]:
    """Process several product payloads and validate the combined list."""
    items: list[DownloadItem] = []
    for i, payload in enumerate(payloads, 1):
        try:
            items.extend(process_product_data(payload))
        except PermanentItemError as e:
            logger.error(f"Product {i} could not be processed: {e}")
            raise

    report = validate_items(items)
    if not report.is_valid:
        raise PermanentItemError(f"Invalid image list: {'; '.join(report.errors)}")
    return items
