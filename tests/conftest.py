"""Shared fixtures: storage under tmp_path and in-memory network fakes."""

import asyncio

import pytest

from imgsync.errors import RemoteApiError, TransientError
from imgsync.index_store import IndexStore
from imgsync.storage import LocalStorage


class FakeFetcher:
    """Fetch transport serving generated bytes, with optional delay and failures."""

    def __init__(self, delay: float = 0.0, failing: set[str] | None = None):
        self.delay = delay
        self.failing = failing or set()
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def fetch(self, url: str) -> bytes:
        self.calls.append(url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if url in self.failing:
                raise TransientError(f"connection reset: {url}")
            return f"image-bytes:{url}".encode()
        finally:
            self.active -= 1


class FakeUploadServer:
    """Upload transport answering with the publishing API envelope."""

    def __init__(self, failing: set[str] | None = None, envelope_status: int = 200, delay: float = 0.0):
        self.failing = failing or set()
        self.envelope_status = envelope_status
        self.delay = delay
        self.calls: list[tuple[str, str, dict]] = []
        self.active = 0
        self.max_active = 0

    async def post_multipart(self, url: str, data: bytes, fields: dict, filename: str) -> dict:
        self.calls.append((url, filename, fields))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if filename in self.failing:
                raise TransientError(f"upload timeout: {filename}")
            if self.envelope_status != 200:
                return {"statusCode": self.envelope_status, "message": "server busy"}
            return {"statusCode": 200, "dataClass": f"https://cdn.example.com/uploaded/{filename}"}
        finally:
            self.active -= 1


class FakeProductSource:
    """Product list and detail source backed by dicts."""

    def __init__(self, details: dict[str, dict], failing: set[str] | None = None):
        self.details = details
        self.failing = failing or set()
        self.detail_calls: list[str] = []

    async def get_product_list(self) -> list[dict]:
        return [{"applyCode": code, "name": f"Product {code}"} for code in self.details]

    async def get_product_images(self, apply_code: str) -> dict:
        self.detail_calls.append(apply_code)
        if apply_code in self.failing:
            raise RemoteApiError(f"detail unavailable: {apply_code}", status_code=500)
        return dict(self.details[apply_code])


def make_detail(code: str, originals=(), skus=(), scenes=()) -> dict:
    """Remote product detail with the given image URLs."""
    return {
        "applyCode": code,
        "originalImages": [{"imageUrl": url} for url in originals],
        "publishSkus": [
            {"skuIndex": i, "attrClasses": [], "skuImages": [{"imageUrl": url} for url in urls]}
            for i, urls in enumerate(skus)
        ],
        "senceImages": [{"imageUrl": url} for url in scenes],
    }


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(tmp_path / "images")


@pytest.fixture
def store(storage):
    store = IndexStore(storage)
    store.load()
    return store


@pytest.fixture
def detail_factory():
    return make_detail


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def fetcher_factory():
    return FakeFetcher


@pytest.fixture
def upload_server_factory():
    return FakeUploadServer


@pytest.fixture
def source_factory():
    return FakeProductSource
