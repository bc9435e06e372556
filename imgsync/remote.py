"""HTTP client for image files and the publishing API."""

import logging
from typing import Any

import httpx

from .errors import PermanentItemError, RemoteApiError, TransientError
from .models import RemoteProductSummary

logger = logging.getLogger(__name__)

PRODUCT_LIST_PATH = "/api/publish/get_product_list"
PRODUCT_IMAGES_PATH = "/api/publish/get_product_images"
UPLOAD_PATH = "/api/publish/upload_product_image_new"

# Client errors that are still worth retrying
_RETRYABLE_STATUS = {408, 425, 429}


def classify_http_error(error: httpx.HTTPError) -> Exception:
    """Map an httpx error to TransientError or PermanentItemError."""
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if 400 <= status < 500 and status not in _RETRYABLE_STATUS:
            return PermanentItemError(f"HTTP {status} for {error.request.url}")
        return TransientError(f"HTTP {status} for {error.request.url}")
    if isinstance(error, (httpx.UnsupportedProtocol, httpx.InvalidURL)):
        return PermanentItemError(str(error))
    return TransientError(f"{type(error).__name__}: {error}")


def unwrap(payload: Any) -> Any:
    """Return ``dataClass`` of an API envelope, raising on a failure status."""
    if not isinstance(payload, dict):
        raise RemoteApiError(f"Unexpected API response: {payload!r}")
    status = payload.get("statusCode")
    if status != 200:
        raise RemoteApiError(payload.get("message") or f"API status {status}", status_code=status)
    return payload.get("dataClass")


class RemoteClient:
    """Async client for the publishing API and image hosts."""

    def __init__(
        self,
        base_url: str = "",
        user_id: int | str | None = None,
        user_code: str | None = None,
        request_timeout: float = 15.0,
        upload_timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize client.

        Args:
            base_url: API root, e.g. ``https://api.example.com``
            user_id: Account id sent with API calls
            user_code: Account code sent with API calls
            request_timeout: Timeout for API calls and image fetches
            upload_timeout: Timeout for multipart uploads
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.user_code = user_code
        self.request_timeout = request_timeout
        self.upload_timeout = upload_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "RemoteClient":
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            timeout=self.request_timeout,
            follow_redirects=True,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("Client not started. Use async context manager.")
        return self._client

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}{path}"

    def _account_params(self) -> dict[str, str]:
        params = {}
        if self.user_id is not None:
            params["userId"] = str(self.user_id)
        if self.user_code:
            params["userCode"] = self.user_code
        return params

    async def _get_json(self, path: str, params: dict[str, str]) -> Any:
        try:
            response = await self.client.get(self._url(path), params=params)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise classify_http_error(e) from e
        try:
            return response.json()
        except ValueError as e:
            raise RemoteApiError(f"Invalid JSON from {path}") from e

    async def fetch(self, url: str) -> bytes:
        """Download raw bytes of a URL.

        Raises:
            PermanentItemError: For 4xx answers and unusable URLs
            TransientError: For network errors and 5xx answers
        """
        try:
            response = await self.client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise classify_http_error(e) from e
        logger.debug(f"Fetched {url} ({len(response.content)} bytes)")
        return response.content

    async def post_multipart(
        self, url: str, data: bytes, fields: dict[str, str], filename: str
    ) -> Any:
        """Upload one file as multipart form data.

        Returns:
            Decoded JSON response
        """
        try:
            response = await self.client.post(
                self._url(url),
                data=fields,
                files={"File": (filename, data, "application/octet-stream")},
                timeout=self.upload_timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise classify_http_error(e) from e
        try:
            return response.json()
        except ValueError as e:
            raise RemoteApiError(f"Invalid JSON upload response for {filename}") from e

    async def get_product_list(self) -> list[RemoteProductSummary]:
        """Fetch the account's product list."""
        data = unwrap(await self._get_json(PRODUCT_LIST_PATH, self._account_params()))
        if isinstance(data, dict):
            data = data.get("publishProductInfos") or []
        if not isinstance(data, list):
            raise RemoteApiError("Product list response has no product array")

        products = []
        for entry in data:
            try:
                products.append(RemoteProductSummary.model_validate(entry))
            except ValueError as e:
                logger.warning(f"Skipping invalid product list entry: {e}")
        logger.info(f"Remote product list: {len(products)} products")
        return products

    async def get_product_images(self, apply_code: str) -> dict:
        """Fetch the image detail of one product."""
        params = {"applyCode": apply_code, **self._account_params()}
        data = unwrap(await self._get_json(PRODUCT_IMAGES_PATH, params))
        if not isinstance(data, dict):
            raise RemoteApiError(f"Product {apply_code} detail is not an object")
        data.setdefault("applyCode", apply_code)
        return data
