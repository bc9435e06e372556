"""Exception hierarchy for the image cache."""


class ImgSyncError(Exception):
    """Base exception for all image cache errors."""


class TransientError(ImgSyncError):
    """Raised for network or file errors that may succeed on retry."""


class PermanentItemError(ImgSyncError):
    """Raised when an item can never succeed (bad URL, missing file, bad response)."""


class DownloadFailedError(ImgSyncError):
    """Raised when a download exhausted its retries."""

    def __init__(self, url: str, attempts: int, last_error: Exception | None = None):
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Download of {url} failed after {attempts} attempts: {last_error}"
        )


class UploadFailedError(ImgSyncError):
    """Raised when an upload exhausted its retries."""

    def __init__(self, image_id: str, attempts: int, last_error: Exception | None = None):
        self.image_id = image_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Upload of {image_id} failed after {attempts} attempts: {last_error}"
        )


class RemoteApiError(ImgSyncError):
    """Raised when the publishing API answers with a non-success envelope."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class InvalidTransitionError(ImgSyncError):
    """Raised when a requested status is not reachable from the current one."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move image from '{current}' to '{requested}'")


class ImageNotFoundError(ImgSyncError):
    """Raised when no image record matches an identity."""


class ProductNotFoundError(ImgSyncError):
    """Raised when no product matches an apply code."""


class ProductBusyError(ImgSyncError):
    """Raised when a batch is already running against a product."""


class IndexPersistenceError(ImgSyncError):
    """Raised when the index document cannot be written."""


class ConfigError(ImgSyncError):
    """Raised for unreadable or invalid configuration files."""
