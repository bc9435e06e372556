"""Mapping from remote image URLs to local relative paths."""

import logging
import uuid
from pathlib import PurePosixPath
from urllib.parse import unquote, urlparse

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.webp', '.gif', '.bmp', '.tif', '.tiff', '.psd')
DEFAULT_EXTENSION = '.jpg'

_UNSAFE_CHARS = '<>:"\\|?*'


def _sanitize(name: str) -> str:
    """Replace characters that are not valid in file names."""
    cleaned = ''.join('_' if ch in _UNSAFE_CHARS or ord(ch) < 32 else ch for ch in name)
    return cleaned.strip().strip('.')


def _guess_extension(url: str) -> str:
    try:
        suffix = PurePosixPath(urlparse(url).path).suffix.lower()
    except ValueError:
        return DEFAULT_EXTENSION
    return suffix if suffix in IMAGE_EXTENSIONS else DEFAULT_EXTENSION


def fallback_path(remote_url: str, product_code: str) -> str:
    """Generate a unique fallback path for URLs without a usable file name."""
    return f"{product_code}/fallback_{uuid.uuid4().hex[:12]}{_guess_extension(remote_url or '')}"


def resolve_path(remote_url: str, product_code: str) -> str:
    """Resolve the local relative path of a remote image.

    The trailing URL path segment becomes the file name, placed in the
    product's folder. Malformed URLs get a random fallback name so the
    caller is never blocked.

    Args:
        remote_url: Remote image URL
        product_code: Owning product apply code

    Returns:
        Relative path like ``P1/photo.jpg``
    """
    try:
        parsed = urlparse(remote_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("missing scheme or host")
        name = _sanitize(unquote(parsed.path).rsplit('/', 1)[-1])
    except (ValueError, TypeError, AttributeError) as e:
        logger.warning(f"Malformed image URL {remote_url!r}: {e}")
        return fallback_path(remote_url if isinstance(remote_url, str) else '', product_code)

    if not name:
        logger.warning(f"No file name in image URL {remote_url!r}")
        return fallback_path(remote_url, product_code)

    return f"{product_code}/{name}"


def local_import_path(filename: str, product_code: str) -> str:
    """Path for a file imported from disk into a product folder."""
    name = _sanitize(PurePosixPath(filename.replace('\\', '/')).name) or 'image'
    stem = PurePosixPath(name).stem or 'image'
    suffix = PurePosixPath(name).suffix or DEFAULT_EXTENSION
    return f"{product_code}/{stem}{suffix}"


def with_numeric_suffix(path: str, counter: int) -> str:
    """Insert a numeric suffix before the extension: ``P1/a.jpg`` -> ``P1/a_1.jpg``."""
    pure = PurePosixPath(path)
    return str(pure.with_name(f"{pure.stem}_{counter}{pure.suffix}"))


def normalize_filename(filename: str) -> str:
    """Base name in lower case, used to match document names to records."""
    if not filename:
        return ''
    return filename.replace('\\', '/').rsplit('/', 1)[-1].lower()
