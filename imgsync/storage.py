"""Local file storage for cached images and the index document."""

import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileInfo:
    """Size and modification time of a stored file."""

    size: int
    modified_at: datetime


class LocalStorage:
    """Folder-rooted file storage addressed by relative POSIX paths."""

    def __init__(self, root: Path | str):
        """Initialize storage.

        Args:
            root: Storage root directory, created if missing
        """
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path(self, relative: str) -> Path:
        """Absolute path of a relative entry, refusing paths outside the root."""
        candidate = (self.root / relative).resolve()
        root = self.root.resolve()
        if candidate != root and root not in candidate.parents:
            raise ValueError(f"Path escapes storage root: {relative}")
        return candidate

    def ensure_folder(self, relative: str = "") -> Path:
        folder = self.path(relative) if relative else self.root
        folder.mkdir(parents=True, exist_ok=True)
        return folder

    def exists(self, relative: str) -> bool:
        if not relative:
            return False
        try:
            return self.path(relative).is_file()
        except ValueError:
            return False

    def read_bytes(self, relative: str) -> bytes:
        return self.path(relative).read_bytes()

    def read_text(self, relative: str) -> str:
        return self.path(relative).read_text(encoding='utf-8')

    def write_bytes(self, relative: str, data: bytes) -> int:
        """Write a file atomically (temp file then rename).

        Returns:
            Number of bytes written
        """
        target = self.path(relative)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, target)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        return len(data)

    def write_text(self, relative: str, text: str) -> int:
        return self.write_bytes(relative, text.encode('utf-8'))

    def delete(self, relative: str) -> bool:
        """Delete a file.

        Returns:
            True if a file was removed
        """
        try:
            target = self.path(relative)
        except ValueError:
            return False
        if not target.is_file():
            return False
        target.unlink()
        logger.debug(f"Deleted: {relative}")
        return True

    def stat(self, relative: str) -> FileInfo | None:
        try:
            st = self.path(relative).stat()
        except (FileNotFoundError, ValueError):
            return None
        return FileInfo(
            size=st.st_size,
            modified_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        )

    def list_folder(self, relative: str = "") -> list[str]:
        """List file entries of a folder as relative paths."""
        folder = self.path(relative) if relative else self.root
        if not folder.is_dir():
            return []
        root = self.root.resolve()
        return sorted(
            entry.resolve().relative_to(root).as_posix()
            for entry in folder.iterdir()
            if entry.is_file() and not entry.name.endswith('.tmp')
        )

    def remove_empty_folder(self, relative: str) -> bool:
        try:
            folder = self.path(relative)
        except ValueError:
            return False
        if folder.is_dir() and not any(folder.iterdir()):
            folder.rmdir()
            return True
        return False
