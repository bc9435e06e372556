"""Sync journal models: run history and item errors, stored as YAML."""

from datetime import datetime
from enum import Enum
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from .models import utcnow


class RunStatus(str, Enum):
    """Status of a sync run."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncKind(str, Enum):
    """What started a sync run."""

    MANUAL = "manual"
    AUTO = "auto"
    RETRY_FAILED = "retry_failed"
    UPLOAD = "upload"


class ErrorType(str, Enum):
    """Type of error recorded during a run."""

    LIST_FAILED = "list_failed"
    DETAIL_FAILED = "detail_failed"
    DOWNLOAD_FAILED = "download_failed"
    UPLOAD_FAILED = "upload_failed"


class RunResult(BaseModel):
    """Result of a finished run."""

    success: bool = Field(default=False)
    products_seen: int = Field(default=0)
    products_new: int = Field(default=0)
    images_downloaded: int = Field(default=0)
    images_failed: int = Field(default=0)
    images_skipped: int = Field(default=0)
    images_uploaded: int = Field(default=0)
    error_message: str | None = Field(default=None)


class SyncRun(BaseModel):
    """One sync or upload run."""

    id: str = Field(description="Run identifier")
    kind: SyncKind = Field(default=SyncKind.MANUAL)
    status: RunStatus = Field(default=RunStatus.IN_PROGRESS)
    apply_codes: list[str] = Field(default_factory=list, description="Products in the batch")
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = Field(default=None)
    duration_seconds: float | None = Field(default=None)
    result: RunResult | None = Field(default=None)


class ErrorEntry(BaseModel):
    """An item error."""

    id: str = Field(description="Error identifier")
    timestamp: datetime = Field(default_factory=utcnow)
    run_id: str | None = Field(default=None, description="Run where the error occurred")
    apply_code: str | None = Field(default=None)
    type: ErrorType = Field(description="Type of error")
    url: str | None = Field(default=None, description="Image URL or identity")
    message: str = Field(description="Error message")
    attempts: int = Field(default=0)
    resolved: bool = Field(default=False)


class RunStats(BaseModel):
    total: int = Field(default=0)
    completed: int = Field(default=0)
    failed: int = Field(default=0)


class ImageStats(BaseModel):
    downloaded: int = Field(default=0)
    failed: int = Field(default=0)
    skipped: int = Field(default=0)
    uploaded: int = Field(default=0)


class JournalStats(BaseModel):
    """Totals over every recorded run."""

    runs: RunStats = Field(default_factory=RunStats)
    images: ImageStats = Field(default_factory=ImageStats)
    last_manual_sync: datetime | None = Field(default=None)
    last_auto_sync: datetime | None = Field(default=None)


class SyncJournal(BaseModel):
    """Run history and error log of the image cache."""

    version: str = Field(default="1.0")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_sync_at: datetime | None = Field(default=None, description="Last successful sync")

    runs: list[SyncRun] = Field(default_factory=list)
    errors: list[ErrorEntry] = Field(default_factory=list)
    stats: JournalStats = Field(default_factory=JournalStats)

    def save(self, filepath: Path | str) -> None:
        """Save journal to YAML file."""
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        self.updated_at = utcnow()
        data = self.model_dump(mode="json")
        filepath.write_text(
            yaml.dump(data, allow_unicode=True, default_flow_style=False, sort_keys=False),
            encoding="utf-8",
        )

    @classmethod
    def load(cls, filepath: Path | str) -> "SyncJournal":
        """Load journal from YAML file."""
        filepath = Path(filepath)
        if not filepath.exists():
            return cls()
        data = yaml.safe_load(filepath.read_text(encoding="utf-8"))
        if data is None:
            return cls()
        return cls.model_validate(data)
