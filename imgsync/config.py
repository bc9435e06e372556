"""Configuration for the image cache, loaded from an optional YAML file."""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "imgsync.yaml"


class SyncConfig(BaseModel):
    """Settings for storage, the remote API and batch behavior."""

    storage_dir: str = Field(default="data/images", description="Storage root for images and index")
    index_file: str = Field(default="index.json", description="Index path relative to storage_dir")
    journal_file: str = Field(default="sync_journal.yaml", description="Sync journal path")

    api_base_url: str = Field(default="", description="Publishing API root URL")
    user_id: int | str | None = Field(default=None)
    user_code: str | None = Field(default=None)

    max_concurrency: int = Field(default=3, ge=1, description="Transfers per chunk")
    retry_count: int = Field(default=3, ge=1, description="Attempts per transfer")
    retry_delay: float = Field(default=1.0, ge=0, description="Base retry backoff in seconds")
    freshness_days: int = Field(default=7, ge=0, description="Age under which files are not re-fetched")
    request_timeout: float = Field(default=15.0, gt=0)
    upload_timeout: float = Field(default=300.0, gt=0)
    auto_sync_interval_hours: float = Field(default=2.0, gt=0)

    def merged(self, **overrides: Any) -> "SyncConfig":
        """Copy with non-None overrides applied (e.g. CLI flags)."""
        values = {k: v for k, v in overrides.items() if v is not None}
        try:
            return self.model_validate({**self.model_dump(), **values})
        except ValidationError as e:
            raise ConfigError(f"Invalid setting: {e}") from e


def load_config(path: Path | str | None = None) -> SyncConfig:
    """Load configuration.

    Args:
        path: YAML file; when omitted, ``imgsync.yaml`` is used if present

    Returns:
        SyncConfig with file values over defaults

    Raises:
        ConfigError: If an explicit file is missing, unreadable or invalid
    """
    if path is None:
        path = Path(DEFAULT_CONFIG_FILE)
        if not path.exists():
            return SyncConfig()
    path = Path(path)

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping")

    try:
        config = SyncConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {path}: {e}") from e

    logger.debug(f"Loaded config from {path}")
    return config
