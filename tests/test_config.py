"""Tests for configuration loading."""

import pytest

from imgsync.config import SyncConfig, load_config
from imgsync.errors import ConfigError


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_config()
        assert config.max_concurrency == 3
        assert config.retry_count == 3
        assert config.freshness_days == 7
        assert config.request_timeout == 15.0
        assert config.upload_timeout == 300.0

    def test_default_file_is_used(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "imgsync.yaml").write_text("user_code: abc\n", encoding="utf-8")
        assert load_config().user_code == "abc"

    def test_values_from_file(self, tmp_path):
        path = tmp_path / "conf.yaml"
        path.write_text(
            "storage_dir: /data/cache\napi_base_url: https://api.example.com\nmax_concurrency: 5\n",
            encoding="utf-8",
        )
        config = load_config(path)
        assert config.storage_dir == "/data/cache"
        assert config.max_concurrency == 5

    def test_empty_file(self, tmp_path):
        path = tmp_path / "conf.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path) == SyncConfig()

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "conf.yaml"
        path.write_text("storage_dir: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_invalid_value(self, tmp_path):
        path = tmp_path / "conf.yaml"
        path.write_text("max_concurrency: 0\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "conf.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path)


class TestMerged:
    """Tests for CLI overrides."""

    def test_none_values_ignored(self):
        config = SyncConfig(storage_dir="a").merged(storage_dir=None, max_concurrency=6)
        assert config.storage_dir == "a"
        assert config.max_concurrency == 6

    def test_invalid_override(self):
        with pytest.raises(ConfigError):
            SyncConfig().merged(retry_count=0)
