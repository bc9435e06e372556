"""Tests for local file storage."""

import pytest

from imgsync.storage import LocalStorage


class TestLocalStorage:
    """Tests for LocalStorage."""

    def test_creates_root(self, tmp_path):
        storage = LocalStorage(tmp_path / "nested" / "root")
        assert storage.root.is_dir()

    def test_write_and_read(self, storage):
        assert storage.write_bytes("P1/a.jpg", b"abc") == 3
        assert storage.read_bytes("P1/a.jpg") == b"abc"
        assert storage.exists("P1/a.jpg")

    def test_write_leaves_no_temp_files(self, storage):
        storage.write_bytes("P1/a.jpg", b"abc")
        storage.write_bytes("P1/a.jpg", b"abcd")
        names = [p.name for p in (storage.root / "P1").iterdir()]
        assert names == ["a.jpg"]
        assert storage.read_bytes("P1/a.jpg") == b"abcd"

    def test_text_round_trip(self, storage):
        storage.write_text("index.json", "[]")
        assert storage.read_text("index.json") == "[]"

    def test_refuses_paths_outside_root(self, storage):
        with pytest.raises(ValueError):
            storage.path("../escape.jpg")
        assert not storage.exists("../escape.jpg")
        assert not storage.delete("../escape.jpg")

    def test_exists_false_for_empty_path(self, storage):
        assert not storage.exists("")

    def test_delete(self, storage):
        storage.write_bytes("P1/a.jpg", b"abc")
        assert storage.delete("P1/a.jpg")
        assert not storage.delete("P1/a.jpg")

    def test_stat(self, storage):
        assert storage.stat("P1/missing.jpg") is None
        storage.write_bytes("P1/a.jpg", b"12345")
        info = storage.stat("P1/a.jpg")
        assert info.size == 5
        assert info.modified_at.tzinfo is not None

    def test_list_folder(self, storage):
        storage.write_bytes("P1/b.jpg", b"b")
        storage.write_bytes("P1/a.jpg", b"a")
        assert storage.list_folder("P1") == ["P1/a.jpg", "P1/b.jpg"]
        assert storage.list_folder("missing") == []

    def test_remove_empty_folder(self, storage):
        storage.write_bytes("P1/a.jpg", b"a")
        assert not storage.remove_empty_folder("P1")
        storage.delete("P1/a.jpg")
        assert storage.remove_empty_folder("P1")
        assert not (storage.root / "P1").exists()
