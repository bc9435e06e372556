"""Tests for the sync journal."""

import pytest

from imgsync.journal import ErrorType, RunResult, RunStatus, SyncJournal, SyncKind
from imgsync.journal_manager import JournalManager


@pytest.fixture
def manager(tmp_path):
    return JournalManager(tmp_path / "sync_journal.yaml")


class TestSyncJournal:
    """Tests for SyncJournal persistence."""

    def test_load_missing(self, tmp_path):
        journal = SyncJournal.load(tmp_path / "missing.yaml")
        assert journal.runs == []
        assert journal.last_sync_at is None

    def test_load_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert SyncJournal.load(path).errors == []

    def test_save_and_load(self, manager):
        run = manager.start_run(SyncKind.MANUAL, ["P1"])
        manager.log_error(ErrorType.DOWNLOAD_FAILED, "timeout", run_id=run.id, apply_code="P1", url="https://x/a.jpg")

        reloaded = SyncJournal.load(manager.journal_path)
        assert reloaded.runs[0].apply_codes == ["P1"]
        assert reloaded.errors[0].type == ErrorType.DOWNLOAD_FAILED
        assert "download_failed" in manager.journal_path.read_text(encoding="utf-8")


class TestJournalManager:
    """Tests for JournalManager."""

    def test_complete_run_success(self, manager):
        run = manager.start_run(SyncKind.AUTO)
        manager.complete_run(run.id, RunResult(success=True, images_downloaded=4, images_skipped=2))

        assert run.status == RunStatus.COMPLETED
        assert run.duration_seconds is not None
        assert manager.last_sync_at == run.completed_at
        stats = manager.journal.stats
        assert stats.runs.completed == 1
        assert stats.images.downloaded == 4
        assert stats.last_auto_sync is not None

    def test_failed_run_keeps_last_sync(self, manager):
        run = manager.start_run()
        manager.complete_run(run.id, RunResult(success=False, error_message="boom"))
        assert run.status == RunStatus.FAILED
        assert manager.last_sync_at is None
        assert manager.journal.stats.runs.failed == 1

    def test_upload_run_does_not_count_as_sync(self, manager):
        run = manager.start_run(SyncKind.UPLOAD, ["P1"])
        manager.complete_run(run.id, RunResult(success=True, images_uploaded=1))
        assert manager.last_sync_at is None
        assert manager.journal.stats.images.uploaded == 1

    def test_unknown_run(self, manager):
        assert manager.complete_run("RUN-NOPE", RunResult(success=True)) is None

    def test_errors(self, manager):
        first = manager.log_error(ErrorType.DETAIL_FAILED, "500", apply_code="P1")
        manager.log_error(ErrorType.DOWNLOAD_FAILED, "404", apply_code="P2")

        assert first.id == "ERR-0001"
        assert len(manager.get_unresolved_errors()) == 2
        assert manager.resolve_error(first.id)
        assert not manager.resolve_error("ERR-9999")
        assert [e.apply_code for e in manager.get_unresolved_errors()] == ["P2"]
        assert manager.resolve_errors_for("P2") == 1
        assert manager.get_unresolved_errors() == []

    def test_recent_runs(self, manager):
        runs = [manager.start_run() for _ in range(3)]
        assert [r.id for r in manager.get_recent_runs(2)] == [runs[2].id, runs[1].id]

    def test_summary_and_status(self, manager):
        run = manager.start_run()
        manager.complete_run(run.id, RunResult(success=True, images_downloaded=3))

        summary = manager.get_summary()
        assert summary["last_run"]["status"] == "completed"
        assert summary["stats"]["images_downloaded"] == 3

        status = manager.print_status()
        assert "=== Sync Journal ===" in status
        assert "Downloaded: 3" in status
