"""Journal manager recording sync runs and item errors."""

import logging
import uuid
from datetime import datetime
from pathlib import Path

from .journal import (
    ErrorEntry,
    ErrorType,
    RunResult,
    RunStatus,
    SyncJournal,
    SyncKind,
    SyncRun,
)
from .models import utcnow

logger = logging.getLogger(__name__)

MAX_RUNS = 200


class JournalManager:
    """Manager for the sync journal."""

    def __init__(self, journal_path: Path | str = "sync_journal.yaml"):
        self.journal_path = Path(journal_path)
        self.journal = SyncJournal.load(self.journal_path)

    def save(self) -> None:
        """Save current journal state."""
        self.journal.save(self.journal_path)

    def reload(self) -> None:
        """Reload journal from file."""
        self.journal = SyncJournal.load(self.journal_path)

    @property
    def last_sync_at(self) -> datetime | None:
        return self.journal.last_sync_at

    # =========================================================================
    # Run Management
    # =========================================================================

    def start_run(self, kind: SyncKind = SyncKind.MANUAL, apply_codes: list[str] | None = None) -> SyncRun:
        """Record the start of a run."""
        run = SyncRun(
            id=f"RUN-{uuid.uuid4().hex[:8].upper()}",
            kind=kind,
            status=RunStatus.IN_PROGRESS,
            apply_codes=apply_codes or [],
            started_at=utcnow(),
        )
        self.journal.runs.append(run)
        if len(self.journal.runs) > MAX_RUNS:
            self.journal.runs = self.journal.runs[-MAX_RUNS:]
        self.journal.stats.runs.total += 1
        self.save()
        return run

    def complete_run(self, run_id: str, result: RunResult) -> SyncRun | None:
        """Finish a run with its results."""
        run = self._find_run(run_id)
        if not run:
            logger.warning(f"Unknown run: {run_id}")
            return None

        now = utcnow()
        run.status = RunStatus.COMPLETED if result.success else RunStatus.FAILED
        run.completed_at = now
        run.duration_seconds = round((now - run.started_at).total_seconds(), 3)
        run.result = result

        stats = self.journal.stats
        stats.images.downloaded += result.images_downloaded
        stats.images.failed += result.images_failed
        stats.images.skipped += result.images_skipped
        stats.images.uploaded += result.images_uploaded

        if result.success:
            stats.runs.completed += 1
            if run.kind != SyncKind.UPLOAD:
                self.journal.last_sync_at = now
            if run.kind == SyncKind.AUTO:
                stats.last_auto_sync = now
            elif run.kind == SyncKind.MANUAL:
                stats.last_manual_sync = now
        else:
            stats.runs.failed += 1

        self.save()
        return run

    def _find_run(self, run_id: str) -> SyncRun | None:
        for run in self.journal.runs:
            if run.id == run_id:
                return run
        return None

    def get_recent_runs(self, limit: int = 10) -> list[SyncRun]:
        """Most recent runs, newest first."""
        return list(reversed(self.journal.runs[-limit:]))

    # =========================================================================
    # Error Tracking
    # =========================================================================

    def log_error(
        self,
        error_type: ErrorType,
        message: str,
        run_id: str | None = None,
        apply_code: str | None = None,
        url: str | None = None,
        attempts: int = 0,
        save: bool = True,
    ) -> ErrorEntry:
        """Log an error."""
        error = ErrorEntry(
            id=f"ERR-{len(self.journal.errors) + 1:04d}",
            timestamp=utcnow(),
            run_id=run_id,
            apply_code=apply_code,
            type=error_type,
            url=url,
            message=message,
            attempts=attempts,
        )
        self.journal.errors.append(error)
        if save:
            self.save()
        return error

    def get_unresolved_errors(self, apply_code: str | None = None) -> list[ErrorEntry]:
        """Get all unresolved errors, optionally for one product."""
        return [
            e
            for e in self.journal.errors
            if not e.resolved and (apply_code is None or e.apply_code == apply_code)
        ]

    def resolve_error(self, error_id: str) -> bool:
        """Mark an error as resolved."""
        for error in self.journal.errors:
            if error.id == error_id:
                error.resolved = True
                self.save()
                return True
        return False

    def resolve_errors_for(self, apply_code: str) -> int:
        """Resolve every open error of a product."""
        errors = self.get_unresolved_errors(apply_code)
        for error in errors:
            error.resolved = True
        if errors:
            self.save()
        return len(errors)

    # =========================================================================
    # Summary & Reporting
    # =========================================================================

    def get_summary(self) -> dict:
        """Get a summary of the journal state."""
        stats = self.journal.stats
        last_run = self.journal.runs[-1] if self.journal.runs else None
        return {
            "updated_at": self.journal.updated_at.isoformat(),
            "last_sync_at": (
                self.journal.last_sync_at.isoformat() if self.journal.last_sync_at else None
            ),
            "last_run": {
                "id": last_run.id if last_run else None,
                "kind": last_run.kind.value if last_run else None,
                "status": last_run.status.value if last_run else None,
            },
            "stats": {
                "runs_total": stats.runs.total,
                "runs_completed": stats.runs.completed,
                "runs_failed": stats.runs.failed,
                "images_downloaded": stats.images.downloaded,
                "images_failed": stats.images.failed,
                "images_skipped": stats.images.skipped,
                "images_uploaded": stats.images.uploaded,
                "errors_count": len(self.journal.errors),
                "unresolved_errors": len(self.get_unresolved_errors()),
            },
        }

    def print_status(self) -> str:
        """Get a formatted status string."""
        summary = self.get_summary()
        stats = summary["stats"]
        lines = [
            "=== Sync Journal ===",
            f"Updated: {summary['updated_at']}",
            f"Last Sync: {summary['last_sync_at'] or 'Never'}",
            "",
            "Last Run:",
            f"  ID: {summary['last_run']['id'] or 'None'}",
            f"  Kind: {summary['last_run']['kind'] or '-'}",
            f"  Status: {summary['last_run']['status'] or '-'}",
            "",
            "Statistics:",
            f"  Runs: {stats['runs_completed']}/{stats['runs_total']} completed",
            f"  Downloaded: {stats['images_downloaded']}",
            f"  Skipped: {stats['images_skipped']}",
            f"  Failed: {stats['images_failed']}",
            f"  Uploaded: {stats['images_uploaded']}",
            f"  Errors: {stats['unresolved_errors']} unresolved",
        ]
        return "\n".join(lines)
