"""Main entry point for the product image cache."""

import argparse
import asyncio
import logging
import sys
from datetime import timedelta
from pathlib import Path

from .config import SyncConfig, load_config
from .downloader import DownloadOrchestrator
from .errors import ImgSyncError
from .index_store import IndexStore
from .journal import ErrorType, RunResult, SyncKind
from .journal_manager import JournalManager
from .models import ImageRecord, ImageStatus, SyncReport, UploadContext, UploadResult
from .remote import RemoteClient
from .state import StateMachine
from .storage import LocalStorage
from .sync import AutoSyncPolicy, AutoSyncScheduler, SyncCoordinator
from .uploader import UploadOrchestrator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)
logger = logging.getLogger(__name__)


def open_store(config: SyncConfig) -> IndexStore:
    """Load the index and repair records whose files are gone."""
    store = IndexStore(LocalStorage(config.storage_dir), config.index_file)
    store.load()
    if store.validate_and_repair():
        store.save()
    return store


def _client(config: SyncConfig) -> RemoteClient:
    return RemoteClient(
        base_url=config.api_base_url,
        user_id=config.user_id,
        user_code=config.user_code,
        request_timeout=config.request_timeout,
        upload_timeout=config.upload_timeout,
    )


async def run_sync(config: SyncConfig, watch: bool = False) -> SyncReport | None:
    """Run one sync, or keep syncing on the auto-sync interval.

    Args:
        config: Loaded configuration
        watch: Keep running and sync whenever the interval has elapsed

    Returns:
        SyncReport of the single run, None in watch mode
    """
    store = open_store(config)
    journal = JournalManager(config.journal_file)

    async with _client(config) as client:
        downloader = DownloadOrchestrator(
            store,
            client,
            max_concurrency=config.max_concurrency,
            retry_count=config.retry_count,
            retry_delay=config.retry_delay,
            freshness_days=config.freshness_days,
        )
        coordinator = SyncCoordinator(store, client, downloader, journal)

        if not watch:
            return await coordinator.run(kind=SyncKind.MANUAL)

        scheduler = AutoSyncScheduler(
            AutoSyncPolicy(timedelta(hours=config.auto_sync_interval_hours)),
            lambda: coordinator.run(kind=SyncKind.AUTO),
            lambda: journal.last_sync_at,
        )
        await scheduler.run_forever()
    return None


def pending_uploads(store: IndexStore, apply_code: str) -> list[ImageRecord]:
    """Completed images of a product not uploaded since their last completion."""
    return [
        r
        for r in store.images_for_product(apply_code)
        if r.status == ImageStatus.COMPLETED
        and r.local_path
        and (r.uploaded_at is None or (r.completed_at and r.completed_at > r.uploaded_at))
    ]


async def run_upload(config: SyncConfig, apply_code: str, identities: list[str]) -> UploadResult:
    """Upload images of a product and record the run in the journal."""
    store = open_store(config)
    store.get_product(apply_code)
    journal = JournalManager(config.journal_file)

    if not identities:
        identities = [r.local_path for r in pending_uploads(store, apply_code)]

    run = journal.start_run(SyncKind.UPLOAD, [apply_code])
    context = UploadContext(apply_code=apply_code, user_id=config.user_id, user_code=config.user_code)

    async with _client(config) as client:
        uploader = UploadOrchestrator(
            store,
            client,
            max_concurrency=config.max_concurrency,
            retry_count=config.retry_count,
            retry_delay=config.retry_delay,
        )
        result = await uploader.upload(identities, context)

    for error in result.errors:
        journal.log_error(
            ErrorType.UPLOAD_FAILED,
            error.message,
            run_id=run.id,
            apply_code=apply_code,
            url=error.image_id,
            attempts=error.attempts,
            save=False,
        )
    journal.complete_run(run.id, RunResult(
        success=result.failed == 0,
        images_uploaded=result.success,
        images_failed=result.failed,
    ))
    return result


def show_status(config: SyncConfig) -> int:
    """Show index and journal status."""
    store = IndexStore(LocalStorage(config.storage_dir), config.index_file)
    store.load()
    stats = store.storage_stats()

    print("=== Image Index ===")
    print(f"Storage: {config.storage_dir}")
    print(f"Products: {stats.total_products}")
    print(f"Images: {stats.total_images} ({stats.total_size} bytes)")
    for status, count in sorted(stats.by_status.items()):
        print(f"  {status}: {count}")
    print(f"Last Update: {stats.last_update.isoformat() if stats.last_update else 'Never'}")
    print()
    print(JournalManager(config.journal_file).print_status())
    return 0


def show_errors(config: SyncConfig, limit: int = 10) -> int:
    """Show error log."""
    mgr = JournalManager(config.journal_file)
    errors = mgr.get_unresolved_errors()

    if not errors:
        print("No unresolved errors.")
        return 0

    print(f"=== Unresolved Errors ({len(errors)} total) ===\n")
    for error in errors[:limit]:
        print(f"[{error.id}] {error.timestamp.isoformat()}")
        print(f"  Type: {error.type.value}")
        if error.run_id:
            print(f"  Run: {error.run_id}")
        if error.apply_code:
            print(f"  Product: {error.apply_code}")
        if error.url:
            print(f"  URL: {error.url}")
        print(f"  Message: {error.message}")
        print()

    if len(errors) > limit:
        print(f"... and {len(errors) - limit} more errors")

    return 0


def repair(config: SyncConfig, retry_failed: bool = False) -> int:
    """Repair the index, migrate legacy statuses and optionally reset failures."""
    store = IndexStore(LocalStorage(config.storage_dir), config.index_file)
    store.load()

    repaired = store.validate_and_repair()
    if repaired:
        store.save()
    migration = StateMachine(store).migrate_legacy()
    reset = store.reset_failed_images() if retry_failed else 0

    print(f"Repaired records: {repaired}")
    print(f"Migrated statuses: {migration.migrated}/{migration.total}")
    if retry_failed:
        print(f"Failed downloads reset: {reset}")
    return 0


def set_status(config: SyncConfig, identity: str, status: str | None, toggle: bool) -> int:
    """Change the edit status of an image."""
    store = open_store(config)
    machine = StateMachine(store)
    if toggle:
        new_status = machine.toggle_completed(identity)
    elif status == ImageStatus.EDITING.value:
        new_status = machine.reset_to_editing(identity)
    else:
        machine.set_status(identity, status)
        new_status = ImageStatus(status)
    print(f"{identity}: {new_status.value}")
    return 0


def remove(config: SyncConfig, apply_code: str) -> int:
    """Remove a product and the files only it uses."""
    store = open_store(config)
    if not store.remove_product(apply_code):
        print(f"Product not found: {apply_code}")
        return 1
    JournalManager(config.journal_file).resolve_errors_for(apply_code)
    print(f"Removed {apply_code}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Product image cache - mirror, track and upload product images"
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Config file path (default: imgsync.yaml if present)"
    )
    parser.add_argument(
        "-s", "--storage",
        default=None,
        help="Storage directory for images and index"
    )
    parser.add_argument(
        "-j", "--journal",
        default=None,
        help="Sync journal file path"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Sync new products and download images")
    sync_parser.add_argument("--api", default=None, help="API base URL")
    sync_parser.add_argument(
        "-n", "--concurrency",
        type=int,
        default=None,
        help="Downloads per chunk (default: 3)"
    )
    sync_parser.add_argument(
        "--watch",
        action="store_true",
        help="Keep running and sync on the auto-sync interval"
    )

    # Status command
    subparsers.add_parser("status", help="Show index and journal status")

    # Errors command
    errors_parser = subparsers.add_parser("errors", help="Show error log")
    errors_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=10,
        help="Number of errors to show (default: 10)"
    )

    # Repair command
    repair_parser = subparsers.add_parser("repair", help="Repair the index")
    repair_parser.add_argument(
        "--retry-failed",
        action="store_true",
        help="Make failed downloads eligible again"
    )

    # Upload command
    upload_parser = subparsers.add_parser("upload", help="Upload completed images of a product")
    upload_parser.add_argument("apply_code", help="Product apply code")
    upload_parser.add_argument(
        "images",
        nargs="*",
        help="Image URLs or local paths (default: completed, not yet uploaded)"
    )
    upload_parser.add_argument("--api", default=None, help="API base URL")

    # Remove command
    remove_parser = subparsers.add_parser("remove", help="Remove a product and its files")
    remove_parser.add_argument("apply_code", help="Product apply code")

    # Set-status command
    status_parser = subparsers.add_parser("set-status", help="Change an image's edit status")
    status_parser.add_argument("image", help="Image URL or local path")
    status_parser.add_argument(
        "status",
        nargs="?",
        choices=[s.value for s in (ImageStatus.PENDING_EDIT, ImageStatus.EDITING, ImageStatus.COMPLETED)],
        help="Target status"
    )
    status_parser.add_argument(
        "--toggle",
        action="store_true",
        help="Toggle completed on or off"
    )

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = load_config(args.config).merged(
            storage_dir=args.storage,
            journal_file=args.journal,
            api_base_url=getattr(args, "api", None),
            max_concurrency=getattr(args, "concurrency", None),
        )

        if args.command == "status":
            return show_status(config)

        if args.command == "errors":
            return show_errors(config, args.limit)

        if args.command == "repair":
            return repair(config, args.retry_failed)

        if args.command == "remove":
            return remove(config, args.apply_code)

        if args.command == "set-status":
            if not args.toggle and not args.status:
                parser.error("set-status needs a status or --toggle")
            return set_status(config, args.image, args.status, args.toggle)

        if args.command == "upload":
            result = asyncio.run(run_upload(config, args.apply_code, args.images))
            print(f"Uploaded: {result.success}/{result.total}, failed: {result.failed}")
            return 0 if result.failed == 0 else 1

        if args.command == "sync":
            report = asyncio.run(run_sync(config, watch=args.watch))
            if report is not None:
                print(f"\n{'='*50}")
                print("Sync Complete!")
                print(f"{'='*50}")
                print(f"Remote Products: {report.products_seen}")
                print(f"New Products:    {report.products_new}")
                print(f"Downloaded:      {report.download.success}")
                print(f"Skipped:         {report.download.skipped}")
                print(f"Failed:          {report.download.failed}")
                print(f"Storage:         {Path(config.storage_dir)}")
                print(f"{'='*50}")
            return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 1
    except ImgSyncError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
