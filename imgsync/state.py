"""Edit lifecycle of cached images."""

import logging

from .errors import InvalidTransitionError
from .index_store import IndexStore
from .models import FILELESS_STATUSES, ImageRecord, ImageStatus, MigrationResult, utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[ImageStatus, frozenset[ImageStatus]] = {
    ImageStatus.NOT_DOWNLOADED: frozenset({ImageStatus.PENDING_EDIT, ImageStatus.DOWNLOAD_FAILED}),
    ImageStatus.PENDING_EDIT: frozenset({ImageStatus.EDITING}),
    ImageStatus.EDITING: frozenset({ImageStatus.PENDING_EDIT, ImageStatus.COMPLETED}),
    ImageStatus.COMPLETED: frozenset({ImageStatus.EDITING}),
    # Leaving download_failed goes through IndexStore.reset_failed_images
    ImageStatus.DOWNLOAD_FAILED: frozenset(),
}

LEGACY_MAP: dict[ImageStatus, ImageStatus] = {
    ImageStatus.DOWNLOADED: ImageStatus.PENDING_EDIT,
    ImageStatus.LOCAL_ADDED: ImageStatus.PENDING_EDIT,
    ImageStatus.MODIFIED: ImageStatus.EDITING,
    ImageStatus.SYNCED: ImageStatus.EDITING,
}


def migrate_status(status: ImageStatus | str) -> ImageStatus:
    """Map a legacy status to its current equivalent."""
    status = ImageStatus(status)
    return LEGACY_MAP.get(status, status)


def can_transition(current: ImageStatus | str, requested: ImageStatus | str) -> bool:
    """Whether ``requested`` is reachable from ``current`` in one step.

    Legacy values are migrated first; a legacy value is never a valid target.
    Staying in the same status is always allowed.
    """
    requested = ImageStatus(requested)
    if requested in LEGACY_MAP:
        return False
    current = migrate_status(current)
    if current == requested:
        return True
    return requested in ALLOWED_TRANSITIONS[current]


def validate_transition(current: ImageStatus | str, requested: ImageStatus | str) -> None:
    """Raise InvalidTransitionError unless the transition is allowed."""
    if not can_transition(current, requested):
        raise InvalidTransitionError(ImageStatus(current).value, ImageStatus(requested).value)


class StateMachine:
    """Applies status changes to every record that shares a local file."""

    def __init__(self, store: IndexStore):
        self.store = store

    def _apply(self, records: list[ImageRecord], status: ImageStatus) -> None:
        now = utcnow()
        for record in records:
            record.status = status
            record.timestamp = now
            if status == ImageStatus.EDITING:
                record.editing_started_at = now
            elif status == ImageStatus.COMPLETED:
                record.completed_at = now

    def _walk(self, records: list[ImageRecord], current: ImageStatus, steps: list[ImageStatus]) -> None:
        for step in steps:
            validate_transition(current, step)
            self._apply(records, step)
            current = step

    def set_status(self, identity: str, requested: ImageStatus | str) -> list[ImageRecord]:
        """Move an image to a new status.

        Args:
            identity: Remote URL, local path or record id
            requested: Target status

        Returns:
            Every record updated (the image plus records sharing its file)

        Raises:
            ImageNotFoundError: If no record matches ``identity``
            InvalidTransitionError: If the transition is not allowed, or the
                target status needs a local file the image does not have
        """
        record = self.store.get_image(identity)
        requested = ImageStatus(requested)
        validate_transition(record.status, requested)
        if requested not in FILELESS_STATUSES and not (
            record.local_path and self.store.storage.exists(record.local_path)
        ):
            # Only the downloader may give a record its first file
            raise InvalidTransitionError(ImageStatus(record.status).value, requested.value)

        records = self.store.records_sharing(record)
        self._apply(records, requested)
        if requested != ImageStatus.COMPLETED:
            for r in records:
                r.previous_status = None
        self.store.save()

        logger.info(f"Status of {record.identity} -> {requested.value} ({len(records)} records)")
        return records

    def toggle_completed(self, identity: str) -> ImageStatus:
        """Toggle an image in and out of ``completed``.

        Marking completed remembers the status it came from; un-marking
        restores it. Both directions walk through legal single steps.

        Returns:
            The new status
        """
        record = self.store.get_image(identity)
        records = self.store.records_sharing(record)
        current = migrate_status(record.status)

        if current == ImageStatus.COMPLETED:
            restore = record.previous_status or ImageStatus.EDITING
            steps = [ImageStatus.EDITING]
            if restore == ImageStatus.PENDING_EDIT:
                steps.append(ImageStatus.PENDING_EDIT)
            self._walk(records, current, steps)
            for r in records:
                r.previous_status = None
        elif current in (ImageStatus.PENDING_EDIT, ImageStatus.EDITING):
            steps = [ImageStatus.COMPLETED]
            if current == ImageStatus.PENDING_EDIT:
                steps.insert(0, ImageStatus.EDITING)
            self._walk(records, current, steps)
            for r in records:
                r.previous_status = current
        else:
            raise InvalidTransitionError(current.value, ImageStatus.COMPLETED.value)

        self.store.save()
        logger.info(f"Toggled {record.identity}: {current.value} -> {record.status.value}")
        return record.status

    def reset_to_editing(self, identity: str) -> ImageStatus:
        """Send an image back to ``editing``, e.g. to rework a completed image."""
        record = self.store.get_image(identity)
        current = migrate_status(record.status)
        if current == ImageStatus.EDITING:
            return current
        self.set_status(identity, ImageStatus.EDITING)
        return ImageStatus.EDITING

    def check_file_modification(self, identity: str) -> bool:
        """Detect an edit made to the local file outside the index.

        Returns:
            True if the file changed after the record was last written
        """
        record = self.store.get_image(identity)
        if not record.local_path:
            logger.debug(f"No local file for {record.identity}")
            return False

        info = self.store.storage.stat(record.local_path)
        if info is None:
            logger.warning(f"Local file missing: {record.local_path}")
            return False
        if record.timestamp and info.modified_at <= record.timestamp:
            return False

        records = self.store.records_sharing(record)
        for r in records:
            r.file_size = info.size
        if migrate_status(record.status) == ImageStatus.PENDING_EDIT:
            self._apply(records, ImageStatus.EDITING)
        else:
            for r in records:
                r.timestamp = info.modified_at
        self.store.save()

        logger.info(f"Detected modification of {record.local_path}")
        return True

    def migrate_legacy(self, apply_code: str | None = None) -> MigrationResult:
        """Rewrite legacy statuses of one or all products to current ones."""
        if apply_code:
            records = self.store.images_for_product(apply_code)
        else:
            records = list(self.store.images.values())

        result = MigrationResult(total=len(records))
        for record in records:
            if record.status in LEGACY_MAP:
                old = record.status
                record.status = LEGACY_MAP[old]
                record.touch()
                result.migrated += 1
                logger.debug(f"Migrated {record.identity}: {old.value} -> {record.status.value}")

        if result.migrated:
            self.store.save()
            logger.info(f"Migrated {result.migrated}/{result.total} legacy statuses")
        return result
