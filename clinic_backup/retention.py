"""Count-based retention for backup archives."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Iterable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_KEEP = 5
BACKUP_PATTERN = "backup-*.zip"


def prune_backups(
    backup_dir: Path,
    keep: int = DEFAULT_KEEP,
    pattern: str = BACKUP_PATTERN,
    on_deleted: Optional[Callable[[List[Path]], None]] = None,
    protect: Iterable[Path] = (),
) -> List[Path]:
    """Delete all but the ``keep`` most recently modified archives.

    A missing directory is not an error. Files that cannot be inspected or
    removed are logged and skipped; the pass continues with the rest.

    Args:
        backup_dir: directory holding the archives
        keep: number of newest archives to keep
        pattern: glob selecting backup archives
        on_deleted: called with the removed paths, e.g. to drop metadata rows
        protect: archives that are never removed, such as the one just written

    Returns:
        list[Path]: archives that were removed
    """
    backup_dir = Path(backup_dir)
    if not backup_dir.is_dir():
        logger.debug("Backup directory %s does not exist; skipping retention", backup_dir)
        return []

    candidates = []
    for path in backup_dir.glob(pattern):
        if not path.is_file():
            continue
        try:
            candidates.append((path.stat().st_mtime, path))
        except OSError as exc:
            logger.warning("Could not read metadata for %s: %s", path, exc)

    candidates.sort(key=lambda item: item[0], reverse=True)
    protected = {Path(p).resolve() for p in protect}
    removed: List[Path] = []
    for _, path in candidates[max(keep, 0):]:
        if path.resolve() in protected:
            continue
        try:
            path.unlink()
            removed.append(path)
            logger.info("Deleted old backup: %s", path.name)
        except OSError:
            logger.exception("Failed to remove old backup %s", path)

    if removed:
        logger.info("Cleaned up %d old backup files", len(removed))
        if on_deleted is not None:
            try:
                on_deleted(removed)
            except Exception:
                logger.exception("Retention callback failed for %d removed backups", len(removed))
    return removed
