"""Cache and archive janitor, run out-of-band (cron or ``gallery cleanup``)."""

import contextlib
import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from gallery.config import Settings
from gallery.models.job import ACTIVE_STATUSES, utcnow
from gallery.services.cache_paths import CachePathResolver, Variant, content_hash
from gallery.services.paths import PathValidator
from gallery.services.store import JobStore
from gallery.services.types import CleanupSummary
from gallery.services.worker import zip_destination

logger = logging.getLogger(__name__)

# Untracked archive files younger than this are left alone.
_ORPHAN_GRACE_SECONDS = 600


class Janitor:
    def __init__(
        self,
        store: JobStore,
        resolver: CachePathResolver,
        validator: PathValidator,
        settings: Settings,
        raw_validator: PathValidator | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._validator = validator
        self._raw_validator = raw_validator or PathValidator(settings.raw_sources)
        self._settings = settings
        self._clock = clock

    def run(self) -> CleanupSummary:
        summary = CleanupSummary(
            expired_archives=self.expire_archives(),
            orphaned_archives=self.remove_orphaned_archives(),
            orphaned_thumbnails=self.remove_orphaned_thumbnails(),
        )
        logger.info(
            "cleanup: %d archives expired, %d orphaned archives, %d orphaned thumbnails removed",
            summary["expired_archives"],
            summary["orphaned_archives"],
            summary["orphaned_thumbnails"],
        )
        return summary

    def expire_archives(self) -> int:
        """Delete archives finished longer ago than the retention window."""
        cutoff = self._clock() - timedelta(minutes=self._settings.zip_retention_minutes)
        expired = 0
        for job in self._store.expired_archives(cutoff):
            filename = (job.result_artifact or {}).get("filename")
            if filename:
                with contextlib.suppress(FileNotFoundError):
                    (self._settings.zip_cache_root / filename).unlink()
            self._store.mark_artifact_expired(job.id)
            expired += 1
        return expired

    def remove_orphaned_archives(self) -> int:
        """Delete files in the zip root that no live job refers to."""
        root = self._settings.zip_cache_root
        if not root.is_dir():
            return 0
        known: set[str] = set()
        for job in self._store.live_zip_jobs():
            filename = (job.result_artifact or {}).get("filename")
            if filename:
                known.add(filename)
            if job.status in ACTIVE_STATUSES:
                name = zip_destination(job, root).name
                known.update((name, name + ".part"))

        removed = 0
        now = time.time()
        for path in root.iterdir():
            if not path.is_file() or path.name in known:
                continue
            if not (path.name.endswith(".zip") or path.name.endswith(".zip.part")):
                continue
            if now - path.stat().st_mtime < _ORPHAN_GRACE_SECONDS:
                continue
            path.unlink()
            removed += 1
            logger.info("removed orphaned archive %s", path.name)
        return removed

    def remove_orphaned_thumbnails(self) -> int:
        """Delete cache artifacts whose source file no longer exists."""
        removed = self._remove_orphans(
            self._validator, self._settings.thumbnailable_extensions, Variant.STANDARD
        )
        if self._settings.raw_sources:
            removed += self._remove_orphans(
                self._raw_validator, self._settings.raw_extensions, Variant.RAW
            )
        return removed

    def _remove_orphans(
        self, validator: PathValidator, extensions: tuple[str, ...], variant: Variant
    ) -> int:
        valid: set[str] = set()
        for source_key in validator.source_keys:
            base = validator.base_dir(source_key)
            if not base.is_dir():
                # An unmounted source would make every artifact look orphaned.
                logger.warning("source %s unavailable, skipping %s cache cleanup", source_key, variant)
                return 0
            root = validator.validate_folder(source_key, allow_root=True)
            valid.update(content_hash(item.content_key) for item in validator.iter_files(root, extensions))

        removed = 0
        for path in self._resolver.iter_artifacts(variant):
            if _artifact_hash(path) in valid:
                continue
            with contextlib.suppress(FileNotFoundError):
                path.unlink()
                removed += 1
        if removed:
            logger.info("removed %d orphaned %s artifacts", removed, variant)
        return removed


def _artifact_hash(path: Path) -> str:
    return path.name.split("_", 1)[0]
