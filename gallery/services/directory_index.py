"""Directory index rebuild: a periodically refreshed table of folders for fast listing.

A rebuild writes a fresh batch of rows with ``is_active=False`` and then, in
one transaction, activates it and deactivates the previous batch. Readers
filtering on ``is_active`` therefore see either the old index or the new
one, never a mix. Rows two generations old are deleted at the flip.
"""

import logging
import os
import time
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from sqlalchemy import delete, func, update

from gallery.config import Settings
from gallery.models.directory_index import DirectoryIndexEntry
from gallery.models.job import utcnow
from gallery.services.cache_paths import CachePathResolver
from gallery.services.paths import PathValidator
from gallery.services.store import JobStore

logger = logging.getLogger(__name__)

MIN_BUILD_SECONDS = 60
MAX_BUILD_SECONDS = 3600
_FRESH_RATIO = 0.8
_WRITE_CHUNK = 500


@dataclass
class IndexBuildResult:
    status: str  # completed | skipped | aborted
    batch_id: str | None = None
    sources_scanned: int = 0
    directories_found: int = 0
    thumbnails_found: int = 0
    protected_folders: int = 0
    duration_seconds: float = 0.0
    reason: str | None = None


class IndexBuildAborted(Exception):
    """Raised internally when a rebuild runs past its time budget."""


class DirectoryIndexBuilder:
    def __init__(
        self,
        store: JobStore,
        validator: PathValidator,
        resolver: CachePathResolver,
        settings: Settings,
        is_protected: Callable[[str], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._validator = validator
        self._resolver = resolver
        self._settings = settings
        self._is_protected = is_protected
        self._clock = clock

    def needs_rebuild(self, max_age_hours: int = 24) -> bool:
        """True when the index is empty or fewer than 80% of active rows are fresh."""
        cutoff = utcnow() - timedelta(hours=max_age_hours)
        with self._store.session() as db:
            total = (
                db.query(func.count(DirectoryIndexEntry.id))
                .filter(DirectoryIndexEntry.is_active.is_(True))
                .scalar()
            ) or 0
            fresh = (
                db.query(func.count(DirectoryIndexEntry.id))
                .filter(
                    DirectoryIndexEntry.is_active.is_(True),
                    DirectoryIndexEntry.updated_at > cutoff,
                )
                .scalar()
            ) or 0
        if total == 0:
            logger.info("directory index is empty, rebuild needed")
            return True
        ratio = fresh / total
        if ratio < _FRESH_RATIO:
            logger.info("directory index freshness %.0f%% below threshold, rebuild needed", ratio * 100)
            return True
        return False

    def active_entries(self, source_key: str | None = None) -> list[DirectoryIndexEntry]:
        with self._store.session() as db:
            query = db.query(DirectoryIndexEntry).filter(DirectoryIndexEntry.is_active.is_(True))
            if source_key is not None:
                query = query.filter(DirectoryIndexEntry.source_key == source_key)
            return list(query.order_by(DirectoryIndexEntry.directory_path).all())

    def rebuild(
        self, source_key: str | None = None, max_seconds: int = 300, force: bool = False
    ) -> IndexBuildResult:
        """Scan sources into a new batch and swap it in; abort cleanly past the time budget."""
        started = self._clock()
        max_seconds = max(MIN_BUILD_SECONDS, min(MAX_BUILD_SECONDS, max_seconds))
        if not force and not self.needs_rebuild():
            return IndexBuildResult(status="skipped", reason="Index is fresh")

        if source_key is not None:
            self._validator.base_dir(source_key)
            sources = [source_key]
        else:
            sources = self._validator.source_keys

        result = IndexBuildResult(status="completed", batch_id=uuid.uuid4().hex)
        deadline = started + max_seconds
        try:
            pending: list[DirectoryIndexEntry] = []
            for key in sources:
                for entry in self._scan_source(key, result, deadline):
                    pending.append(entry)
                    if len(pending) >= _WRITE_CHUNK:
                        self._write(pending)
                        pending = []
                result.sources_scanned += 1
            self._write(pending)
        except IndexBuildAborted as exc:
            self._discard(result.batch_id)
            result.status = "aborted"
            result.reason = str(exc)
            result.duration_seconds = self._clock() - started
            logger.warning("directory index rebuild aborted: %s", exc)
            return result

        self._activate(result.batch_id, source_key)
        result.duration_seconds = self._clock() - started
        logger.info(
            "directory index batch %s active: %d directories, %d with thumbnails, %d protected (%.1fs)",
            result.batch_id,
            result.directories_found,
            result.thumbnails_found,
            result.protected_folders,
            result.duration_seconds,
        )
        return result

    def _scan_source(
        self, source_key: str, result: IndexBuildResult, deadline: float
    ) -> Iterator[DirectoryIndexEntry]:
        assert result.batch_id is not None
        base = self._validator.base_dir(source_key).resolve()
        extensions = set(self._settings.thumbnailable_extensions)
        now = utcnow()
        for dirpath, dirnames, filenames in os.walk(base):
            if self._clock() > deadline:
                raise IndexBuildAborted(f"time budget exceeded while scanning {source_key}")
            dirnames.sort()
            relative = Path(dirpath).relative_to(base).as_posix()
            if relative == ".":
                continue
            folder_key = f"{source_key}/{relative}"
            media = sorted(
                name for name in filenames if Path(name).suffix.lower().lstrip(".") in extensions
            )
            first_image = f"{folder_key}/{media[0]}" if media else None
            has_thumbnail = first_image is not None and self._resolver.is_cached(
                self._resolver.resolve(first_image, self._settings.standard_size)
            )
            is_protected = bool(self._is_protected(folder_key)) if self._is_protected else False
            try:
                mtime = os.stat(dirpath).st_mtime
            except OSError as exc:
                logger.warning("skipping unreadable folder %s: %s", folder_key, exc)
                continue

            result.directories_found += 1
            result.thumbnails_found += int(has_thumbnail)
            result.protected_folders += int(is_protected)
            yield DirectoryIndexEntry(
                source_key=source_key,
                directory_path=relative,
                file_count=len(media),
                first_image_path=first_image,
                last_modified=datetime.fromtimestamp(mtime, tz=UTC).replace(tzinfo=None),
                is_protected=is_protected,
                has_thumbnail=has_thumbnail,
                is_active=False,
                batch_id=result.batch_id,
                updated_at=now,
            )

    def _write(self, entries: list[DirectoryIndexEntry]) -> None:
        if not entries:
            return
        with self._store.session() as db:
            db.add_all(entries)
            db.commit()

    def _discard(self, batch_id: str | None) -> None:
        with self._store.session() as db:
            db.execute(
                delete(DirectoryIndexEntry)
                .where(DirectoryIndexEntry.batch_id == batch_id)
                .execution_options(synchronize_session=False)
            )
            db.commit()

    def _activate(self, batch_id: str | None, source_key: str | None) -> None:
        """Swap the new batch in and drop batches older than the one it replaces."""
        scope = [DirectoryIndexEntry.source_key == source_key] if source_key is not None else []
        with self._store.session() as db:
            previous = [
                row[0]
                for row in db.query(DirectoryIndexEntry.batch_id)
                .filter(DirectoryIndexEntry.is_active.is_(True), *scope)
                .distinct()
                .all()
            ]
            db.execute(
                update(DirectoryIndexEntry)
                .where(DirectoryIndexEntry.is_active.is_(True), *scope)
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            db.execute(
                update(DirectoryIndexEntry)
                .where(DirectoryIndexEntry.batch_id == batch_id)
                .values(is_active=True)
                .execution_options(synchronize_session=False)
            )
            keep = [batch_id, *previous]
            db.execute(
                delete(DirectoryIndexEntry)
                .where(
                    DirectoryIndexEntry.is_active.is_(False),
                    DirectoryIndexEntry.batch_id.not_in(keep),
                    *scope,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()

