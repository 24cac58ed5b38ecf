"""Worker Execution Loop: claim pending jobs, run the transform, record the outcome.

Workers poll the store; there is no push. Each cycle claims at most one job
per handled kind. A failing job is marked failed and the loop moves on, so a
single bad file never takes the worker down.
"""

import contextlib
import logging
import os
import signal
import socket
import threading
import time
from collections.abc import Sequence
from pathlib import Path
from types import FrameType

from gallery.config import Settings
from gallery.models.job import AnyJob, JobKind, JobScope, JobStatus, ZipJob
from gallery.services.archive import (
    ArchiveCancelled,
    ArchiveError,
    archive_filename,
    build_archive,
    folder_arcname,
    unique_arcnames,
)
from gallery.services.cache_paths import CachePathResolver, Variant
from gallery.services.imaging import (
    TransformError,
    image_dimensions,
    raw_to_jpeg,
    resize_to_jpeg,
    video_thumbnail,
)
from gallery.services.paths import PathValidationError, PathValidator, ResolvedPath
from gallery.services.store import JobStore
from gallery.services.types import FolderCacheSummary, ImageResult

logger = logging.getLogger(__name__)

# Minimum seconds between progress writes during folder caching.
_FOLDER_PROGRESS_INTERVAL = 5.0


def default_worker_id() -> str:
    return f"{socket.gethostname()}_{os.getpid()}"


def render_artifact(
    item: ResolvedPath, dest: Path, size: int, variant: Variant, settings: Settings
) -> ImageResult:
    """Produce the cache artifact for one source file with the matching backend."""
    if variant == Variant.RAW:
        return raw_to_jpeg(item.absolute_path, dest, size, settings.dcraw_path, settings.jpeg_quality)
    if item.extension in settings.video_extensions:
        return video_thumbnail(item.absolute_path, dest, size, settings.ffmpeg_path, settings.jpeg_quality)
    return resize_to_jpeg(item.absolute_path, dest, size, settings.jpeg_quality)


def zip_destination(job: ZipJob, zip_root: Path) -> Path:
    """Where the archive for *job* is written: ``<safe name>_<token>.zip``."""
    name_base = job.filename_hint or (job.target if not job.items else "selection")
    return zip_root / archive_filename(name_base, job.opaque_token)


class Worker:
    def __init__(
        self,
        store: JobStore,
        resolver: CachePathResolver,
        validator: PathValidator,
        settings: Settings,
        kinds: Sequence[JobKind] | None = None,
        worker_id: str | None = None,
        raw_validator: PathValidator | None = None,
        progress_interval: float = _FOLDER_PROGRESS_INTERVAL,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._validator = validator
        self._raw_validator = raw_validator or PathValidator(settings.raw_sources)
        self._settings = settings
        self._kinds = list(kinds or JobKind)
        self.worker_id = worker_id or default_worker_id()
        self._progress_interval = progress_interval
        self._stop = threading.Event()

    # ── Loop control ─────────────────────────────────────────────────────────

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    def install_signal_handlers(self) -> None:
        """Turn SIGTERM/SIGINT into a graceful stop (main thread only)."""
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

    def _handle_signal(self, signo: int, _frame: FrameType | None) -> None:
        logger.info("worker %s received signal %d, shutting down", self.worker_id, signo)
        self.stop()

    def run_forever(self) -> None:
        logger.info(
            "worker %s started (kinds=%s, poll=%.1fs)",
            self.worker_id,
            ",".join(self._kinds),
            self._settings.worker_poll_interval,
        )
        while not self._stop.is_set():
            try:
                worked = self.run_once()
            except Exception:
                logger.exception("worker %s: cycle failed", self.worker_id)
                worked = False
            if not worked:
                self._stop.wait(self._settings.worker_poll_interval)
        logger.info("worker %s stopped", self.worker_id)

    def run_once(self) -> bool:
        """Claim and process at most one job per handled kind. Returns True if any job ran."""
        did_work = False
        for kind in self._kinds:
            if self._stop.is_set():
                break
            job = self._store.claim_next(kind, self.worker_id)
            if job is None:
                continue
            did_work = True
            self.process(job)
        return did_work

    def process(self, job: AnyJob) -> None:
        """Run a claimed job to a terminal status; unexpected errors fail the job."""
        started = time.monotonic()
        try:
            if isinstance(job, ZipJob):
                self._process_zip(job)
            elif getattr(job, "scope", JobScope.FILE) == JobScope.FOLDER:
                self._process_folder(job)
            else:
                self._process_file(job)
        except Exception as exc:
            logger.exception("%s job %d crashed", job.kind, job.id)
            self._store.finish(job.kind, job.id, JobStatus.FAILED, f"Unexpected error: {exc}")
        logger.debug("%s job %d took %.2fs", job.kind, job.id, time.monotonic() - started)

    # ── Thumbnail / RAW preview ──────────────────────────────────────────────

    def _kind_config(self, kind: JobKind) -> tuple[PathValidator, tuple[str, ...], Variant]:
        if kind == JobKind.RAW_PREVIEW:
            return self._raw_validator, self._settings.raw_extensions, Variant.RAW
        return self._validator, self._settings.thumbnailable_extensions, Variant.STANDARD

    def _cached_dimensions(self, dest: Path) -> ImageResult | None:
        if not self._resolver.is_cached(dest):
            return None
        try:
            return image_dimensions(dest)
        except TransformError:
            logger.warning("unreadable cache file %s, regenerating", dest)
            return None

    def _process_file(self, job: AnyJob) -> None:
        validator, extensions, variant = self._kind_config(job.kind)
        assert job.size_tier is not None
        try:
            item = validator.validate_file(job.target, extensions)
        except PathValidationError as exc:
            self._store.finish(job.kind, job.id, JobStatus.FAILED, str(exc))
            return

        dest = self._resolver.resolve(item.content_key, job.size_tier, variant)
        cached = self._cached_dimensions(dest)
        if cached is not None:
            self._store.finish(job.kind, job.id, JobStatus.COMPLETED, "Already cached", dict(cached))
            return

        try:
            result = render_artifact(item, dest, job.size_tier, variant, self._settings)
        except (TransformError, OSError) as exc:
            logger.warning("%s job %d failed for %s: %s", job.kind, job.id, item.content_key, exc)
            self._store.finish(job.kind, job.id, JobStatus.FAILED, str(exc))
            return
        self._store.finish(job.kind, job.id, JobStatus.COMPLETED, "Created", dict(result))

    def _process_folder(self, job: AnyJob) -> None:
        """Bulk-cache every file in a folder, skipping artifacts that already exist."""
        validator, extensions, variant = self._kind_config(job.kind)
        assert job.size_tier is not None
        try:
            folder = validator.validate_folder(job.target)
        except PathValidationError as exc:
            self._store.finish(job.kind, job.id, JobStatus.FAILED, str(exc))
            return

        files = list(validator.iter_files(folder, extensions))
        if not files:
            self._store.finish(job.kind, job.id, JobStatus.FAILED, "No processable files")
            return
        if len(files) != job.total_units:
            self._store.set_total_units(job.kind, job.id, len(files))

        summary = FolderCacheSummary(processed=0, created=0, skipped=0, errors=0)
        last_progress = 0.0
        interrupted = False
        for index, item in enumerate(files, start=1):
            if self._stop.is_set():
                interrupted = True
                break
            dest = self._resolver.resolve(item.content_key, job.size_tier, variant)
            if self._resolver.is_cached(dest):
                summary["skipped"] += 1
            else:
                try:
                    render_artifact(item, dest, job.size_tier, variant, self._settings)
                    summary["created"] += 1
                except (TransformError, OSError) as exc:
                    summary["errors"] += 1
                    logger.warning("%s job %d: %s failed: %s", job.kind, job.id, item.content_key, exc)
            summary["processed"] = index

            now = time.monotonic()
            if now - last_progress >= self._progress_interval or index == len(files):
                last_progress = now
                if not self._store.update_progress(job.kind, job.id, index, item.relative_path):
                    logger.info("%s job %d cancelled at %d/%d", job.kind, job.id, index, len(files))
                    return

        message = (
            f"Processed {summary['processed']}/{len(files)}: {summary['created']} created, "
            f"{summary['skipped']} skipped, {summary['errors']} errors."
        )
        if interrupted:
            self._store.finish(
                job.kind, job.id, JobStatus.FAILED, message + " Stopped by worker shutdown.", dict(summary)
            )
        elif summary["errors"]:
            self._store.finish(job.kind, job.id, JobStatus.FAILED, message, dict(summary))
        else:
            self._store.finish(job.kind, job.id, JobStatus.COMPLETED, message, dict(summary))

    # ── Zip ──────────────────────────────────────────────────────────────────

    def _zip_members(self, job: ZipJob) -> list[tuple[Path, str]]:
        if job.items:
            # Existence is checked when each member is written, so a file that
            # vanished after enqueue fails the job at that member.
            resolved = [self._validator.resolve(key) for key in job.items]
            names = unique_arcnames([item.absolute_path for item in resolved])
            return [(item.absolute_path, name) for item, name in zip(resolved, names, strict=True)]

        folder = self._validator.validate_folder(job.target)
        base_name = Path(folder.relative_path).name or folder.source_key
        return [
            (
                item.absolute_path,
                folder_arcname(base_name, item.absolute_path.relative_to(folder.absolute_path).as_posix()),
            )
            for item in self._validator.iter_files(folder)
        ]

    def _process_zip(self, job: ZipJob) -> None:
        try:
            members = self._zip_members(job)
        except PathValidationError as exc:
            self._store.finish(JobKind.ZIP, job.id, JobStatus.FAILED, str(exc))
            return
        if not members:
            self._store.finish(JobKind.ZIP, job.id, JobStatus.FAILED, "No files to archive")
            return
        if len(members) != job.total_units:
            self._store.set_total_units(JobKind.ZIP, job.id, len(members))

        dest = zip_destination(job, self._settings.zip_cache_root)

        def on_member(done: int, arcname: str) -> bool:
            return self._store.update_progress(JobKind.ZIP, job.id, done, arcname)

        try:
            result = build_archive(dest, members, on_member)
        except ArchiveCancelled:
            logger.info("zip job %d cancelled, partial archive removed", job.id)
            return
        except (ArchiveError, OSError) as exc:
            logger.warning("zip job %d failed: %s", job.id, exc)
            self._store.finish(JobKind.ZIP, job.id, JobStatus.FAILED, str(exc))
            return

        if not self._store.finish(
            JobKind.ZIP, job.id, JobStatus.COMPLETED, f"Archived {len(members)} files", dict(result)
        ):
            with contextlib.suppress(FileNotFoundError):
                dest.unlink()
