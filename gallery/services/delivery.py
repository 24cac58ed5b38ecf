"""Zip archive delivery: token lookup, readiness checks, and the download transition."""

import logging
from pathlib import Path

from gallery.config import Settings
from gallery.models.job import JobStatus, ZipJob
from gallery.services.store import JobStore

logger = logging.getLogger(__name__)


class JobNotFoundError(Exception):
    """Raised when no zip job matches the token."""


class JobNotReadyError(Exception):
    """Raised when the archive has not been completed yet."""


class ArtifactExpiredError(Exception):
    """Raised when the archive was purged or is missing from disk."""


class ArchiveDelivery:
    def __init__(self, store: JobStore, settings: Settings) -> None:
        self._store = store
        self._zip_root = settings.zip_cache_root

    def locate(self, token: str) -> tuple[ZipJob, Path]:
        """Return the job and archive path for *token*, or raise why it cannot be served."""
        job = self._store.get_by_token(token)
        if job is None:
            raise JobNotFoundError("Unknown download token")
        if job.status not in (JobStatus.COMPLETED, JobStatus.DOWNLOADED):
            raise JobNotReadyError(f"Archive is not ready (status: {job.status})")
        filename = (job.result_artifact or {}).get("filename")
        path = self._zip_root / filename if filename else None
        if job.artifact_expired or path is None or not path.is_file():
            raise ArtifactExpiredError("Archive is no longer available")
        return job, path

    def mark_delivered(self, token: str) -> None:
        job = self._store.mark_downloaded(token)
        if job is not None:
            logger.info("zip job %d delivered (status=%s)", job.id, job.status)

    @staticmethod
    def download_name(job: ZipJob, path: Path) -> str:
        if job.filename_hint:
            return f"{job.filename_hint.removesuffix('.zip')}.zip"
        return path.name
