"""Enqueue/Dedup Gate: admission of new jobs into the store.

Admission is check-then-insert: look for a pending/processing job with the
same (kind, target, size_tier) key and return it, otherwise insert a new
pending row. Two enqueuers can still race past the check; the duplicate
work is harmless because both jobs resolve to the same cache path.
"""

import hashlib
import logging
import secrets
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from gallery.config import Settings
from gallery.models.job import MULTIPLE_SELECTED, JobKind, JobScope
from gallery.services.paths import PathValidationError, PathValidator
from gallery.services.store import JobStore

logger = logging.getLogger(__name__)


class EnqueueStatus(StrEnum):
    QUEUED = "queued"
    ALREADY_QUEUED = "already_queued"
    REJECTED = "rejected"


@dataclass(frozen=True)
class EnqueueResult:
    status: EnqueueStatus
    kind: JobKind
    job_id: int | None = None
    reason: str | None = None
    token: str | None = None
    total_units: int | None = None


@dataclass(frozen=True)
class _Admission:
    target: str
    size_tier: int | None
    total_units: int
    fields: dict[str, Any]
    items_digest: str | None = None


def items_digest(items: Sequence[str]) -> str:
    return hashlib.sha1("\n".join(items).encode("utf-8")).hexdigest()


class EnqueueGate:
    def __init__(
        self,
        store: JobStore,
        validator: PathValidator,
        settings: Settings,
        raw_validator: PathValidator | None = None,
    ) -> None:
        self._store = store
        self._validator = validator
        self._raw_validator = raw_validator or PathValidator(settings.raw_sources)
        self._settings = settings

    def enqueue(
        self,
        kind: JobKind,
        target: str,
        size_tier: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> EnqueueResult:
        """Admit a job, returning queued, already_queued, or rejected.

        *metadata* carries kind-specific options: ``scope`` (file|folder) for
        thumbnail/raw_preview, ``items`` and ``filename_hint`` for zip.
        Rejections write no row.
        """
        kind = JobKind(kind)
        metadata = metadata or {}
        try:
            admission = self._admit(kind, target, size_tier, metadata)
        except (PathValidationError, ValueError) as exc:
            logger.warning("rejected %s job for %r: %s", kind, target, exc)
            return EnqueueResult(status=EnqueueStatus.REJECTED, kind=kind, reason=str(exc))

        existing = self._store.find_active(
            kind, admission.target, admission.size_tier, admission.items_digest
        )
        if existing is not None:
            logger.info("%s job %d already queued for %s", kind, existing.id, admission.target)
            return EnqueueResult(
                status=EnqueueStatus.ALREADY_QUEUED,
                kind=kind,
                job_id=existing.id,
                token=getattr(existing, "opaque_token", None),
                total_units=existing.total_units,
            )

        job = self._store.insert(
            kind,
            target=admission.target,
            size_tier=admission.size_tier,
            total_units=admission.total_units,
            **admission.fields,
        )
        logger.info(
            "queued %s job %d for %s (size=%s, units=%d)",
            kind,
            job.id,
            admission.target,
            admission.size_tier,
            admission.total_units,
        )
        return EnqueueResult(
            status=EnqueueStatus.QUEUED,
            kind=kind,
            job_id=job.id,
            token=getattr(job, "opaque_token", None),
            total_units=job.total_units,
        )

    # ── Convenience entry points ─────────────────────────────────────────────

    def enqueue_thumbnail(self, content_key: str, size_tier: int) -> EnqueueResult:
        return self.enqueue(JobKind.THUMBNAIL, content_key, size_tier, {"scope": JobScope.FILE})

    def enqueue_folder_cache(self, folder_key: str, size_tier: int | None = None) -> EnqueueResult:
        """Bulk-cache every image and video in a folder, by default at the large tier."""
        return self.enqueue(
            JobKind.THUMBNAIL,
            folder_key,
            self._settings.large_size if size_tier is None else size_tier,
            {"scope": JobScope.FOLDER},
        )

    def enqueue_raw_preview(self, content_key: str, size_tier: int | None = None) -> EnqueueResult:
        return self.enqueue(
            JobKind.RAW_PREVIEW,
            content_key,
            self._settings.raw_preview_size if size_tier is None else size_tier,
            {"scope": JobScope.FILE},
        )

    def enqueue_raw_folder(self, folder_key: str, size_tier: int | None = None) -> EnqueueResult:
        return self.enqueue(
            JobKind.RAW_PREVIEW,
            folder_key,
            self._settings.raw_preview_size if size_tier is None else size_tier,
            {"scope": JobScope.FOLDER},
        )

    def enqueue_zip_folder(self, folder_key: str, filename_hint: str | None = None) -> EnqueueResult:
        return self.enqueue(JobKind.ZIP, folder_key, None, {"filename_hint": filename_hint})

    def enqueue_zip_files(
        self, content_keys: Sequence[str], filename_hint: str | None = None
    ) -> EnqueueResult:
        return self.enqueue(
            JobKind.ZIP,
            MULTIPLE_SELECTED,
            None,
            {"items": list(content_keys), "filename_hint": filename_hint},
        )

    # ── Validation ───────────────────────────────────────────────────────────

    def _admit(
        self, kind: JobKind, target: str, size_tier: int | None, metadata: dict[str, Any]
    ) -> _Admission:
        if kind == JobKind.ZIP:
            return self._admit_zip(target, metadata)

        settings = self._settings
        if kind == JobKind.THUMBNAIL:
            validator = self._validator
            allowed_tiers = settings.thumbnail_sizes
            extensions = settings.thumbnailable_extensions
        else:
            validator = self._raw_validator
            allowed_tiers = settings.raw_sizes
            extensions = settings.raw_extensions

        if size_tier is None or size_tier not in allowed_tiers:
            raise ValueError(f"Size {size_tier} is not a configured {kind} size {list(allowed_tiers)}")

        scope = JobScope(metadata.get("scope", JobScope.FILE))
        if scope == JobScope.FOLDER:
            folder = validator.validate_folder(target)
            total = sum(1 for _ in validator.iter_files(folder, extensions))
            if total == 0:
                raise ValueError(f"No processable files in {folder.content_key}")
            fields: dict[str, Any] = {"scope": scope}
            return _Admission(folder.content_key, size_tier, total, fields)

        resolved = validator.validate_file(target, extensions)
        fields = {"scope": scope}
        if kind == JobKind.THUMBNAIL:
            is_video = resolved.extension in settings.video_extensions
            fields["media_type"] = "video" if is_video else "image"
        return _Admission(resolved.content_key, size_tier, 1, fields)

    def _admit_zip(self, target: str, metadata: dict[str, Any]) -> _Admission:
        hint = metadata.get("filename_hint")
        items = metadata.get("items")
        if items is not None or target == MULTIPLE_SELECTED:
            if not items:
                raise ValueError("An explicit zip needs at least one file")
            canonical = sorted({self._validator.validate_file(key).content_key for key in items})
            return _Admission(
                target=MULTIPLE_SELECTED,
                size_tier=None,
                total_units=len(canonical),
                fields={
                    "items": canonical,
                    "items_digest": items_digest(canonical),
                    "filename_hint": hint,
                    "opaque_token": secrets.token_hex(16),
                },
                items_digest=items_digest(canonical),
            )

        folder = self._validator.validate_folder(target)
        total = sum(1 for _ in self._validator.iter_files(folder))
        if total == 0:
            raise ValueError(f"No files to archive in {folder.content_key}")
        return _Admission(
            target=folder.content_key,
            size_tier=None,
            total_units=total,
            fields={"filename_hint": hint, "opaque_token": secrets.token_hex(16)},
        )
