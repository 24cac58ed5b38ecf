"""Job ORM models: one table per job kind, all sharing the JobMixin shape."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, ClassVar

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from gallery.db import Base


class JobKind(StrEnum):
    THUMBNAIL = "thumbnail"
    ZIP = "zip"
    RAW_PREVIEW = "raw_preview"


class JobStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DOWNLOADED = "downloaded"


class JobScope(StrEnum):
    FILE = "file"
    FOLDER = "folder"


ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)
FINISHED_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

# zip target meaning "explicit file list in items".
MULTIPLE_SELECTED = "_multiple_selected_"


def utcnow() -> datetime:
    return datetime.now(tz=UTC).replace(tzinfo=None)


class JobMixin:
    kind: ClassVar[JobKind]

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    target: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    size_tier: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # status: pending | processing | completed | failed | cancelled | downloaded
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.PENDING, index=True
    )
    total_units: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    processed_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_unit_label: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    progress_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    result_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_artifact: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    worker_id: Mapped[str | None] = mapped_column(String(255), nullable=True)


class ThumbnailJob(JobMixin, Base):
    __tablename__ = "thumbnail_jobs"
    kind = JobKind.THUMBNAIL

    scope: Mapped[str] = mapped_column(String(10), nullable=False, default=JobScope.FILE)
    # media_type: image | video (file scope only)
    media_type: Mapped[str] = mapped_column(String(10), nullable=False, default="image")


class RawPreviewJob(JobMixin, Base):
    __tablename__ = "raw_preview_jobs"
    kind = JobKind.RAW_PREVIEW

    scope: Mapped[str] = mapped_column(String(10), nullable=False, default=JobScope.FILE)


class ZipJob(JobMixin, Base):
    __tablename__ = "zip_jobs"
    kind = JobKind.ZIP

    opaque_token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    items: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    items_digest: Mapped[str | None] = mapped_column(String(40), nullable=True)
    filename_hint: Mapped[str | None] = mapped_column(Text, nullable=True)
    downloaded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    artifact_expired: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


AnyJob = ThumbnailJob | RawPreviewJob | ZipJob

JOB_MODELS: dict[JobKind, type[ThumbnailJob] | type[RawPreviewJob] | type[ZipJob]] = {
    JobKind.THUMBNAIL: ThumbnailJob,
    JobKind.ZIP: ZipJob,
    JobKind.RAW_PREVIEW: RawPreviewJob,
}
