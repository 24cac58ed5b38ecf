"""Pydantic schemas for job endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field, model_validator


class ErrorResponse(BaseModel):
    error: str
    detail: str


class ThumbnailJobRequest(BaseModel):
    path: str = Field(..., description="Content key, e.g. main/album/photo.jpg")
    size: int


class FolderCacheRequest(BaseModel):
    path: str = Field(..., description="Folder key, e.g. main/album")
    size: int | None = None


class RawPreviewJobRequest(BaseModel):
    path: str
    size: int | None = None
    scope: str = "file"  # file | folder


class ZipRequest(BaseModel):
    path: str | None = None
    files: list[str] | None = None
    filename_hint: str | None = None

    @model_validator(mode="after")
    def _path_or_files(self) -> "ZipRequest":
        if bool(self.path) == bool(self.files):
            raise ValueError("Provide exactly one of 'path' or 'files'")
        return self


class EnqueueResponse(BaseModel):
    kind: str
    status: str  # queued | already_queued | rejected
    job_id: int | None
    reason: str | None = None
    token: str | None = None
    total_units: int | None = None

    model_config = {"from_attributes": True}


class JobProgressResponse(BaseModel):
    kind: str
    id: int
    target: str
    size_tier: int | None
    status: str
    processed_units: int
    total_units: int
    percent: float
    current_unit_label: str | None
    is_active: bool
    is_stalled: bool
    created_at: datetime
    claimed_at: datetime | None
    completed_at: datetime | None
    result_message: str | None
    artifact_filename: str | None = None
    artifact_size: int | None = None
    artifact_expired: bool = False

    model_config = {"from_attributes": True}


class StatusRequest(BaseModel):
    keys: list[str] = Field(default_factory=list)
    since: datetime | None = None
    session_id: str | None = None


class StatusResponse(BaseModel):
    pending_count: int
    processing_count: int
    completed_count: int
    failed_count: int
    cancelled_count: int
    stalled_count: int
    jobs: list[JobProgressResponse]

    model_config = {"from_attributes": True}
