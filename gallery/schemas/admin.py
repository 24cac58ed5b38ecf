"""Pydantic schemas for administrative endpoints."""

from pydantic import BaseModel, Field


class CancelRecentRequest(BaseModel):
    minutes: int | None = Field(default=None, gt=0)
    kinds: list[str] | None = None


class CancelRecentResponse(BaseModel):
    cancelled: int
    minutes: int


class PurgeFailedResponse(BaseModel):
    deleted: int


class IndexRebuildRequest(BaseModel):
    source_key: str | None = None
    max_seconds: int = 300
    force: bool = False

