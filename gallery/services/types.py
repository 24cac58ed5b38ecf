"""Shared typed return types for gallery services."""

from typing import TypedDict


class ImageResult(TypedDict):
    width: int
    height: int


class ArchiveResult(TypedDict):
    filename: str
    size: int


class FolderCacheSummary(TypedDict):
    processed: int
    created: int
    skipped: int
    errors: int


class CleanupSummary(TypedDict):
    expired_archives: int
    orphaned_archives: int
    orphaned_thumbnails: int
