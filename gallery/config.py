"""Runtime configuration read from environment variables."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

_DEFAULT_IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "gif", "bmp", "webp")
_DEFAULT_VIDEO_EXTENSIONS = ("mp4", "mov", "avi", "mkv", "webm")
_DEFAULT_RAW_EXTENSIONS = ("cr2", "nef", "arw", "dng", "cr3", "raf", "orf", "pef", "rw2")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///gallery.db"
    # source_key -> base directory
    image_sources: dict[str, Path] = field(default_factory=dict)
    raw_sources: dict[str, Path] = field(default_factory=dict)
    thumbnail_cache_root: Path = Path("cache/thumbnails")
    raw_preview_cache_root: Path = Path("cache/raw_previews")
    zip_cache_root: Path = Path("cache/zips")
    thumbnail_sizes: tuple[int, ...] = (150, 750)
    raw_preview_size: int = 750
    raw_filmstrip_size: int = 120
    image_extensions: tuple[str, ...] = _DEFAULT_IMAGE_EXTENSIONS
    video_extensions: tuple[str, ...] = _DEFAULT_VIDEO_EXTENSIONS
    raw_extensions: tuple[str, ...] = _DEFAULT_RAW_EXTENSIONS
    jpeg_quality: int = 85
    dcraw_path: str = "dcraw"
    ffmpeg_path: str = "ffmpeg"
    worker_poll_interval: float = 5.0
    liveness_window_seconds: int = 45
    status_recent_hours: int = 24
    cancel_window_minutes: int = 30
    zip_retention_minutes: int = 60

    @property
    def standard_size(self) -> int:
        return min(self.thumbnail_sizes)

    @property
    def large_size(self) -> int:
        return max(self.thumbnail_sizes)

    @property
    def raw_sizes(self) -> tuple[int, ...]:
        return (self.raw_filmstrip_size, self.raw_preview_size)

    @property
    def thumbnailable_extensions(self) -> tuple[str, ...]:
        return self.image_extensions + self.video_extensions


def _parse_sources(raw: str | None, var_name: str) -> dict[str, Path]:
    if not raw:
        return {}
    try:
        data: object = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"{var_name} must be a JSON object of source_key -> path") from exc
    if not isinstance(data, dict):
        raise RuntimeError(f"{var_name} must be a JSON object of source_key -> path")
    return {str(key): Path(str(path)) for key, path in data.items()}


def _parse_sizes(raw: str | None, default: tuple[int, ...]) -> tuple[int, ...]:
    if not raw:
        return default
    sizes = tuple(sorted({int(part) for part in raw.split(",") if part.strip()}))
    if not sizes or any(size <= 0 for size in sizes):
        raise RuntimeError(f"Invalid THUMBNAIL_SIZES: {raw!r}")
    return sizes


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "").strip()
    return int(value) if value else default


def load_settings() -> Settings:
    """Build Settings from the process environment, falling back to defaults."""
    defaults = Settings()
    return Settings(
        database_url=os.environ.get("DATABASE_URL", "").strip() or defaults.database_url,
        image_sources=_parse_sources(os.environ.get("IMAGE_SOURCES"), "IMAGE_SOURCES"),
        raw_sources=_parse_sources(os.environ.get("RAW_IMAGE_SOURCES"), "RAW_IMAGE_SOURCES"),
        thumbnail_cache_root=Path(
            os.environ.get("THUMBNAIL_CACHE_ROOT", str(defaults.thumbnail_cache_root))
        ),
        raw_preview_cache_root=Path(
            os.environ.get("RAW_PREVIEW_CACHE_ROOT", str(defaults.raw_preview_cache_root))
        ),
        zip_cache_root=Path(os.environ.get("ZIP_CACHE_ROOT", str(defaults.zip_cache_root))),
        thumbnail_sizes=_parse_sizes(os.environ.get("THUMBNAIL_SIZES"), defaults.thumbnail_sizes),
        raw_preview_size=_env_int("RAW_PREVIEW_SIZE", defaults.raw_preview_size),
        raw_filmstrip_size=_env_int("RAW_FILMSTRIP_SIZE", defaults.raw_filmstrip_size),
        dcraw_path=os.environ.get("DCRAW_PATH", defaults.dcraw_path),
        ffmpeg_path=os.environ.get("FFMPEG_PATH", defaults.ffmpeg_path),
        worker_poll_interval=float(
            os.environ.get("WORKER_POLL_INTERVAL", "").strip() or defaults.worker_poll_interval
        ),
        liveness_window_seconds=_env_int(
            "LIVENESS_WINDOW_SECONDS", defaults.liveness_window_seconds
        ),
        status_recent_hours=_env_int("STATUS_RECENT_HOURS", defaults.status_recent_hours),
        cancel_window_minutes=_env_int("CANCEL_WINDOW_MINUTES", defaults.cancel_window_minutes),
        zip_retention_minutes=_env_int("ZIP_RETENTION_MINUTES", defaults.zip_retention_minutes),
    )
