"""On-Demand Fallback Generator: never leave a thumbnail request empty-handed.

Standard-tier thumbnails are cheap and are rendered inline on a miss. Any
larger tier is queued for the workers, and the standard tier is served in
its place, flagged as a placeholder so the client knows to ask again.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from gallery.config import Settings
from gallery.services.cache_paths import CachePathResolver, Variant
from gallery.services.enqueue import EnqueueGate, EnqueueResult
from gallery.services.paths import PathValidator, ResolvedPath
from gallery.services.worker import render_artifact

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FallbackResult:
    path: Path
    size_tier: int
    placeholder: bool
    job: EnqueueResult | None = None


@dataclass(frozen=True)
class RawPreviewResult:
    path: Path | None
    size_tier: int
    job: EnqueueResult | None = None


class ThumbnailFallback:
    def __init__(
        self,
        gate: EnqueueGate,
        resolver: CachePathResolver,
        validator: PathValidator,
        settings: Settings,
        raw_validator: PathValidator | None = None,
    ) -> None:
        self._gate = gate
        self._resolver = resolver
        self._validator = validator
        self._raw_validator = raw_validator or PathValidator(settings.raw_sources)
        self._settings = settings

    def get(self, content_key: str, size_tier: int) -> FallbackResult:
        """Return a servable thumbnail for *content_key* at *size_tier*, or its placeholder.

        Raises PathValidationError for bad keys, ValueError for an unknown
        tier and TransformError when even the standard tier cannot be rendered.
        """
        settings = self._settings
        if size_tier not in settings.thumbnail_sizes:
            raise ValueError(f"Unsupported thumbnail size {size_tier}")
        item = self._validator.validate_file(content_key, settings.thumbnailable_extensions)

        path = self._resolver.resolve(item.content_key, size_tier)
        if self._resolver.is_cached(path):
            return FallbackResult(path=path, size_tier=size_tier, placeholder=False)

        standard = settings.standard_size
        if size_tier == standard:
            return FallbackResult(path=self._ensure(item, standard), size_tier=standard, placeholder=False)

        job = self._gate.enqueue_thumbnail(item.content_key, size_tier)
        logger.info(
            "serving %dpx placeholder for %s while %dpx is %s (job %s)",
            standard,
            item.content_key,
            size_tier,
            job.status,
            job.job_id,
        )
        return FallbackResult(
            path=self._ensure(item, standard),
            size_tier=standard,
            placeholder=True,
            job=job,
        )

    def get_raw_preview(self, content_key: str, size_tier: int | None = None) -> RawPreviewResult:
        """Cached RAW preview, or a queued job for it. RAW decoding never runs inline."""
        size = self._settings.raw_preview_size if size_tier is None else size_tier
        if size not in self._settings.raw_sizes:
            raise ValueError(f"Unsupported RAW preview size {size}")
        item = self._raw_validator.validate_file(content_key, self._settings.raw_extensions)
        path = self._resolver.resolve(item.content_key, size, Variant.RAW)
        if self._resolver.is_cached(path):
            return RawPreviewResult(path=path, size_tier=size)
        return RawPreviewResult(
            path=None, size_tier=size, job=self._gate.enqueue_raw_preview(item.content_key, size)
        )

    def _ensure(self, item: ResolvedPath, size: int) -> Path:
        path = self._resolver.resolve(item.content_key, size)
        if not self._resolver.is_cached(path):
            render_artifact(item, path, size, Variant.STANDARD, self._settings)
            logger.info("rendered %dpx thumbnail inline for %s", size, item.content_key)
        return path
