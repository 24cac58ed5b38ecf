"""Deterministic cache file locations keyed by the sha1 of a content key."""

import hashlib
from collections.abc import Iterator
from enum import StrEnum
from pathlib import Path

from gallery.config import Settings


class Variant(StrEnum):
    STANDARD = "standard"
    RAW = "raw"


_SUFFIXES = {Variant.STANDARD: ".jpg", Variant.RAW: ".raw.jpg"}


def content_hash(content_key: str) -> str:
    return hashlib.sha1(content_key.encode("utf-8")).hexdigest()


class CachePathResolver:
    """Maps (content_key, size_tier, variant) to ``root/size/<sha1>_<size>[.raw].jpg``.

    Pure: no filesystem access in :meth:`resolve`, so the worker and the
    synchronous fallback can compute the same path independently.
    """

    def __init__(self, thumbnail_root: Path, raw_root: Path) -> None:
        self._roots = {
            Variant.STANDARD: Path(thumbnail_root).absolute(),
            Variant.RAW: Path(raw_root).absolute(),
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "CachePathResolver":
        return cls(settings.thumbnail_cache_root, settings.raw_preview_cache_root)

    def root(self, variant: Variant = Variant.STANDARD) -> Path:
        return self._roots[variant]

    def resolve(self, content_key: str, size_tier: int, variant: Variant = Variant.STANDARD) -> Path:
        filename = f"{content_hash(content_key)}_{size_tier}{_SUFFIXES[variant]}"
        return self._roots[variant] / str(size_tier) / filename

    def iter_artifacts(self, variant: Variant = Variant.STANDARD) -> Iterator[Path]:
        """Yield every artifact currently stored under the *variant* root."""
        root = self._roots[variant]
        if not root.is_dir():
            return
        suffix = _SUFFIXES[variant]
        for tier_dir in sorted(p for p in root.iterdir() if p.is_dir()):
            for path in sorted(tier_dir.iterdir()):
                if not path.is_file() or not path.name.endswith(suffix):
                    continue
                # A standard root may share a tree with RAW artifacts.
                if variant is Variant.STANDARD and path.name.endswith(_SUFFIXES[Variant.RAW]):
                    continue
                yield path

    @staticmethod
    def is_cached(path: Path) -> bool:
        """An artifact exists only if the file is present and non-empty."""
        try:
            return path.is_file() and path.stat().st_size > 0
        except OSError:
            return False

    @staticmethod
    def ensure_dir(path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
