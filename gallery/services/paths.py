"""Path validation: turn client-supplied keys into canonical content keys.

A content key is ``source_key/relative/posix/path``. Every job target and
cache key goes through :class:`PathValidator` first, so the queue only ever
stores canonical keys that resolve inside a configured source root.
"""

import os
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path


class PathValidationError(Exception):
    """Raised when a key is malformed, escapes its source, or names the wrong kind of entry."""


class PathNotFoundError(PathValidationError):
    """Raised when a well-formed key does not name an existing file or folder."""


@dataclass(frozen=True)
class ResolvedPath:
    source_key: str
    relative_path: str  # posix, "" for a source root
    absolute_path: Path
    content_key: str

    @property
    def is_root(self) -> bool:
        return self.relative_path == ""

    @property
    def extension(self) -> str:
        return self.absolute_path.suffix.lower().lstrip(".")


class PathValidator:
    """Validates keys against a mapping of source_key -> base directory."""

    def __init__(self, sources: dict[str, Path]) -> None:
        self._sources = {key: Path(base) for key, base in sources.items()}

    @property
    def source_keys(self) -> list[str]:
        return sorted(self._sources)

    def base_dir(self, source_key: str) -> Path:
        try:
            return self._sources[source_key]
        except KeyError:
            raise PathValidationError(f"Unknown source: {source_key!r}") from None

    def validate_file(self, key: str, extensions: Iterable[str] | None = None) -> ResolvedPath:
        """Resolve *key* to an existing file, optionally restricted to *extensions*."""
        resolved = self._resolve(key)
        if resolved.is_root or not resolved.absolute_path.is_file():
            raise PathNotFoundError(f"Not a file: {resolved.content_key}")
        if extensions is not None and resolved.extension not in {e.lower() for e in extensions}:
            raise PathValidationError(f"Unsupported file type: {resolved.content_key}")
        return resolved

    def validate_folder(self, key: str, allow_root: bool = False) -> ResolvedPath:
        resolved = self._resolve(key)
        if resolved.is_root and not allow_root:
            raise PathValidationError(f"Refusing to use a source root: {resolved.content_key}")
        if not resolved.absolute_path.is_dir():
            raise PathNotFoundError(f"Not a folder: {resolved.content_key}")
        return resolved

    def iter_files(
        self, folder: ResolvedPath, extensions: Iterable[str] | None = None
    ) -> Iterator[ResolvedPath]:
        """Yield every matching file below *folder*, depth first, in sorted order.

        With *extensions* None every readable file is yielded.
        """
        wanted = {e.lower() for e in extensions} if extensions is not None else None
        base = self.base_dir(folder.source_key).resolve()
        for dirpath, dirnames, filenames in os.walk(folder.absolute_path):
            dirnames.sort()
            for name in sorted(filenames):
                if wanted is not None and Path(name).suffix.lower().lstrip(".") not in wanted:
                    continue
                absolute = Path(dirpath, name)
                if not absolute.is_file() or not os.access(absolute, os.R_OK):
                    continue
                if not absolute.resolve().is_relative_to(base):
                    continue
                relative = absolute.relative_to(base).as_posix()
                yield ResolvedPath(
                    source_key=folder.source_key,
                    relative_path=relative,
                    absolute_path=absolute,
                    content_key=f"{folder.source_key}/{relative}",
                )

    def resolve(self, key: str) -> ResolvedPath:
        """Canonicalize *key* and check containment without requiring it to exist."""
        return self._resolve(key)

    def _resolve(self, key: str) -> ResolvedPath:
        source_key, relative = split_key(key)
        base = self.base_dir(source_key).resolve()
        absolute = (base / relative).resolve() if relative else base
        if absolute != base and not absolute.is_relative_to(base):
            raise PathValidationError(f"Path escapes its source: {key!r}")
        content_key = f"{source_key}/{relative}" if relative else source_key
        return ResolvedPath(
            source_key=source_key,
            relative_path=relative,
            absolute_path=absolute,
            content_key=content_key,
        )


def split_key(key: str) -> tuple[str, str]:
    """Split a client key into (source_key, normalized relative posix path)."""
    if not key or "\x00" in key:
        raise PathValidationError("Empty or malformed path")
    parts = [p for p in key.replace("\\", "/").split("/") if p not in ("", ".")]
    if not parts:
        raise PathValidationError("Empty or malformed path")
    if ".." in parts:
        raise PathValidationError(f"Path traversal is not allowed: {key!r}")
    return parts[0], "/".join(parts[1:])
