"""Zip archive writer used by zip jobs."""

import contextlib
import logging
import os
import re
import zipfile
from collections.abc import Callable, Sequence
from pathlib import Path, PurePosixPath

from gallery.services.types import ArchiveResult

logger = logging.getLogger(__name__)

# Already-compressed media gains nothing from deflate.
_STORED_EXTENSIONS = {
    "jpg", "jpeg", "png", "gif", "webp", "heic",
    "mp4", "mov", "avi", "mkv", "webm",
    "zip", "cr2", "cr3", "nef", "arw", "dng", "raf", "orf", "pef", "rw2",
}
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class ArchiveError(Exception):
    """Raised when an archive cannot be assembled or written."""


class ArchiveCancelled(ArchiveError):
    """Raised when the progress callback asks to stop mid-archive."""


def safe_filename_base(text: str) -> str:
    return _UNSAFE_CHARS.sub("_", text).strip("_") or "archive"


def archive_filename(target: str, token: str) -> str:
    return f"{safe_filename_base(target)}_{token}.zip"


def unique_arcnames(paths: Sequence[Path]) -> list[str]:
    """Flat archive names for an explicit file list; repeated basenames get a numeric suffix."""
    seen: dict[str, int] = {}
    names: list[str] = []
    for path in paths:
        name = path.name
        count = seen.get(name, 0)
        seen[name] = count + 1
        if count:
            stem, suffix = os.path.splitext(name)
            name = f"{stem} ({count + 1}){suffix}"
        names.append(name)
    return names


def folder_arcname(folder_name: str, relative: str) -> str:
    return str(PurePosixPath(folder_name, relative))


def build_archive(
    dest: Path,
    members: Sequence[tuple[Path, str]],
    on_member: Callable[[int, str], bool] | None = None,
) -> ArchiveResult:
    """Write *members* ``(disk_path, arcname)`` into ``dest`` via a ``.part`` file.

    *on_member* is called after each member with (members_done, arcname) and
    returns False to abort. On any failure the partial file is removed and
    nothing is left at *dest*.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    part = dest.with_name(dest.name + ".part")
    with contextlib.suppress(FileNotFoundError):
        dest.unlink()

    try:
        with zipfile.ZipFile(part, "w", allowZip64=True) as zf:
            for done, (disk_path, arcname) in enumerate(members, start=1):
                ext = disk_path.suffix.lower().lstrip(".")
                compress = zipfile.ZIP_STORED if ext in _STORED_EXTENSIONS else zipfile.ZIP_DEFLATED
                try:
                    zf.write(disk_path, arcname, compress_type=compress)
                except OSError as exc:
                    raise ArchiveError(f"Cannot add {arcname}: {exc}") from exc
                if on_member is not None and not on_member(done, arcname):
                    raise ArchiveCancelled(f"Archive {dest.name} cancelled after {done} members")
        os.replace(part, dest)
    except Exception:
        with contextlib.suppress(FileNotFoundError):
            part.unlink()
        raise

    size = dest.stat().st_size
    logger.info("archive %s written (%d members, %d bytes)", dest.name, len(members), size)
    return ArchiveResult(filename=dest.name, size=size)
