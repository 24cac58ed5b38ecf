"""Content transform backends: Pillow resize, ffmpeg frame grab, dcraw RAW decode.

Each backend either writes a valid non-empty JPEG at the destination or
raises TransformError. Destination files are written to a temp file in the
same directory and moved into place, so readers never see a partial image.
"""

import contextlib
import logging
import os
import subprocess
import tempfile
from pathlib import Path

from PIL import Image, ImageOps

from gallery.services.types import ImageResult

logger = logging.getLogger(__name__)

DEFAULT_JPEG_QUALITY = 85
_VIDEO_SEEK = "00:00:03"


class TransformError(Exception):
    """Raised when a source cannot be decoded, encoded, or converted by an external tool."""


def target_dimensions(width: int, height: int, size: int) -> tuple[int, int]:
    """Scale (width, height) so the longer edge equals *size*, preserving aspect ratio."""
    if width <= 0 or height <= 0:
        raise TransformError(f"Invalid source dimensions {width}x{height}")
    if width >= height:
        return size, max(1, round(height * size / width))
    return max(1, round(width * size / height)), size


def resize_to_jpeg(
    source: Path, dest: Path, size: int, quality: int = DEFAULT_JPEG_QUALITY
) -> ImageResult:
    """Decode *source*, resize its longer edge to *size*, and write a JPEG to *dest*."""
    try:
        with Image.open(source) as img:
            img = ImageOps.exif_transpose(img)
            if img.mode != "RGB":
                img = img.convert("RGB")
            new_size = target_dimensions(img.width, img.height, size)
            resized = img.resize(new_size, Image.Resampling.LANCZOS)
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise TransformError(f"Cannot decode {source.name}: {exc}") from exc

    write_jpeg_atomic(resized, dest, quality)
    return ImageResult(width=resized.width, height=resized.height)


def image_dimensions(path: Path) -> ImageResult:
    try:
        with Image.open(path) as img:
            return ImageResult(width=img.width, height=img.height)
    except OSError as exc:
        raise TransformError(f"Cannot read {path.name}: {exc}") from exc


def write_jpeg_atomic(img: Image.Image, dest: Path, quality: int = DEFAULT_JPEG_QUALITY) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".tmp", dir=dest.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            img.save(fh, format="JPEG", quality=quality)
        if tmp_path.stat().st_size == 0:
            raise TransformError(f"Encoder produced an empty file for {dest.name}")
        os.replace(tmp_path, dest)
    except Exception:
        with contextlib.suppress(FileNotFoundError):
            tmp_path.unlink()
        raise


def video_thumbnail(
    source: Path,
    dest: Path,
    size: int,
    ffmpeg_path: str = "ffmpeg",
    quality: int = DEFAULT_JPEG_QUALITY,
) -> ImageResult:
    """Grab a frame a few seconds into *source* with ffmpeg, then resize it like an image."""
    fd, frame_name = tempfile.mkstemp(prefix="gallery_frame_", suffix=".jpg")
    os.close(fd)
    frame = Path(frame_name)
    try:
        # Clips shorter than the seek offset yield no frame; retry from the start.
        for seek in (_VIDEO_SEEK, "00:00:00"):
            cmd = [
                ffmpeg_path, "-y", "-v", "error",
                "-ss", seek,
                "-i", str(source),
                "-frames:v", "1",
                str(frame),
            ]
            returncode, stderr = _run(cmd)
            if returncode == 0 and frame.stat().st_size > 0:
                break
            logger.debug("ffmpeg seek %s failed for %s: %s", seek, source, stderr.strip())
        else:
            raise TransformError(f"ffmpeg could not extract a frame from {source.name}: {stderr.strip()}")
        return resize_to_jpeg(frame, dest, size, quality)
    finally:
        with contextlib.suppress(FileNotFoundError):
            frame.unlink()


def raw_to_jpeg(
    source: Path,
    dest: Path,
    size: int,
    dcraw_path: str = "dcraw",
    quality: int = DEFAULT_JPEG_QUALITY,
) -> ImageResult:
    """Two-stage RAW pipeline: ``dcraw -c`` to a temporary PPM, then Pillow resize to JPEG."""
    fd, ppm_name = tempfile.mkstemp(prefix="gallery_raw_", suffix=".ppm")
    ppm = Path(ppm_name)
    try:
        with os.fdopen(fd, "wb") as ppm_file:
            try:
                proc = subprocess.run(
                    [dcraw_path, "-c", str(source)],
                    stdout=ppm_file,
                    stderr=subprocess.PIPE,
                )
            except OSError as exc:
                raise TransformError(f"Cannot run dcraw: {exc}") from exc
        stderr = proc.stderr.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0 or ppm.stat().st_size == 0:
            raise TransformError(
                f"dcraw failed for {source.name} (exit {proc.returncode}): {stderr or 'no output'}"
            )
        return resize_to_jpeg(ppm, dest, size, quality)
    finally:
        with contextlib.suppress(FileNotFoundError):
            ppm.unlink()


def _run(cmd: list[str]) -> tuple[int, str]:
    try:
        proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except OSError as exc:
        raise TransformError(f"Cannot run {cmd[0]}: {exc}") from exc
    return proc.returncode, proc.stderr
