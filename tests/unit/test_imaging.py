"""Unit tests for the Pillow / ffmpeg / dcraw transform backends."""

import subprocess
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from PIL import Image

from gallery.services.imaging import (
    TransformError,
    raw_to_jpeg,
    resize_to_jpeg,
    target_dimensions,
    video_thumbnail,
)

MakeImage = Callable[..., Path]


@pytest.fixture()
def scratch_tmp(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect tempfile's default directory so leftover temp files can be observed."""
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(scratch))
    return scratch


def _fake_dcraw(size: tuple[int, int] = (1600, 1000)) -> Any:
    def run(cmd: list[str], stdout: Any = None, stderr: Any = None, **_: Any) -> subprocess.CompletedProcess:
        Image.new("RGB", size, "gray").save(stdout, format="PPM")
        return subprocess.CompletedProcess(cmd, 0, stderr=b"")

    return run


class TestTargetDimensions:
    def test_landscape_long_edge_becomes_size(self) -> None:
        assert target_dimensions(1200, 800, 750) == (750, 500)

    def test_portrait_long_edge_becomes_size(self) -> None:
        assert target_dimensions(400, 600, 150) == (100, 150)

    def test_small_sources_are_upscaled_to_the_tier(self) -> None:
        assert target_dimensions(300, 300, 750) == (750, 750)

    def test_invalid_dimensions(self) -> None:
        with pytest.raises(TransformError):
            target_dimensions(0, 10, 150)


class TestResizeToJpeg:
    def test_writes_jpeg_with_long_edge_equal_to_size(self, tmp_path: Path, make_image: MakeImage) -> None:
        source = make_image(tmp_path / "src.png", (1200, 800))
        dest = tmp_path / "out" / "thumb.jpg"

        result = resize_to_jpeg(source, dest, 750)

        assert result == {"width": 750, "height": 500}
        with Image.open(dest) as img:
            assert img.format == "JPEG"
            assert max(img.size) == 750

    def test_corrupt_source_raises_and_leaves_nothing(self, tmp_path: Path) -> None:
        source = tmp_path / "broken.jpg"
        source.write_bytes(b"not really a jpeg")
        dest = tmp_path / "out" / "thumb.jpg"

        with pytest.raises(TransformError, match="Cannot decode"):
            resize_to_jpeg(source, dest, 150)

        assert not dest.exists()


class TestRawToJpeg:
    def test_decodes_via_dcraw_and_removes_intermediate(
        self, tmp_path: Path, scratch_tmp: Path
    ) -> None:
        source = tmp_path / "img.cr2"
        source.write_bytes(b"raw")
        dest = tmp_path / "out" / "preview.raw.jpg"

        with patch("gallery.services.imaging.subprocess.run", side_effect=_fake_dcraw()) as run:
            result = raw_to_jpeg(source, dest, 750, dcraw_path="/usr/bin/dcraw")

        assert run.call_args.args[0] == ["/usr/bin/dcraw", "-c", str(source)]
        assert result == {"width": 750, "height": 469}
        assert dest.stat().st_size > 0
        assert list(scratch_tmp.iterdir()) == []

    def test_dcraw_failure_raises_and_removes_intermediate(
        self, tmp_path: Path, scratch_tmp: Path
    ) -> None:
        source = tmp_path / "img.cr2"
        source.write_bytes(b"raw")
        dest = tmp_path / "preview.raw.jpg"
        failed = subprocess.CompletedProcess(["dcraw"], 1, stderr=b"Cannot decode file img.cr2")

        with patch("gallery.services.imaging.subprocess.run", return_value=failed):
            with pytest.raises(TransformError, match="exit 1"):
                raw_to_jpeg(source, dest, 750)

        assert not dest.exists()
        assert list(scratch_tmp.iterdir()) == []

    def test_missing_dcraw_binary(self, tmp_path: Path, scratch_tmp: Path) -> None:
        source = tmp_path / "img.cr2"
        source.write_bytes(b"raw")

        with patch("gallery.services.imaging.subprocess.run", side_effect=FileNotFoundError("dcraw")):
            with pytest.raises(TransformError, match="Cannot run dcraw"):
                raw_to_jpeg(source, tmp_path / "preview.raw.jpg", 750)

        assert list(scratch_tmp.iterdir()) == []


class TestVideoThumbnail:
    def test_retries_from_start_when_seek_yields_no_frame(
        self, tmp_path: Path, scratch_tmp: Path
    ) -> None:
        source = tmp_path / "clip.mp4"
        source.write_bytes(b"video")
        dest = tmp_path / "out" / "clip.jpg"
        seeks: list[str] = []

        def run(cmd: list[str], **_: Any) -> subprocess.CompletedProcess:
            seek = cmd[cmd.index("-ss") + 1]
            seeks.append(seek)
            if seek == "00:00:03":
                return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="end of stream")
            Image.new("RGB", (640, 360), "black").save(cmd[-1], format="JPEG")
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

        with patch("gallery.services.imaging.subprocess.run", side_effect=run):
            result = video_thumbnail(source, dest, 150)

        assert seeks == ["00:00:03", "00:00:00"]
        assert result == {"width": 150, "height": 84}
        assert list(scratch_tmp.iterdir()) == []

    def test_no_frame_at_all_raises(self, tmp_path: Path, scratch_tmp: Path) -> None:
        source = tmp_path / "clip.mp4"
        source.write_bytes(b"video")
        failed = subprocess.CompletedProcess(["ffmpeg"], 1, stdout="", stderr="invalid data")

        with patch("gallery.services.imaging.subprocess.run", return_value=failed):
            with pytest.raises(TransformError, match="could not extract a frame"):
                video_thumbnail(source, tmp_path / "clip.jpg", 150)

        assert list(scratch_tmp.iterdir()) == []
