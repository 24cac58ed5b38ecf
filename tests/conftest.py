"""Shared pytest fixtures."""

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from gallery.config import Settings
from gallery.services.container import Services, build_services
from gallery.services.worker import Worker

MakeImage = Callable[..., Path]


def _write_image(path: Path, size: tuple[int, int] = (1200, 800), color: str = "red") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    fmt = "PNG" if path.suffix.lower() == ".png" else "JPEG"
    Image.new("RGB", size, color).save(path, format=fmt)
    return path


@pytest.fixture()
def make_image() -> MakeImage:
    """Factory writing a solid-colour image; format follows the file suffix."""
    return _write_image


@pytest.fixture()
def photo_root(tmp_path: Path) -> Path:
    """Image source ``main``: album/{a.jpg,b.png,c.jpg,notes.txt} and album/sub/d.jpg."""
    root = tmp_path / "photos"
    album = root / "album"
    _write_image(album / "a.jpg", (1200, 800))
    _write_image(album / "b.png", (400, 600), "blue")
    _write_image(album / "c.jpg", (300, 300), "green")
    _write_image(album / "sub" / "d.jpg", (1000, 500))
    (album / "notes.txt").write_text("not an image")
    (root / "empty").mkdir()
    return root


@pytest.fixture()
def raw_root(tmp_path: Path) -> Path:
    root = tmp_path / "raw"
    shoot = root / "shoot"
    shoot.mkdir(parents=True)
    (shoot / "img1.cr2").write_bytes(b"raw sensor data")
    (shoot / "img2.nef").write_bytes(b"more raw data")
    return root


@pytest.fixture()
def settings(tmp_path: Path, photo_root: Path, raw_root: Path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'jobs.db'}",
        image_sources={"main": photo_root},
        raw_sources={"raw": raw_root},
        thumbnail_cache_root=tmp_path / "cache" / "thumbnails",
        raw_preview_cache_root=tmp_path / "cache" / "raw_previews",
        zip_cache_root=tmp_path / "cache" / "zips",
        worker_poll_interval=0.01,
    )


@pytest.fixture()
def services(settings: Settings) -> Iterator[Services]:
    built = build_services(settings)
    yield built
    built.engine.dispose()


@pytest.fixture()
def worker(services: Services) -> Worker:
    return Worker(
        services.store,
        services.resolver,
        services.validator,
        services.settings,
        worker_id="test-worker",
        raw_validator=services.raw_validator,
        progress_interval=0.0,
    )


@pytest.fixture()
def client(settings: Settings) -> Iterator[TestClient]:
    from gallery.main import create_app

    with TestClient(create_app(settings)) as test_client:
        yield test_client
