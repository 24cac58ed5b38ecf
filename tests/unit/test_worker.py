"""Unit tests for the worker execution loop against real files and SQLite."""

import subprocess
import zipfile
from datetime import timedelta
from pathlib import Path
from typing import Any
from unittest.mock import patch

from PIL import Image

from gallery.models.job import JobKind, JobStatus
from gallery.services.cache_paths import Variant
from gallery.services.container import Services
from gallery.services.worker import Worker, default_worker_id


def _fake_dcraw(cmd: list[str], stdout: Any = None, stderr: Any = None, **_: Any) -> subprocess.CompletedProcess:
    Image.new("RGB", (1500, 1000), "gray").save(stdout, format="PPM")
    return subprocess.CompletedProcess(cmd, 0, stderr=b"")


class TestLoop:
    def test_worker_id_is_host_and_pid(self) -> None:
        with patch("gallery.services.worker.socket.gethostname", return_value="box"), patch(
            "gallery.services.worker.os.getpid", return_value=42
        ):
            assert default_worker_id() == "box_42"

    def test_run_once_reports_idle(self, worker: Worker) -> None:
        assert worker.run_once() is False

    def test_run_once_handles_one_job_per_kind(self, services: Services, worker: Worker) -> None:
        services.gate.enqueue_thumbnail("main/album/a.jpg", 150)
        services.gate.enqueue_thumbnail("main/album/b.png", 150)

        assert worker.run_once() is True

        counts = services.store.status_counts(JobKind.THUMBNAIL)
        assert counts == {JobStatus.COMPLETED: 1, JobStatus.PENDING: 1}

    def test_stopped_worker_exits_run_forever(self, worker: Worker) -> None:
        worker.stop()

        worker.run_forever()

        assert worker.stopping

    def test_unexpected_error_fails_the_job(self, services: Services, worker: Worker) -> None:
        result = services.gate.enqueue_thumbnail("main/album/a.jpg", 750)

        with patch("gallery.services.worker.render_artifact", side_effect=RuntimeError("kaboom")):
            worker.run_once()

        job = services.store.get(JobKind.THUMBNAIL, result.job_id)
        assert job.status == JobStatus.FAILED
        assert "kaboom" in job.result_message


class TestThumbnailJobs:
    def test_large_tier_thumbnail_is_written_at_exact_size(self, services: Services, worker: Worker) -> None:
        result = services.gate.enqueue_thumbnail("main/album/a.jpg", 750)

        worker.run_once()

        job = services.store.get(JobKind.THUMBNAIL, result.job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.processed_units == job.total_units == 1
        assert job.worker_id == "test-worker"
        assert job.result_artifact == {"width": 750, "height": 500}
        path = services.resolver.resolve("main/album/a.jpg", 750)
        with Image.open(path) as img:
            assert max(img.size) == 750

    def test_already_cached_artifact_is_not_regenerated(self, services: Services, worker: Worker) -> None:
        path = services.resolver.resolve("main/album/a.jpg", 750)
        path.parent.mkdir(parents=True)
        Image.new("RGB", (750, 500), "white").save(path, format="JPEG")
        mtime = path.stat().st_mtime_ns
        result = services.gate.enqueue_thumbnail("main/album/a.jpg", 750)

        worker.run_once()

        job = services.store.get(JobKind.THUMBNAIL, result.job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result_message == "Already cached"
        assert path.stat().st_mtime_ns == mtime

    def test_duplicate_rows_converge_on_one_artifact(self, services: Services, worker: Worker) -> None:
        store = services.store
        first = store.insert(JobKind.THUMBNAIL, target="main/album/a.jpg", size_tier=750, total_units=1)
        second = store.insert(JobKind.THUMBNAIL, target="main/album/a.jpg", size_tier=750, total_units=1)

        worker.run_once()
        worker.run_once()

        jobs = [store.get(JobKind.THUMBNAIL, job.id) for job in (first, second)]
        assert [job.status for job in jobs] == [JobStatus.COMPLETED, JobStatus.COMPLETED]
        assert [job.result_message for job in jobs] == ["Created", "Already cached"]
        path = services.resolver.resolve("main/album/a.jpg", 750)
        assert list(path.parent.iterdir()) == [path]
        with Image.open(path) as img:
            assert img.size == (750, 500)

    def test_source_removed_after_enqueue_fails_job(
        self, services: Services, worker: Worker, photo_root: Path
    ) -> None:
        result = services.gate.enqueue_thumbnail("main/album/a.jpg", 750)
        (photo_root / "album" / "a.jpg").unlink()

        worker.run_once()

        job = services.store.get(JobKind.THUMBNAIL, result.job_id)
        assert job.status == JobStatus.FAILED
        assert "Not a file" in job.result_message

    def test_corrupt_source_fails_job_without_artifact(
        self, services: Services, worker: Worker, photo_root: Path
    ) -> None:
        (photo_root / "album" / "broken.jpg").write_bytes(b"garbage")
        result = services.gate.enqueue_thumbnail("main/album/broken.jpg", 750)

        worker.run_once()

        assert services.store.get(JobKind.THUMBNAIL, result.job_id).status == JobStatus.FAILED
        assert not services.resolver.is_cached(services.resolver.resolve("main/album/broken.jpg", 750))

    def test_cancelled_while_running_keeps_cancelled_status(self, services: Services, worker: Worker) -> None:
        store = services.store
        result = services.gate.enqueue_thumbnail("main/album/a.jpg", 750)
        job = store.claim_next(JobKind.THUMBNAIL, worker.worker_id)
        store.cancel_recent(timedelta(minutes=30))

        worker.process(job)

        final = store.get(JobKind.THUMBNAIL, result.job_id)
        assert final.status == JobStatus.CANCELLED
        assert final.result_artifact is None


class TestFolderJobs:
    def test_folder_cache_creates_and_skips(self, services: Services, worker: Worker, make_image: Any) -> None:
        resolver = services.resolver
        cached = resolver.resolve("main/album/b.png", 750)
        make_image(cached, (500, 750))
        result = services.gate.enqueue_folder_cache("main/album")

        worker.run_once()

        job = services.store.get(JobKind.THUMBNAIL, result.job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.processed_units == job.total_units == 4
        assert job.result_artifact == {"processed": 4, "created": 3, "skipped": 1, "errors": 0}
        assert job.result_message == "Processed 4/4: 3 created, 1 skipped, 0 errors."
        for key in ("main/album/a.jpg", "main/album/c.jpg", "main/album/sub/d.jpg"):
            assert resolver.is_cached(resolver.resolve(key, 750))

    def test_folder_with_bad_file_fails_with_summary(
        self, services: Services, worker: Worker, photo_root: Path
    ) -> None:
        (photo_root / "album" / "broken.jpg").write_bytes(b"garbage")
        result = services.gate.enqueue_folder_cache("main/album")

        worker.run_once()

        job = services.store.get(JobKind.THUMBNAIL, result.job_id)
        assert job.status == JobStatus.FAILED
        assert job.result_artifact["errors"] == 1
        assert job.result_artifact["created"] == 4

    def test_folder_cancelled_midway_stops_processing(self, services: Services, worker: Worker) -> None:
        store = services.store
        result = services.gate.enqueue_folder_cache("main/album")
        job = store.claim_next(JobKind.THUMBNAIL, worker.worker_id)
        real_update = store.update_progress
        calls: list[int] = []

        def cancel_after_first(kind: JobKind, job_id: int, processed: int, label: str | None = None) -> bool:
            calls.append(processed)
            if processed == 1:
                store.cancel_recent(timedelta(minutes=30))
            return real_update(kind, job_id, processed, label)

        with patch.object(store, "update_progress", side_effect=cancel_after_first):
            worker.process(job)

        assert calls == [1]
        assert store.get(JobKind.THUMBNAIL, result.job_id).status == JobStatus.CANCELLED

    def test_shutdown_mid_folder_fails_job(self, services: Services, worker: Worker) -> None:
        store = services.store
        result = services.gate.enqueue_folder_cache("main/album")
        job = store.claim_next(JobKind.THUMBNAIL, worker.worker_id)
        worker.stop()

        worker.process(job)

        final = store.get(JobKind.THUMBNAIL, result.job_id)
        assert final.status == JobStatus.FAILED
        assert final.result_message.endswith("Stopped by worker shutdown.")

    def test_raw_folder_preview(self, services: Services, worker: Worker) -> None:
        result = services.gate.enqueue_raw_folder("raw/shoot")

        with patch("gallery.services.imaging.subprocess.run", side_effect=_fake_dcraw):
            worker.run_once()

        job = services.store.get(JobKind.RAW_PREVIEW, result.job_id)
        assert job.status == JobStatus.COMPLETED
        preview = services.resolver.resolve("raw/shoot/img1.cr2", 750, Variant.RAW)
        with Image.open(preview) as img:
            assert img.size == (750, 500)


class TestZipJobs:
    def test_folder_zip_is_built_with_folder_prefix(self, services: Services, worker: Worker) -> None:
        result = services.gate.enqueue_zip_folder("main/album")

        worker.run_once()

        job = services.store.get(JobKind.ZIP, result.job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.processed_units == 5
        archive = services.settings.zip_cache_root / job.result_artifact["filename"]
        assert archive.name == f"main_album_{result.token}.zip"
        with zipfile.ZipFile(archive) as zf:
            assert sorted(zf.namelist()) == [
                "album/a.jpg",
                "album/b.png",
                "album/c.jpg",
                "album/notes.txt",
                "album/sub/d.jpg",
            ]

    def test_explicit_list_with_vanished_third_file_fails_cleanly(
        self, services: Services, worker: Worker, photo_root: Path
    ) -> None:
        result = services.gate.enqueue_zip_files(
            ["main/album/a.jpg", "main/album/b.png", "main/album/c.jpg"], filename_hint="picks"
        )
        (photo_root / "album" / "c.jpg").unlink()

        worker.run_once()

        job = services.store.get(JobKind.ZIP, result.job_id)
        assert job.status == JobStatus.FAILED
        assert job.processed_units == 2
        assert "c.jpg" in job.result_message
        zip_root = services.settings.zip_cache_root
        assert not zip_root.exists() or list(zip_root.iterdir()) == []

    def test_cancelled_zip_leaves_no_archive(self, services: Services, worker: Worker) -> None:
        store = services.store
        result = services.gate.enqueue_zip_folder("main/album")
        job = store.claim_next(JobKind.ZIP, worker.worker_id)
        store.cancel_recent(timedelta(minutes=30))

        worker.process(job)

        assert store.get(JobKind.ZIP, result.job_id).status == JobStatus.CANCELLED
        assert list(services.settings.zip_cache_root.iterdir()) == []
