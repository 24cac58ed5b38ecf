"""Unit tests for JobStore state transitions against a real SQLite database."""

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from typing import Any
from unittest.mock import patch

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session

from gallery.models.job import JobKind, JobStatus, ThumbnailJob, utcnow
from gallery.services.container import Services
from gallery.services.store import JobStore


def _thumb(store: JobStore, target: str = "main/album/a.jpg", size: int = 750) -> int:
    return store.insert(JobKind.THUMBNAIL, target=target, size_tier=size, total_units=1).id


class TestClaim:
    def test_claims_oldest_pending_first(self, services: Services) -> None:
        store = services.store
        first = _thumb(store, "main/album/a.jpg")
        second = _thumb(store, "main/album/b.png")

        claimed = store.claim_next(JobKind.THUMBNAIL, "w1")

        assert claimed is not None
        assert claimed.id == first
        assert claimed.status == JobStatus.PROCESSING
        assert claimed.worker_id == "w1"
        assert claimed.claimed_at is not None
        assert store.claim_next(JobKind.THUMBNAIL, "w2").id == second

    def test_a_job_is_claimed_only_once(self, services: Services) -> None:
        store = services.store
        _thumb(store)

        assert store.claim_next(JobKind.THUMBNAIL, "w1") is not None
        assert store.claim_next(JobKind.THUMBNAIL, "w2") is None

    def test_candidate_taken_before_update_is_skipped(self, services: Services) -> None:
        store = services.store
        raced = _thumb(store, "main/album/a.jpg")
        free = _thumb(store, "main/album/b.png")
        real_session = store.session

        @contextmanager
        def racing_session() -> Iterator[Session]:
            with real_session() as db:
                original_execute = db.execute
                fired: list[bool] = []

                def execute(stmt: Any, *args: Any, **kwargs: Any) -> Any:
                    # Another worker wins the first candidate just before our UPDATE runs.
                    if getattr(stmt, "is_dml", False) and not fired:
                        fired.append(True)
                        with real_session() as other:
                            other.execute(
                                update(ThumbnailJob)
                                .where(ThumbnailJob.id == raced)
                                .values(status=JobStatus.PROCESSING, worker_id="w-other")
                            )
                            other.commit()
                    return original_execute(stmt, *args, **kwargs)

                db.execute = execute  # type: ignore[method-assign]
                yield db

        with patch.object(store, "session", racing_session):
            claimed = store.claim_next(JobKind.THUMBNAIL, "w1")

        assert claimed is not None
        assert claimed.id == free
        assert store.get(JobKind.THUMBNAIL, raced).worker_id == "w-other"

    def test_kinds_are_independent_queues(self, services: Services) -> None:
        store = services.store
        _thumb(store)

        assert store.claim_next(JobKind.ZIP, "w1") is None
        assert store.claim_next(JobKind.RAW_PREVIEW, "w1") is None


class TestProgress:
    def test_progress_is_monotonic_and_below_total(self, services: Services) -> None:
        store = services.store
        job_id = store.insert(
            JobKind.THUMBNAIL, target="main/album", size_tier=750, total_units=3, scope="folder"
        ).id
        store.claim_next(JobKind.THUMBNAIL, "w1")

        assert store.update_progress(JobKind.THUMBNAIL, job_id, 2, "album/b.png")
        assert store.update_progress(JobKind.THUMBNAIL, job_id, 1, "album/a.jpg")
        assert store.get(JobKind.THUMBNAIL, job_id).processed_units == 2

        store.update_progress(JobKind.THUMBNAIL, job_id, 3, "album/c.jpg")
        job = store.get(JobKind.THUMBNAIL, job_id)
        assert job.processed_units == 2
        assert job.current_unit_label == "album/c.jpg"

    def test_progress_on_a_non_processing_job_is_refused(self, services: Services) -> None:
        store = services.store
        job_id = _thumb(store)

        assert not store.update_progress(JobKind.THUMBNAIL, job_id, 1)

    def test_completion_sets_processed_to_total(self, services: Services) -> None:
        store = services.store
        job_id = store.insert(
            JobKind.THUMBNAIL, target="main/album", size_tier=750, total_units=4, scope="folder"
        ).id
        store.claim_next(JobKind.THUMBNAIL, "w1")

        assert store.finish(JobKind.THUMBNAIL, job_id, JobStatus.COMPLETED, "done", {"processed": 4})

        job = store.get(JobKind.THUMBNAIL, job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.processed_units == job.total_units == 4
        assert job.result_artifact == {"processed": 4}
        assert job.completed_at is not None

    def test_set_total_units_resets_processed(self, services: Services) -> None:
        store = services.store
        job_id = store.insert(JobKind.ZIP, target="main/album", total_units=2, opaque_token="t1").id
        store.claim_next(JobKind.ZIP, "w1")
        store.update_progress(JobKind.ZIP, job_id, 1)

        assert store.set_total_units(JobKind.ZIP, job_id, 5)

        job = store.get(JobKind.ZIP, job_id)
        assert (job.processed_units, job.total_units) == (0, 5)


class TestFinish:
    def test_only_terminal_worker_statuses_are_accepted(self, services: Services) -> None:
        with pytest.raises(ValueError):
            services.store.finish(JobKind.THUMBNAIL, 1, JobStatus.CANCELLED)

    def test_result_for_cancelled_job_is_discarded(self, services: Services) -> None:
        store = services.store
        job_id = _thumb(store)
        store.claim_next(JobKind.THUMBNAIL, "w1")
        assert store.cancel_recent(timedelta(minutes=30)) == 1

        assert not store.finish(JobKind.THUMBNAIL, job_id, JobStatus.COMPLETED, "Created")

        job = store.get(JobKind.THUMBNAIL, job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.result_message is None


class TestAdministrative:
    def test_cancel_recent_ignores_jobs_outside_window(self, services: Services) -> None:
        store = services.store
        job_id = _thumb(store)

        cancelled = store.cancel_recent(timedelta(minutes=30), now=utcnow() + timedelta(hours=2))

        assert cancelled == 0
        assert store.get(JobKind.THUMBNAIL, job_id).status == JobStatus.PENDING

    def test_cancel_recent_leaves_finished_jobs_alone(self, services: Services) -> None:
        store = services.store
        done = _thumb(store, "main/album/a.jpg")
        store.claim_next(JobKind.THUMBNAIL, "w1")
        store.finish(JobKind.THUMBNAIL, done, JobStatus.COMPLETED)
        pending = _thumb(store, "main/album/b.png")

        assert store.cancel_recent(timedelta(minutes=30), kinds=[JobKind.THUMBNAIL]) == 1
        assert store.get(JobKind.THUMBNAIL, done).status == JobStatus.COMPLETED
        assert store.get(JobKind.THUMBNAIL, pending).status == JobStatus.CANCELLED

    def test_mark_downloaded_is_idempotent(self, services: Services) -> None:
        store = services.store
        job_id = store.insert(JobKind.ZIP, target="main/album", total_units=1, opaque_token="tok").id
        store.claim_next(JobKind.ZIP, "w1")
        artifact = {"filename": "album_tok.zip", "size": 10}
        store.finish(JobKind.ZIP, job_id, JobStatus.COMPLETED, "Archived 1 files", artifact)

        first = store.mark_downloaded("tok")
        second = store.mark_downloaded("tok")

        assert first.status == second.status == JobStatus.DOWNLOADED
        assert second.downloaded_at == first.downloaded_at
        assert second.result_artifact == artifact

    def test_mark_downloaded_requires_completion(self, services: Services) -> None:
        store = services.store
        store.insert(JobKind.ZIP, target="main/album", total_units=1, opaque_token="tok")

        assert store.mark_downloaded("tok").status == JobStatus.PENDING
        assert store.mark_downloaded("missing") is None

    def test_purge_failed(self, services: Services) -> None:
        store = services.store
        failed = _thumb(store, "main/album/a.jpg")
        store.claim_next(JobKind.THUMBNAIL, "w1")
        store.finish(JobKind.THUMBNAIL, failed, JobStatus.FAILED, "boom")
        kept = _thumb(store, "main/album/b.png")

        assert store.purge_failed() == 1
        assert store.get(JobKind.THUMBNAIL, failed) is None
        assert store.get(JobKind.THUMBNAIL, kept) is not None

    def test_status_counts_group_by_status(self, services: Services) -> None:
        store = services.store
        _thumb(store, "main/album/a.jpg")
        _thumb(store, "main/album/b.png")
        store.claim_next(JobKind.THUMBNAIL, "w1")

        counts = store.status_counts(JobKind.THUMBNAIL)

        assert counts == {JobStatus.PENDING: 1, JobStatus.PROCESSING: 1}
