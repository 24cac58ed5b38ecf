"""Job Record Store: the only synchronization point between request handlers and workers.

Every state transition is a conditional UPDATE keyed on the current status,
so two workers racing for the same row, or a worker racing an admin cancel,
resolve to exactly one winner without any in-process locking.
"""

import logging
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, delete, func, update
from sqlalchemy.orm import Session, sessionmaker

from gallery.models.job import (
    ACTIVE_STATUSES,
    JOB_MODELS,
    AnyJob,
    JobKind,
    JobStatus,
    ZipJob,
    utcnow,
)

logger = logging.getLogger(__name__)

# Oldest pending rows tried per claim before giving up for this cycle.
_CLAIM_CANDIDATES = 5


class JobStore:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()

    # ── Admission ────────────────────────────────────────────────────────────

    def find_active(
        self,
        kind: JobKind,
        target: str,
        size_tier: int | None,
        items_digest: str | None = None,
    ) -> AnyJob | None:
        """Return the pending/processing job for this dedup key, if any."""
        model = JOB_MODELS[kind]
        with self.session() as db:
            query = db.query(model).filter(
                model.target == target,
                model.status.in_(ACTIVE_STATUSES),
            )
            if size_tier is None:
                query = query.filter(model.size_tier.is_(None))
            else:
                query = query.filter(model.size_tier == size_tier)
            if kind == JobKind.ZIP:
                query = query.filter(
                    ZipJob.items_digest.is_(None)
                    if items_digest is None
                    else ZipJob.items_digest == items_digest
                )
            return query.order_by(model.id).first()

    def insert(self, kind: JobKind, **fields: Any) -> AnyJob:
        model = JOB_MODELS[kind]
        job = model(status=JobStatus.PENDING, created_at=utcnow(), processed_units=0, **fields)
        with self.session() as db:
            db.add(job)
            db.commit()
            db.refresh(job)
        return job

    # ── Lookups ──────────────────────────────────────────────────────────────

    def get(self, kind: JobKind, job_id: int) -> AnyJob | None:
        with self.session() as db:
            return db.get(JOB_MODELS[kind], job_id)

    def get_by_token(self, token: str) -> ZipJob | None:
        with self.session() as db:
            return db.query(ZipJob).filter(ZipJob.opaque_token == token).first()

    def list_jobs(
        self,
        kind: JobKind,
        since: datetime | None = None,
        targets: Iterable[str] | None = None,
        statuses: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[AnyJob]:
        """Jobs of *kind*, newest first, optionally filtered by creation time, target and status."""
        model = JOB_MODELS[kind]
        with self.session() as db:
            query = db.query(model)
            if since is not None:
                query = query.filter(model.created_at >= since)
            if targets is not None:
                query = query.filter(model.target.in_(list(targets)))
            if statuses is not None:
                query = query.filter(model.status.in_(list(statuses)))
            query = query.order_by(model.created_at.desc(), model.id.desc())
            if limit is not None:
                query = query.limit(limit)
            return list(query.all())

    def status_counts(
        self,
        kind: JobKind,
        since: datetime | None = None,
        targets: Iterable[str] | None = None,
    ) -> dict[str, int]:
        model = JOB_MODELS[kind]
        with self.session() as db:
            query = db.query(model.status, func.count(model.id))
            if since is not None:
                query = query.filter(model.created_at >= since)
            if targets is not None:
                query = query.filter(model.target.in_(list(targets)))
            return {status: count for status, count in query.group_by(model.status).all()}

    # ── Worker transitions ───────────────────────────────────────────────────

    def claim_next(self, kind: JobKind, worker_id: str) -> AnyJob | None:
        """Atomically move the oldest pending job of *kind* to processing.

        The UPDATE is conditional on ``status == 'pending'``; when another
        worker got there first the rowcount is 0 and the next candidate is tried.
        """
        model = JOB_MODELS[kind]
        with self.session() as db:
            candidates = [
                job_id
                for (job_id,) in db.query(model.id)
                .filter(model.status == JobStatus.PENDING)
                .order_by(model.created_at, model.id)
                .limit(_CLAIM_CANDIDATES)
                .all()
            ]
            for job_id in candidates:
                now = utcnow()
                result = db.execute(
                    update(model)
                    .where(model.id == job_id, model.status == JobStatus.PENDING)
                    .values(
                        status=JobStatus.PROCESSING,
                        worker_id=worker_id,
                        claimed_at=now,
                        progress_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                if result.rowcount == 1:
                    logger.info("%s job %d claimed by %s", kind, job_id, worker_id)
                    return db.get(model, job_id)
                logger.debug("%s job %d already claimed, trying next", kind, job_id)
        return None

    def set_total_units(self, kind: JobKind, job_id: int, total_units: int) -> bool:
        """Replace the unit count of a processing job (recounted at claim time)."""
        model = JOB_MODELS[kind]
        with self.session() as db:
            result = db.execute(
                update(model)
                .where(model.id == job_id, model.status == JobStatus.PROCESSING)
                .values(total_units=total_units, processed_units=0, progress_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount == 1

    def update_progress(
        self,
        kind: JobKind,
        job_id: int,
        processed_units: int,
        label: str | None = None,
    ) -> bool:
        """Record progress on a processing job; returns False once the job left processing.

        processed_units only ever grows and stays below total_units: the last
        unit is committed by :meth:`finish` together with the completed status.
        """
        model = JOB_MODELS[kind]
        ceiling = case(
            (model.total_units > 0, model.total_units - 1),
            else_=0,
        )
        target = case(
            (processed_units < ceiling, processed_units),
            else_=ceiling,
        )
        with self.session() as db:
            result = db.execute(
                update(model)
                .where(model.id == job_id, model.status == JobStatus.PROCESSING)
                .values(
                    processed_units=case(
                        (model.processed_units < target, target),
                        else_=model.processed_units,
                    ),
                    current_unit_label=label,
                    progress_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount == 1

    def finish(
        self,
        kind: JobKind,
        job_id: int,
        status: JobStatus,
        message: str | None = None,
        artifact: dict[str, Any] | None = None,
    ) -> bool:
        """Move a processing job to completed/failed.

        No-op (returns False) when the job is no longer processing, which is
        how a worker's result for a cancelled job gets discarded.
        """
        if status not in (JobStatus.COMPLETED, JobStatus.FAILED):
            raise ValueError(f"finish() only accepts completed or failed, got {status}")
        model = JOB_MODELS[kind]
        values: dict[str, Any] = {
            "status": status,
            "completed_at": utcnow(),
            "result_message": message,
            "result_artifact": artifact,
            "current_unit_label": None,
        }
        if status == JobStatus.COMPLETED:
            values["processed_units"] = model.total_units
        with self.session() as db:
            result = db.execute(
                update(model)
                .where(model.id == job_id, model.status == JobStatus.PROCESSING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            won = result.rowcount == 1
        if won:
            logger.info("%s job %d finished: %s", kind, job_id, status)
        else:
            logger.warning("%s job %d left processing before finishing; result discarded", kind, job_id)
        return won

    # ── Administrative transitions ───────────────────────────────────────────

    def cancel_recent(
        self,
        window: timedelta,
        kinds: Sequence[JobKind] | None = None,
        now: datetime | None = None,
    ) -> int:
        """Cancel pending/processing jobs created within *window* of *now*."""
        now = now or utcnow()
        cutoff = now - window
        cancelled = 0
        with self.session() as db:
            for kind in kinds or list(JobKind):
                model = JOB_MODELS[kind]
                result = db.execute(
                    update(model)
                    .where(model.status.in_(ACTIVE_STATUSES), model.created_at >= cutoff)
                    .values(status=JobStatus.CANCELLED, completed_at=now, current_unit_label=None)
                    .execution_options(synchronize_session=False)
                )
                cancelled += result.rowcount
            db.commit()
        logger.info("cancelled %d jobs created since %s", cancelled, cutoff.isoformat())
        return cancelled

    def mark_downloaded(self, token: str) -> ZipJob | None:
        """Record a successful delivery; idempotent once the job is downloaded."""
        with self.session() as db:
            db.execute(
                update(ZipJob)
                .where(ZipJob.opaque_token == token, ZipJob.status == JobStatus.COMPLETED)
                .values(status=JobStatus.DOWNLOADED, downloaded_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return db.query(ZipJob).filter(ZipJob.opaque_token == token).first()

    def purge_failed(self, kind: JobKind | None = None) -> int:
        deleted = 0
        with self.session() as db:
            for each in [kind] if kind is not None else list(JobKind):
                model = JOB_MODELS[each]
                result = db.execute(
                    delete(model)
                    .where(model.status == JobStatus.FAILED)
                    .execution_options(synchronize_session=False)
                )
                deleted += result.rowcount
            db.commit()
        logger.info("purged %d failed jobs", deleted)
        return deleted

    # ── Archive housekeeping ─────────────────────────────────────────────────

    def expired_archives(self, older_than: datetime) -> list[ZipJob]:
        """Finished zip jobs whose archive is past retention and not yet purged."""
        with self.session() as db:
            return list(
                db.query(ZipJob)
                .filter(
                    ZipJob.status.in_((JobStatus.COMPLETED, JobStatus.DOWNLOADED)),
                    ZipJob.completed_at < older_than,
                    ZipJob.artifact_expired.is_(False),
                )
                .all()
            )

    def live_zip_jobs(self) -> list[ZipJob]:
        with self.session() as db:
            return list(db.query(ZipJob).filter(ZipJob.artifact_expired.is_(False)).all())

    def mark_artifact_expired(self, job_id: int) -> None:
        with self.session() as db:
            db.execute(
                update(ZipJob)
                .where(ZipJob.id == job_id)
                .values(artifact_expired=True)
                .execution_options(synchronize_session=False)
            )
            db.commit()
