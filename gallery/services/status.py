"""Status/Progress Reporting: the read side that clients poll.

Liveness is computed here, never stored: a processing job is active when its
last progress write (or its claim) falls inside the liveness window, and
stalled otherwise. Nothing in this module changes job state.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Protocol

from gallery.config import Settings
from gallery.models.job import AnyJob, JobKind, JobStatus, utcnow
from gallery.services.paths import PathValidationError, split_key
from gallery.services.store import JobStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusFilter:
    """Which jobs to report on.

    No keys: every job created within the recent window (or since *since*).
    Keys: only jobs for those targets, optionally created at or after *since*.
    *session_id* is a correlation label for logs only.
    """

    keys: Sequence[str] | None = None
    since: datetime | None = None
    session_id: str | None = None
    kinds: Sequence[JobKind] | None = None
    limit: int = 200


@dataclass(frozen=True)
class JobProgress:
    kind: str
    id: int
    target: str
    size_tier: int | None
    status: str
    processed_units: int
    total_units: int
    percent: float
    current_unit_label: str | None
    is_active: bool
    is_stalled: bool
    created_at: datetime
    claimed_at: datetime | None
    progress_at: datetime | None
    completed_at: datetime | None
    result_message: str | None
    worker_id: str | None
    token: str | None = None
    artifact_filename: str | None = None
    artifact_size: int | None = None
    artifact_expired: bool = False


@dataclass
class StatusReport:
    pending_count: int = 0
    processing_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    cancelled_count: int = 0
    stalled_count: int = 0
    jobs: list[JobProgress] = field(default_factory=list)


class StatusSource(Protocol):
    def get_status(self, job_filter: StatusFilter) -> StatusReport: ...

    def get_zip_job(self, token: str) -> JobProgress | None: ...


class StatusReporter:
    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._liveness = timedelta(seconds=settings.liveness_window_seconds)
        self._recent = timedelta(hours=settings.status_recent_hours)
        self._clock = clock

    def get_status(self, job_filter: StatusFilter) -> StatusReport:
        now = self._clock()
        targets = _canonical_keys(job_filter.keys) if job_filter.keys is not None else None
        since = _naive_utc(job_filter.since)
        if targets is None and since is None:
            since = now - self._recent
        if job_filter.session_id:
            logger.info(
                "status poll session=%s keys=%d", job_filter.session_id, len(targets or [])
            )

        report = StatusReport()
        if targets is not None and not targets:
            return report

        jobs: list[JobProgress] = []
        for kind in job_filter.kinds or list(JobKind):
            counts = self._store.status_counts(kind, since, targets)
            report.pending_count += counts.get(JobStatus.PENDING, 0)
            report.processing_count += counts.get(JobStatus.PROCESSING, 0)
            report.completed_count += counts.get(JobStatus.COMPLETED, 0) + counts.get(
                JobStatus.DOWNLOADED, 0
            )
            report.failed_count += counts.get(JobStatus.FAILED, 0)
            report.cancelled_count += counts.get(JobStatus.CANCELLED, 0)
            if counts.get(JobStatus.PROCESSING):
                processing = self._store.list_jobs(
                    kind, since, targets, statuses=[JobStatus.PROCESSING]
                )
                report.stalled_count += sum(1 for job in processing if self.is_stalled(job, now))
            jobs.extend(
                self.progress(job, now)
                for job in self._store.list_jobs(kind, since, targets, limit=job_filter.limit)
            )

        jobs.sort(key=lambda p: (p.created_at, p.id), reverse=True)
        report.jobs = jobs[: job_filter.limit]
        return report

    def get_zip_job(self, token: str) -> JobProgress | None:
        job = self._store.get_by_token(token)
        return self.progress(job, self._clock()) if job is not None else None

    # ── Derived liveness ─────────────────────────────────────────────────────

    def is_active(self, job: AnyJob, now: datetime) -> bool:
        if job.status != JobStatus.PROCESSING:
            return False
        last_seen = job.progress_at or job.claimed_at
        return last_seen is not None and now - last_seen <= self._liveness

    def is_stalled(self, job: AnyJob, now: datetime) -> bool:
        return job.status == JobStatus.PROCESSING and not self.is_active(job, now)

    def progress(self, job: AnyJob, now: datetime | None = None) -> JobProgress:
        now = now or self._clock()
        total = job.total_units
        percent = round(100.0 * job.processed_units / total, 1) if total else 0.0
        artifact = job.result_artifact or {}
        return JobProgress(
            kind=job.kind,
            id=job.id,
            target=job.target,
            size_tier=job.size_tier,
            status=job.status,
            processed_units=job.processed_units,
            total_units=total,
            percent=percent,
            current_unit_label=job.current_unit_label,
            is_active=self.is_active(job, now),
            is_stalled=self.is_stalled(job, now),
            created_at=job.created_at,
            claimed_at=job.claimed_at,
            progress_at=job.progress_at,
            completed_at=job.completed_at,
            result_message=job.result_message,
            worker_id=job.worker_id,
            token=getattr(job, "opaque_token", None),
            artifact_filename=artifact.get("filename"),
            artifact_size=artifact.get("size"),
            artifact_expired=bool(getattr(job, "artifact_expired", False)),
        )


def _canonical_keys(keys: Sequence[str]) -> list[str]:
    canonical: list[str] = []
    for key in keys:
        try:
            source_key, relative = split_key(key)
        except PathValidationError:
            logger.debug("ignoring malformed status key %r", key)
            continue
        canonical.append(f"{source_key}/{relative}" if relative else source_key)
    return canonical


def _naive_utc(value: datetime | None) -> datetime | None:
    """Timestamps are stored as naive UTC; offset-aware bounds are converted to match."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)
