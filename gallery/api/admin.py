"""Administrative API router: bulk cancel, purge, index rebuild."""

import logging
from datetime import timedelta

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from gallery.api.deps import get_services
from gallery.models.job import JobKind
from gallery.schemas.admin import (
    CancelRecentRequest,
    CancelRecentResponse,
    IndexRebuildRequest,
    PurgeFailedResponse,
)
from gallery.services.container import Services

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/jobs/cancel-recent")
def cancel_recent(
    body: CancelRecentRequest, services: Services = Depends(get_services)
) -> CancelRecentResponse:
    """Cancel pending/processing jobs created within the last *minutes*."""
    minutes = body.minutes or services.settings.cancel_window_minutes
    try:
        kinds = [JobKind(k) for k in body.kinds] if body.kinds else None
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    cancelled = services.store.cancel_recent(timedelta(minutes=minutes), kinds)
    return CancelRecentResponse(cancelled=cancelled, minutes=minutes)


@router.delete("/jobs/failed")
def purge_failed(
    kind: JobKind | None = None, services: Services = Depends(get_services)
) -> PurgeFailedResponse:
    return PurgeFailedResponse(deleted=services.store.purge_failed(kind))


@router.post("/directory-index/rebuild", status_code=202)
def rebuild_directory_index(
    body: IndexRebuildRequest,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
) -> dict[str, str]:
    """Schedule an index rebuild after the response is sent."""
    if body.source_key is not None and body.source_key not in services.validator.source_keys:
        raise HTTPException(status_code=422, detail=f"Unknown source: {body.source_key}")
    background_tasks.add_task(
        services.index_builder.rebuild, body.source_key, body.max_seconds, body.force
    )
    return {"status": "scheduled"}
