"""Synchronous thumbnail and RAW preview serving."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import FileResponse, JSONResponse, Response

from gallery.api.deps import get_services
from gallery.schemas.job import EnqueueResponse
from gallery.services.container import Services
from gallery.services.paths import PathNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter()

_CACHE_HEADERS = {"Cache-Control": "public, max-age=86400"}


@router.get("/thumbnails")
def get_thumbnail(
    path: str = Query(...),
    size: int | None = Query(default=None),
    services: Services = Depends(get_services),
) -> FileResponse:
    """Serve a thumbnail, rendering the standard tier inline when needed.

    A missing large tier is queued and the standard tier is returned with
    ``X-Thumbnail-Placeholder: 1`` and the job id in ``X-Thumbnail-Job``.
    """
    tier = services.settings.standard_size if size is None else size
    try:
        result = services.fallback.get(path, tier)
    except PathNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    if result.placeholder:
        headers = {"X-Thumbnail-Placeholder": "1", "Cache-Control": "no-store"}
        if result.job is not None and result.job.job_id is not None:
            headers["X-Thumbnail-Job"] = str(result.job.job_id)
    else:
        headers = dict(_CACHE_HEADERS)
    headers["X-Thumbnail-Size"] = str(result.size_tier)
    return FileResponse(result.path, media_type="image/jpeg", headers=headers)


@router.get("/raw-previews", response_model=None)
def get_raw_preview(
    path: str = Query(...),
    size: int | None = Query(default=None),
    services: Services = Depends(get_services),
) -> Response:
    """Serve a cached RAW preview, or 202 with the job that will produce it."""
    try:
        result = services.fallback.get_raw_preview(path, size)
    except PathNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    if result.path is not None:
        return FileResponse(result.path, media_type="image/jpeg", headers=_CACHE_HEADERS)
    assert result.job is not None
    body = EnqueueResponse.model_validate(result.job)
    return JSONResponse(status_code=202, content=body.model_dump())
