"""FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S")

# Apply the same format to Uvicorn's loggers so they also show timestamps.
for _uvicorn_logger in ("uvicorn", "uvicorn.error", "uvicorn.access"):
    _log = logging.getLogger(_uvicorn_logger)
    _log.handlers.clear()
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S"))
    _log.addHandler(_handler)
    _log.propagate = False

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gallery.api import admin, jobs, thumbnails
from gallery.api import zip as zip_api
from gallery.config import Settings, load_settings
from gallery.schemas.job import ErrorResponse
from gallery.services.container import build_services
from gallery.services.delivery import ArtifactExpiredError, JobNotFoundError, JobNotReadyError
from gallery.services.imaging import TransformError
from gallery.services.paths import PathNotFoundError, PathValidationError

logger = logging.getLogger(__name__)

# Most specific first: PathNotFoundError is a PathValidationError.
_DOMAIN_ERRORS: list[tuple[type[Exception], int, str]] = [
    (JobNotFoundError, 404, "not_found"),
    (PathNotFoundError, 404, "not_found"),
    (JobNotReadyError, 409, "not_ready"),
    (ArtifactExpiredError, 410, "expired"),
    (PathValidationError, 422, "invalid_path"),
]


async def _domain_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    for exc_type, status_code, error in _DOMAIN_ERRORS:
        if isinstance(exc, exc_type):
            return JSONResponse(
                status_code=status_code,
                content=ErrorResponse(error=error, detail=str(exc)).model_dump(),
            )
    return await _global_exception_handler(request, exc)


async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    if isinstance(exc, TransformError):
        # Decoder details stay in the log; clients get a generic failure.
        logger.error("transform failed for %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error="transform_failed", detail="Could not render preview").model_dump(),
        )
    logger.exception("unhandled error on %s", request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(error="internal_error", detail=str(exc)).model_dump(),
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.services = build_services(settings or load_settings())
        yield
        app.state.services.engine.dispose()

    app = FastAPI(title="Gallery Jobs", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Thumbnail-Placeholder", "X-Thumbnail-Job", "X-Thumbnail-Size"],
    )

    for exc_type, _, _ in _DOMAIN_ERRORS:
        app.add_exception_handler(exc_type, _domain_exception_handler)
    app.add_exception_handler(TransformError, _global_exception_handler)
    app.add_exception_handler(Exception, _global_exception_handler)

    app.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
    app.include_router(zip_api.router, prefix="/zip", tags=["zip"])
    app.include_router(thumbnails.router, tags=["thumbnails"])
    app.include_router(admin.router, prefix="/admin", tags=["admin"])
    return app


app = create_app()
