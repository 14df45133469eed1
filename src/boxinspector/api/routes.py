"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request, UploadFile, status
from fastapi.responses import JSONResponse, PlainTextResponse

from boxinspector.api.middleware import require_api_key
from boxinspector.api.schemas import CheckResponse, ErrorResponse, HealthResponse
from boxinspector.ml.errors import BoxInspectorError, ImageTooLargeError, ModelLoadError

if TYPE_CHECKING:
    from boxinspector.config import Settings
    from boxinspector.ml.inference import InferencePool
    from boxinspector.ml.service import InferenceService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", dependencies=[Depends(require_api_key)])
public_router = APIRouter()

BANNER = "Box Inspector API is Online! 📦"
SERVER_ERROR_DETAIL = "Analysis failed"


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_inference_service(request: Request) -> InferenceService:
    service: InferenceService = request.app.state.inference_service
    return service


def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=detail).model_dump(),
    )


def _status_for(exc: BoxInspectorError) -> int:
    if isinstance(exc, ImageTooLargeError):
        return status.HTTP_413_CONTENT_TOO_LARGE
    if exc.client_error:
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, ModelLoadError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@router.post(
    "/check",
    response_model=CheckResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Inspect a box image for damage",
)
async def check_image(request: Request, image: UploadFile | None = None) -> CheckResponse | JSONResponse:
    """Classify an uploaded image and report whether the box looks damaged."""
    if image is None:
        return _error(status.HTTP_400_BAD_REQUEST, "missing_image", "No image uploaded")

    settings = _get_settings(request)
    if image.size is not None and image.size > settings.max_file_size:
        return _error(
            status.HTTP_413_CONTENT_TOO_LARGE,
            "file_too_large",
            f"Uploaded file exceeds {settings.max_file_size} bytes",
        )

    payload = await image.read()
    if not payload:
        return _error(status.HTTP_400_BAD_REQUEST, "missing_image", "Uploaded file is empty")

    pool = _get_inference_pool(request)
    service = _get_inference_service(request)
    try:
        result = await pool.run(service.classify_image, payload)
    except BoxInspectorError as exc:
        if exc.client_error:
            logger.info("Rejected image %r: %s", image.filename, exc)
            return _error(_status_for(exc), exc.error_code, str(exc))
        logger.exception("Analysis of %r failed", image.filename)
        return _error(_status_for(exc), exc.error_code, SERVER_ERROR_DETAIL)
    except TimeoutError:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "timeout", "Inference did not complete in time")

    return CheckResponse.from_result(result)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    pool = _get_inference_pool(request)
    service = _get_inference_service(request)
    return HealthResponse(
        status="ok",
        model_loaded=service.model_cache.is_loaded,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@public_router.get("/", response_class=PlainTextResponse, summary="Liveness banner")
async def root() -> str:
    """Plain-text liveness check, reachable without an API key."""
    return BANNER
