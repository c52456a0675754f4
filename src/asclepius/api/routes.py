"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from asclepius.api.middleware import verify_api_key
from asclepius.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
)
from asclepius.ml.model_manager import MODEL_FILENAME, MODEL_TASK
from asclepius.ml.pipeline import is_error

if TYPE_CHECKING:
    from asclepius.config import Settings
    from asclepius.ml.acquisition import InMemoryMediaResolver
    from asclepius.ml.inference import InferencePool
    from asclepius.ml.pipeline import ClassificationPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_pipeline(request: Request) -> ClassificationPipeline | None:
    pipeline: ClassificationPipeline | None = request.app.state.pipeline
    if pipeline is None or pipeline.handle.closed:
        return None
    return pipeline


def _get_media_resolver(request: Request) -> InMemoryMediaResolver:
    resolver: InMemoryMediaResolver = request.app.state.media_resolver
    return resolver


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse:
    """Classify an uploaded image and return the top label with its confidence.

    Classification failures (undecodable image, no result above threshold)
    are reported in ``result`` with ``is_error`` set, not as HTTP errors.
    """
    pipeline = _get_pipeline(request)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Image classification unavailable: model not loaded",
        )

    settings = _get_settings(request)
    data = await file.read(settings.max_file_size + 1)
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is empty")
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"Uploaded file exceeds {settings.max_file_size} bytes",
        )

    resolver = _get_media_resolver(request)
    ref = resolver.register(data)
    try:
        result = await _get_inference_pool(request).run(pipeline.classify_static_image, ref)
    except TimeoutError:
        logger.warning("Classification queue full, rejecting %s", file.filename)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Server busy, try again later",
        ) from None
    finally:
        resolver.discard(ref)

    return ClassifyImageResponse(
        result=result,
        image_reference=ref,
        filename=file.filename,
        is_error=is_error(result),
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    stats = _get_inference_pool(request).stats
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        model_loaded=_get_pipeline(request) is not None,
        concurrent_requests=stats.active,
        queue_depth=stats.queued,
        completed_requests=stats.completed,
        failed_requests=stats.failed,
        rejected_requests=stats.rejected,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List the bundled model",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the bundled model and whether it is serving requests."""
    pipeline = _get_pipeline(request)
    if pipeline is None:
        info = ModelInfo(name=MODEL_FILENAME, task=MODEL_TASK, status="unavailable", labels=[])
    else:
        info = ModelInfo(
            name=pipeline.model_name,
            task=MODEL_TASK,
            status="active",
            labels=list(pipeline.handle.labels),
        )
    return ModelsResponse(models=[info])
