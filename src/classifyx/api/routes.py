"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from classifyx.api.middleware import require_api_key
from classifyx.api.schemas import (
    ClassifyImageResponse,
    ClassifyResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfoResponse,
)
from classifyx.errors import DecodeError

if TYPE_CHECKING:
    from classifyx.config import Settings
    from classifyx.ml.image_classifier import ImageClassifier
    from classifyx.ml.inference import InferencePool

router = APIRouter(prefix="/api/v1", dependencies=[Depends(require_api_key)])
public_router = APIRouter(prefix="/api/v1")

# Literal: Starlette renamed the 413 constant and older releases lack the new name.
HTTP_413_CONTENT_TOO_LARGE = 413

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_classifier(request: Request) -> ImageClassifier:
    classifier: ImageClassifier = request.app.state.classifier
    return classifier


@router.post(
    "/classify",
    response_model=ClassifyResponse,
    responses=_ERROR_RESPONSES,
    summary="Classify the bundled sample image",
)
async def classify(request: Request) -> ClassifyResponse:
    """Run the model on the sample image and return the top label."""
    try:
        label = await _get_classifier(request).classify()
    except DecodeError as exc:
        # The sample image ships with the server, so a bad one is a server fault.
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Bundled sample image is unreadable: {exc}",
        ) from exc
    return ClassifyResponse(label=label)


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        **_ERROR_RESPONSES,
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
    },
    summary="Classify an uploaded image",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse:
    """Classify an uploaded image and return ranked tags."""
    settings = _get_settings(request)
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=HTTP_413_CONTENT_TOO_LARGE,
            detail=f"File exceeds the {settings.max_file_size} byte limit",
        )

    results = await _get_classifier(request).classify_image(data, top_k=settings.top_k)
    return ClassifyImageResponse(
        tags=[ImageTag(label=r.label, index=r.index, confidence=r.confidence) for r in results],
    )


@public_router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        ready=_get_classifier(request).is_loaded,
        gpu=settings.device == "cuda",
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/model",
    response_model=ModelInfoResponse,
    summary="Describe the configured model",
)
async def model_info(request: Request) -> ModelInfoResponse:
    """Return the model name, load state and label count."""
    settings = _get_settings(request)
    classifier = _get_classifier(request)
    return ModelInfoResponse(
        name=classifier.model_name,
        loaded=classifier.is_loaded,
        label_count=len(classifier.labels),
        source=settings.model_repo_id or settings.resources_dir,
    )
