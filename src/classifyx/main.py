"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from classifyx.api.routes import public_router, router
from classifyx.config import Settings, get_settings
from classifyx.errors import DecodeError, ModelMismatchError, ResourceLoadError
from classifyx.ml.engine import onnx_engine_factory
from classifyx.ml.image_classifier import ImageClassifier
from classifyx.ml.inference import InferencePool
from classifyx.ml.resources import ResourceLoader

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def build_classifier(settings: Settings, pool: InferencePool | None = None) -> ImageClassifier:
    """Wire the resource loader and ONNX engine into a classifier (not yet loaded)."""
    return ImageClassifier(
        ResourceLoader.from_settings(settings),
        onnx_engine_factory(settings),
        pool=pool,
        max_image_pixels=settings.max_image_pixels,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    logger.info(
        "Starting ClassifyX (device=%s, max_concurrent=%s, model=%s, source=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_file,
        settings.model_repo_id or settings.resources_dir,
    )

    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool
    classifier = build_classifier(settings, inference_pool)
    app.state.classifier = classifier

    if settings.preload:
        try:
            await classifier.ensure_loaded()
        except ResourceLoadError:
            # Not fatal: the next classification request retries the load.
            logger.exception("Preloading resources failed")

    logger.info("ClassifyX ready")
    yield

    logger.info("Shutting down ClassifyX")
    inference_pool.shutdown()
    logger.info("ClassifyX shutdown complete")


async def _resource_load_error_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})


async def _decode_error_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


async def _model_mismatch_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Model and labels are out of sync: %s", exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": str(exc)})


async def _timeout_error_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Inference queue is full, try again later"},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="ClassifyX",
        description="ImageNet image classification with an ONNX MobileNetV2 model",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(ResourceLoadError, _resource_load_error_handler)
    application.add_exception_handler(DecodeError, _decode_error_handler)
    application.add_exception_handler(ModelMismatchError, _model_mismatch_error_handler)
    application.add_exception_handler(TimeoutError, _timeout_error_handler)

    application.include_router(public_router)
    application.include_router(router)
    return application


app = create_app()
