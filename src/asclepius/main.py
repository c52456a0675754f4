"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from asclepius.api.routes import router
from asclepius.config import get_settings
from asclepius.ml.acquisition import InMemoryMediaResolver
from asclepius.ml.errors import ModelLoadError
from asclepius.ml.inference import InferencePool
from asclepius.ml.pipeline import ClassificationPipeline

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model on startup, release it on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting Asclepius (device=%s, max_concurrent=%s, models_dir=%s)",
        settings.device,
        settings.max_concurrent,
        settings.models_dir,
    )

    media_resolver = InMemoryMediaResolver()
    app.state.media_resolver = media_resolver
    app.state.inference_pool = InferencePool(settings)

    try:
        app.state.pipeline = ClassificationPipeline.from_settings(settings, media_resolver)
    except ModelLoadError:
        logger.exception("Model failed to load; image classification is disabled")
        app.state.pipeline = None
    else:
        logger.info("Asclepius ready")

    yield

    logger.info("Shutting down Asclepius")
    app.state.inference_pool.shutdown()
    if app.state.pipeline is not None:
        app.state.pipeline.close()
    logger.info("Asclepius shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Asclepius",
        description="Classify skin-lesion images with a bundled on-device model",
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

    application.include_router(router)
    return application


app = create_app()
