"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from boxinspector.api.routes import public_router, router
from boxinspector.config import get_settings
from boxinspector.ml.inference import InferencePool
from boxinspector.ml.service import InferenceService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting Box Inspector (model=%s, max_concurrent=%s, request_timeout=%.1fs)",
        settings.model_base_url,
        settings.max_concurrent,
        settings.request_timeout,
    )

    inference_pool = InferencePool(settings)
    inference_service = InferenceService.from_settings(settings)
    app.state.inference_pool = inference_pool
    app.state.inference_service = inference_service

    if settings.preload_model:
        try:
            await inference_pool.run(inference_service.model_cache.acquire)
        except Exception:
            logger.exception("Model preload failed, aborting startup")
            inference_pool.shutdown()
            raise

    logger.info("Box Inspector ready")
    yield

    logger.info("Shutting down Box Inspector")
    inference_service.model_cache.shutdown()
    inference_pool.shutdown()
    logger.info("Box Inspector shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Box Inspector",
        description="Image classification API that flags damaged boxes",
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

    application.include_router(public_router)
    application.include_router(router)
    return application


app = create_app()
