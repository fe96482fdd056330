"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cropscan.api.routes import router, start_model_load
from cropscan.config import get_settings
from cropscan.ml.inference import InferencePool
from cropscan.ml.pipeline import DetectionPipeline

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: check tables, start loading the model, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    logger.info(
        "Starting CropScan (device=%s, max_concurrent=%s, model=%s/%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_dir,
        settings.model_filename,
    )

    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool
    pipeline = DetectionPipeline(settings, inference_pool)
    pipeline.check_configuration()
    app.state.pipeline = pipeline

    # Readiness is polled through /health while the model loads.
    start_model_load(app)
    logger.info("CropScan accepting requests")
    yield

    logger.info("Shutting down CropScan")
    task: asyncio.Task[object] | None = getattr(app.state, "load_task", None)
    if task is not None and not task.done():
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    inference_pool.shutdown()
    logger.info("CropScan shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="CropScan",
        description="On-device crop disease detection: image normalization, ONNX inference, label mapping",
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
