"""API route definitions."""

from __future__ import annotations

import asyncio
import logging
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool

from cropscan.api.middleware import verify_api_key
from cropscan.api.schemas import (
    DetectRequest,
    DetectResponse,
    DiseaseMappingModel,
    DiseasesResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfoResponse,
    PredictionModel,
    RankedPredictionModel,
)
from cropscan.errors import InferenceError, NormalizationError
from cropscan.ml.disease_mapping import CropType
from cropscan.ml.model_manager import LoadStatus

if TYPE_CHECKING:
    from cropscan.config import Settings
    from cropscan.ml.disease_mapping import DiseaseMapping
    from cropscan.ml.inference import InferencePool
    from cropscan.ml.pipeline import Detection, DetectionPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

# Literal codes: Starlette renamed these constants across releases.
HTTP_413_TOO_LARGE = 413
HTTP_422_UNPROCESSABLE = 422

UPLOAD_CHUNK_SIZE = 64 * 1024

_DETECT_RESPONSES: dict[int | str, dict[str, object]] = {
    HTTP_422_UNPROCESSABLE: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_pipeline(request: Request) -> DetectionPipeline:
    pipeline: DetectionPipeline = request.app.state.pipeline
    return pipeline


def start_model_load(app: FastAPI) -> asyncio.Task[LoadStatus]:
    """Schedule a background model load and keep a reference to the task."""
    pipeline: DetectionPipeline = app.state.pipeline
    task = asyncio.create_task(pipeline.load_model())
    app.state.load_task = task
    return task


def _mapping_model(mapping: DiseaseMapping) -> DiseaseMappingModel:
    return DiseaseMappingModel(**mapping.to_dict())  # type: ignore[arg-type]


def _detect_response(detection: Detection) -> DetectResponse:
    prediction = detection.prediction
    return DetectResponse(
        prediction=PredictionModel(
            label=prediction.label,
            confidence=prediction.confidence,
            confidence_level=prediction.confidence_level,
            class_index=prediction.class_index,
            all_scores=list(prediction.all_scores),
            top_predictions=[
                RankedPredictionModel(label=p.label, confidence=p.confidence, class_index=p.class_index)
                for p in prediction.top_predictions
            ],
        ),
        mapping=_mapping_model(detection.mapping) if detection.mapping is not None else None,
        crop_type=detection.crop_type.value,
        is_healthy=detection.is_healthy,
    )


async def _run_detection(pipeline: DetectionPipeline, photo_ref: str) -> DetectResponse:
    try:
        detection = await pipeline.detect(photo_ref)
    except NormalizationError as e:
        logger.warning("Normalization failed for %s: %s", photo_ref, e)
        raise HTTPException(
            status_code=HTTP_422_UNPROCESSABLE,
            detail="Failed to analyze image, please retry",
        ) from e
    except InferenceError as e:
        logger.error("Inference failed for %s: %s", photo_ref, e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Prediction failed, please retry",
        ) from e
    except TimeoutError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Detector busy, please retry",
        ) from e

    if detection is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Model is not ready, please wait",
        )
    return _detect_response(detection)


@router.post(
    "/detect",
    response_model=DetectResponse,
    responses=_DETECT_RESPONSES,
    summary="Detect crop disease in a stored photo",
)
async def detect(body: DetectRequest, request: Request) -> DetectResponse:
    """Classify the photo at ``photo_ref`` and map the result."""
    return await _run_detection(_get_pipeline(request), body.photo_ref)


@router.post(
    "/classify-image",
    response_model=DetectResponse,
    responses={
        **_DETECT_RESPONSES,
        HTTP_413_TOO_LARGE: {"model": ErrorResponse},
    },
    summary="Detect crop disease in an uploaded photo",
)
async def classify_image(file: UploadFile, request: Request) -> DetectResponse:
    """Store an uploaded photo in a temporary file and classify it."""
    settings = _get_settings(request)
    pipeline = _get_pipeline(request)
    if not pipeline.status().ready:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Model is not ready, please wait",
        )

    photo_path = await _save_upload(file, settings.max_file_size)
    try:
        return await _run_detection(pipeline, str(photo_path))
    finally:
        await run_in_threadpool(photo_path.unlink, missing_ok=True)


async def _save_upload(file: UploadFile, limit: int) -> Path:
    """Stream an upload into a temporary file, rejecting it once it exceeds ``limit`` bytes."""
    suffix = Path(file.filename or "").suffix or ".img"
    tmp = await run_in_threadpool(tempfile.NamedTemporaryFile, suffix=suffix, delete=False)
    photo_path = Path(tmp.name)
    size = 0
    try:
        while chunk := await file.read(UPLOAD_CHUNK_SIZE):
            size += len(chunk)
            if size > limit:
                raise HTTPException(
                    status_code=HTTP_413_TOO_LARGE,
                    detail=f"Image exceeds {limit} bytes",
                )
            await run_in_threadpool(tmp.write, chunk)
    except BaseException:
        await run_in_threadpool(tmp.close)
        await run_in_threadpool(photo_path.unlink, missing_ok=True)
        raise
    await run_in_threadpool(tmp.close)
    return photo_path


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return readiness, loader progress, and pool counters."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    pipeline = _get_pipeline(request)
    load_status = pipeline.status()
    return HealthResponse(
        status="ok" if load_status.error is None else "degraded",
        ready=load_status.ready,
        progress=load_status.progress,
        error=load_status.error,
        gpu=settings.device == "cuda",
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
        live_buffers=pipeline.tracker.live_count,
    )


@router.get(
    "/model",
    response_model=ModelInfoResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Describe the loaded model",
)
async def model_info(request: Request) -> ModelInfoResponse:
    """Return the declared input/output metadata of the loaded model."""
    pipeline = _get_pipeline(request)
    handle = pipeline.status().handle
    if handle is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Model is not ready",
        )
    return ModelInfoResponse(**handle.describe(), num_classes=len(pipeline.labels))  # type: ignore[arg-type]


@router.post(
    "/model/reload",
    response_model=HealthResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={status.HTTP_409_CONFLICT: {"model": ErrorResponse}},
    summary="Retry loading the model",
)
async def reload_model(request: Request) -> HealthResponse:
    """Start a fresh load attempt unless one is already running."""
    pipeline = _get_pipeline(request)
    task: asyncio.Task[LoadStatus] | None = getattr(request.app.state, "load_task", None)
    if task is not None and not task.done():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Model load already in progress",
        )
    start_model_load(request.app)
    return await health(request)


@router.get(
    "/diseases",
    response_model=DiseasesResponse,
    summary="List the label-to-disease mapping table",
)
async def list_diseases(request: Request, crop: CropType | None = None) -> DiseasesResponse:
    """Return every mapping, optionally restricted to one crop."""
    mapper = _get_pipeline(request).mapper
    mappings = mapper.diseases_for_crop(crop) if crop is not None else mapper.mappings
    return DiseasesResponse(diseases=[_mapping_model(m) for m in mappings])
