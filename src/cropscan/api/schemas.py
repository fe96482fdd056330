"""Pydantic request/response schemas for the CropScan API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class RankedPredictionModel(BaseModel):
    """One entry of the top-k list."""

    label: str
    confidence: float
    class_index: int = Field(ge=0)


class PredictionModel(BaseModel):
    """Raw classifier output decoded against the label table."""

    label: str
    confidence: float = Field(description="Score of the winning class (not softmax-calibrated)")
    confidence_level: str = Field(description="'high', 'moderate', or 'low'")
    class_index: int = Field(ge=0)
    all_scores: list[float]
    top_predictions: list[RankedPredictionModel]


class DiseaseMappingModel(BaseModel):
    """A classifier label mapped to the disease-information vocabulary."""

    local_label: str
    external_disease_id: str
    crop_type: str
    is_healthy: bool


class DetectRequest(BaseModel):
    """Detection request for a photo already on local storage."""

    photo_ref: str = Field(description="Filesystem path or file:// URI of the photo")


class DetectResponse(BaseModel):
    """Prediction plus its mapping; ``mapping`` is null for unmapped labels."""

    prediction: PredictionModel
    mapping: DiseaseMappingModel | None
    crop_type: str
    is_healthy: bool


class HealthResponse(BaseModel):
    """Health check response, polled to gate detection."""

    status: str = "ok"
    ready: bool
    progress: str
    error: str | None
    gpu: bool
    concurrent_requests: int
    queue_depth: int
    live_buffers: int


class ModelInfoResponse(BaseModel):
    """Declared metadata of the loaded model."""

    input_name: str
    output_name: str
    input_shape: list[int | str | None] | None
    output_shape: list[int | str | None] | None
    input_size: list[int]
    channels: int
    num_classes: int


class DiseasesResponse(BaseModel):
    """Response for the mapping table listing endpoint."""

    diseases: list[DiseaseMappingModel]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
