"""Environment-based configuration for CropScan."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from CROPSCAN_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CROPSCAN_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency (one in-flight inference by default)
    max_concurrent: int = Field(default=1, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0.0)

    # Model bundle
    model_dir: str = "models"
    model_filename: str = "crop_disease.onnx"
    weight_shards: list[str] = Field(default_factory=list)
    model_repo_id: str | None = None
    labels_path: str | None = None
    smoke_test: bool = True

    # Input geometry
    input_height: int = Field(default=224, ge=1)
    input_width: int = Field(default=224, ge=1)
    input_channels: int = Field(default=3, ge=1)
    num_classes: int = Field(default=22, ge=1)
    top_k: int = Field(default=3, ge=1)

    # Image normalization
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.2, ge=0.0)
    camera_settle_delay: float = Field(default=0.1, ge=0.0)
    jpeg_quality: int = Field(default=80, ge=1, le=95)
    crop_to_aspect: bool = False
    direct_read_markers: list[str] = Field(
        default_factory=lambda: ["files/crop_image_", "files/gallery_image_"],
    )
    camera_markers: list[str] = Field(default_factory=lambda: ["Camera/"])

    # Input limits
    max_file_size: int = Field(default=20_971_520, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
