"""Shared fixtures: settings, fake ONNX sessions, and generated photos."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

from cropscan.config import Settings
from cropscan.ml.labels import DEFAULT_LABELS
from cropscan.ml.model_manager import ModelHandle
from cropscan.ml.tensors import BufferTracker

if TYPE_CHECKING:
    from numpy.typing import NDArray


@dataclass
class FakeNodeArg:
    """Stand-in for onnxruntime.NodeArg."""

    name: str
    shape: list[int | str | None] | None
    type: str = "tensor(float)"


@dataclass
class FakeSession:
    """Stand-in for onnxruntime.InferenceSession with a fixed output."""

    output: NDArray[np.float32]
    inputs: list[FakeNodeArg] = field(
        default_factory=lambda: [FakeNodeArg("input_1", ["batch", 224, 224, 3])],
    )
    outputs: list[FakeNodeArg] = field(
        default_factory=lambda: [FakeNodeArg("predictions", ["batch", len(DEFAULT_LABELS)])],
    )
    calls: int = 0

    def get_inputs(self) -> list[FakeNodeArg]:
        return self.inputs

    def get_outputs(self) -> list[FakeNodeArg]:
        return self.outputs

    def run(self, output_names: list[str], feeds: dict[str, NDArray[np.float32]]) -> list[NDArray[np.float32]]:
        self.calls += 1
        return [self.output]


def make_settings(tmp_path: Path, **overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "model_dir": str(tmp_path / "models"),
        "model_filename": "crop_disease.onnx",
        "input_height": 16,
        "input_width": 16,
        "retry_base_delay": 0.0,
        "camera_settle_delay": 0.0,
        "max_concurrent": 1,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def write_model_file(settings: Settings) -> Path:
    model_dir = Path(settings.model_dir)
    model_dir.mkdir(parents=True, exist_ok=True)
    path = model_dir / settings.model_filename
    path.write_bytes(b"onnx-graph")
    return path


def one_hot(index: int, size: int = len(DEFAULT_LABELS), value: float = 0.9) -> NDArray[np.float32]:
    scores = np.full((1, size), (1.0 - value) / (size - 1), dtype=np.float32)
    scores[0, index] = value
    return scores


def make_handle(output: NDArray[np.float32], input_size: tuple[int, int] = (16, 16)) -> ModelHandle:
    session = MagicMock()
    session.run.return_value = [output]
    return ModelHandle(
        session=session,
        input_name="input_1",
        output_name="predictions",
        input_shape=("batch", input_size[0], input_size[1], 3),
        output_shape=("batch", output.shape[-1]),
        input_size=input_size,
        channels=3,
    )


def write_image(
    path: Path,
    size: tuple[int, int] = (40, 30),
    mode: str = "RGB",
    color: tuple[int, ...] | int = (10, 120, 200),
    fmt: str = "PNG",
) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new(mode, size, color).save(path, format=fmt)
    return path


@pytest.fixture()
def tracker() -> BufferTracker:
    return BufferTracker()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture()
def leaf_photo(tmp_path: Path) -> Path:
    return write_image(tmp_path / "DCIM" / "leaf.png")
