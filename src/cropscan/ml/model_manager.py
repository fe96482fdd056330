"""Model loader: locate, assemble, validate, and smoke-test the ONNX classifier.

The bundle is a graph file plus optional external weight shards shipped next
to it. Loading walks through a fixed series of phases and ends in either
``Ready(handle)`` or ``Failed(message)``. There is no automatic retry; callers
may call :meth:`ModelLoader.load` again.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions, get_available_providers
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from cropscan.errors import ModelLoadError, ModelValidationError
from cropscan.ml.tensors import BufferTracker, TensorScope

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

    from cropscan.config import Settings

logger = logging.getLogger(__name__)

Shape = tuple[int | str | None, ...]


# ---------------------------------------------------------------------------
# Handle and lifecycle state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelHandle:
    """A ready inference session and its declared input/output metadata."""

    session: InferenceSession
    input_name: str
    output_name: str
    input_shape: Shape | None
    output_shape: Shape | None
    input_size: tuple[int, int]
    channels: int

    def run(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run one forward pass and return the first output."""
        outputs = self.session.run([self.output_name], {self.input_name: batch})
        return np.asarray(outputs[0])

    def describe(self) -> dict[str, object]:
        return {
            "input_name": self.input_name,
            "output_name": self.output_name,
            "input_shape": _jsonable(self.input_shape),
            "output_shape": _jsonable(self.output_shape),
            "input_size": list(self.input_size),
            "channels": self.channels,
        }


class LoadPhase(StrEnum):
    INITIALIZING = "Initializing"
    LOADING_FILES = "Loading model files"
    ASSEMBLING = "Assembling model"
    VALIDATING = "Validating model"
    TESTING = "Testing model"
    READY = "Ready"
    FAILED = "Failed"


@dataclass(frozen=True)
class Loading:
    phase: LoadPhase = LoadPhase.INITIALIZING


@dataclass(frozen=True)
class Ready:
    handle: ModelHandle
    phase: LoadPhase = LoadPhase.READY


@dataclass(frozen=True)
class Failed:
    message: str
    phase: LoadPhase = LoadPhase.FAILED


ModelState = Loading | Ready | Failed


@dataclass(frozen=True)
class LoadStatus:
    """Flat view of a :data:`ModelState` for pollers."""

    ready: bool
    error: str | None
    progress: str
    handle: ModelHandle | None

    @classmethod
    def from_state(cls, state: ModelState) -> LoadStatus:
        if isinstance(state, Ready):
            return cls(ready=True, error=None, progress=state.phase.value, handle=state.handle)
        if isinstance(state, Failed):
            return cls(ready=False, error=state.message, progress=state.phase.value, handle=None)
        return cls(ready=False, error=None, progress=state.phase.value, handle=None)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


class ModelLoader:
    """Builds a :class:`ModelHandle` from the bundled model files."""

    def __init__(
        self,
        settings: Settings,
        num_classes: int | None = None,
        *,
        tracker: BufferTracker | None = None,
        on_progress: Callable[[LoadPhase], object] | None = None,
    ) -> None:
        self._settings = settings
        self._num_classes = num_classes if num_classes is not None else settings.num_classes
        self._tracker = tracker or BufferTracker()
        self._on_progress = on_progress
        self._model_dir = Path(settings.model_dir)

        self._lock = threading.Lock()
        self._state: ModelState = Loading()

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()
        self._rng = np.random.default_rng()

    # -- Public API ---------------------------------------------------------

    @property
    def state(self) -> ModelState:
        with self._lock:
            return self._state

    def status(self) -> LoadStatus:
        return LoadStatus.from_state(self.state)

    @property
    def model_path(self) -> Path:
        return self._model_dir / self._settings.model_filename

    def load(self) -> ModelState:
        """Load the bundle and return the terminal state (Ready or Failed)."""
        try:
            self._advance(LoadPhase.INITIALIZING)
            providers = self._resolve_providers()

            self._advance(LoadPhase.LOADING_FILES)
            model_path = self._locate_bundle()

            self._advance(LoadPhase.ASSEMBLING)
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=providers,
            )

            self._advance(LoadPhase.VALIDATING)
            handle = self._validate(session)

            if self._settings.smoke_test:
                self._advance(LoadPhase.TESTING)
                if not self._smoke_test(handle):
                    logger.warning("Model smoke test failed, continuing anyway")
        except Exception as e:  # noqa: BLE001
            logger.exception("Error loading model")
            failed = Failed(message=str(e) or type(e).__name__)
            self._set_state(failed)
            return failed

        ready = Ready(handle=handle)
        self._set_state(ready)
        logger.info("Model ready (input=%s, output=%s)", handle.input_shape, handle.output_shape)
        return ready

    # -- Phases -------------------------------------------------------------

    def _resolve_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        available = set(get_available_providers())
        providers = [p for p in self._providers if _provider_name(p) in available]
        dropped = [_provider_name(p) for p in self._providers if _provider_name(p) not in available]
        if dropped:
            logger.warning("Execution providers not available, skipping: %s", ", ".join(dropped))
        if not providers:
            providers = ["CPUExecutionProvider"]
        logger.info("ONNX Runtime providers: %s", [_provider_name(p) for p in providers])
        return providers

    def _locate_bundle(self) -> Path:
        model_path = self.model_path
        if not model_path.is_file():
            raise ModelLoadError(f"Model file not found: {model_path}")
        missing = [shard for shard in self._settings.weight_shards if not (self._model_dir / shard).is_file()]
        if missing:
            raise ModelLoadError(f"Missing weight shards in {self._model_dir}: {', '.join(missing)}")
        logger.info("Model files found: %s (+%d weight shards)", model_path, len(self._settings.weight_shards))
        return model_path

    def _validate(self, session: InferenceSession) -> ModelHandle:
        inputs = session.get_inputs()
        outputs = session.get_outputs()
        logger.info("Model declares %d input(s), %d output(s)", len(inputs), len(outputs))
        if not inputs:
            raise ModelValidationError("Model has no inputs")
        if not outputs:
            raise ModelValidationError("Model has no outputs")

        for i, arg in enumerate(inputs):
            logger.info("  Input %d: name=%s shape=%s type=%s", i, arg.name, arg.shape, arg.type)
        for i, arg in enumerate(outputs):
            logger.info("  Output %d: name=%s shape=%s type=%s", i, arg.name, arg.shape, arg.type)

        input_shape = _declared_shape(inputs[0].shape)
        output_shape = _declared_shape(outputs[0].shape)
        self._check_input_shape(input_shape)
        self._check_output_shape(output_shape)

        height, width, channels = self._settings.input_height, self._settings.input_width, self._settings.input_channels
        return ModelHandle(
            session=session,
            input_name=inputs[0].name,
            output_name=outputs[0].name,
            input_shape=input_shape,
            output_shape=output_shape,
            input_size=(height, width),
            channels=channels,
        )

    def _check_input_shape(self, shape: Shape | None) -> None:
        if shape is None:
            logger.warning("Input shape is not reported, continuing")
            return
        if len(shape) != 4:
            logger.warning("Unexpected input rank %d, expected [batch, height, width, channels]", len(shape))
            return
        expected = (self._settings.input_height, self._settings.input_width, self._settings.input_channels)
        for axis, declared, want in zip(("height", "width", "channels"), shape[1:], expected, strict=True):
            if _is_static(declared) and declared != want:
                logger.warning("Unexpected input %s: %s, expected %d", axis, declared, want)

    def _check_output_shape(self, shape: Shape | None) -> None:
        if shape is None:
            logger.warning("Output shape is not reported, assuming dynamic shape")
            return
        classes = shape[-1]
        if not _is_static(classes):
            logger.warning("Output class dimension is dynamic (%s)", classes)
        elif classes != self._num_classes:
            logger.warning("Unexpected number of classes: %s, expected %d", classes, self._num_classes)

    def _smoke_test(self, handle: ModelHandle) -> bool:
        # Deferred: image_classifier imports this module.
        from cropscan.ml.image_classifier import reconcile_scores

        height, width = handle.input_size
        try:
            with TensorScope(self._tracker) as scope:
                probe = scope.track(
                    self._rng.standard_normal((1, height, width, handle.channels)).astype(np.float32),
                    "probe",
                )
                raw = scope.track(handle.run(probe.data), "probe_output")
                logger.info("Test prediction shape: %s", raw.shape)
                scores = reconcile_scores(raw, self._num_classes, scope)
                if not np.all(np.isfinite(scores)):
                    logger.error("Test output contains non-finite values")
                    return False
                logger.info("Model test successful, output sum: %.4f", float(scores.sum()))
                return True
        except Exception as e:  # noqa: BLE001
            logger.warning("Model test inconclusive: %s", e)
            return False

    # -- Internal -----------------------------------------------------------

    def _advance(self, phase: LoadPhase) -> None:
        logger.info("%s...", phase.value)
        self._set_state(Loading(phase))

    def _set_state(self, state: ModelState) -> None:
        with self._lock:
            self._state = state
        if self._on_progress is not None:
            self._on_progress(state.phase)

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts


# ---------------------------------------------------------------------------
# Build-time bundling
# ---------------------------------------------------------------------------


def fetch_model_bundle(settings: Settings) -> Path:
    """Download the graph and its weight shards into ``settings.model_dir``.

    Packaging step only; the runtime loader never touches the network.
    """
    if not settings.model_repo_id:
        raise ModelLoadError("CROPSCAN_MODEL_REPO_ID is not set")

    model_dir = Path(settings.model_dir)
    model_dir.mkdir(parents=True, exist_ok=True)
    model_path = Path(
        hf_hub_download(
            repo_id=settings.model_repo_id,
            filename=settings.model_filename,
            local_dir=str(model_dir),
        )
    )
    for shard in settings.weight_shards:
        hf_hub_download(repo_id=settings.model_repo_id, filename=shard, local_dir=str(model_dir))
    logger.info("Fetched %s (+%d weight shards) to %s", settings.model_filename, len(settings.weight_shards), model_dir)
    return model_path


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _provider_name(provider: str | tuple[str, dict[str, object]]) -> str:
    return provider if isinstance(provider, str) else provider[0]


def _declared_shape(shape: list[int | str | None] | None) -> Shape | None:
    """Shape as a tuple, or None when the exporter left it out."""
    if not shape:
        return None
    return tuple(shape)


def _is_static(dim: int | str | None) -> bool:
    return isinstance(dim, int) and dim > 0


def _jsonable(shape: Shape | None) -> list[int | str | None] | None:
    return list(shape) if shape is not None else None
