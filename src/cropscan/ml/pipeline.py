"""Photo-to-disease detection: the entry point used by the API and CLI.

photo reference -> ImageNormalizer -> InferenceEngine -> LabelMapper
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from cropscan.errors import ConfigurationError
from cropscan.ml.disease_mapping import CropType, DiseaseMapping, LabelMapper
from cropscan.ml.image_classifier import InferenceEngine, PredictionResult
from cropscan.ml.labels import LabelTable
from cropscan.ml.model_manager import LoadStatus, ModelLoader, Ready
from cropscan.ml.preprocessing import ImageNormalizer
from cropscan.ml.tensors import BufferTracker, Tensor

if TYPE_CHECKING:
    from cropscan.config import Settings
    from cropscan.ml.inference import InferencePool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Detection:
    """A prediction together with its external-vocabulary mapping.

    ``mapping`` is None when the predicted label has no counterpart; the
    caller should then skip the remote disease lookups.
    """

    prediction: PredictionResult
    mapping: DiseaseMapping | None
    crop_type: CropType
    is_healthy: bool


def load_labels(settings: Settings) -> LabelTable:
    if settings.labels_path:
        return LabelTable.from_json(settings.labels_path)
    return LabelTable()


class DetectionPipeline:
    """Owns the loader, normalizer, and engine for one model bundle."""

    def __init__(
        self,
        settings: Settings,
        pool: InferencePool,
        *,
        labels: LabelTable | None = None,
        mapper: LabelMapper | None = None,
        tracker: BufferTracker | None = None,
        loader: ModelLoader | None = None,
        normalizer: ImageNormalizer | None = None,
    ) -> None:
        self._settings = settings
        self._pool = pool
        self.labels = labels if labels is not None else load_labels(settings)
        self.mapper = mapper if mapper is not None else LabelMapper()
        self.tracker = tracker or BufferTracker()
        self._loader = loader or ModelLoader(settings, len(self.labels), tracker=self.tracker)
        self._normalizer = normalizer or ImageNormalizer.from_settings(settings, self.tracker)
        self._engine = InferenceEngine(self.labels, self.tracker, top_k=settings.top_k)

    def check_configuration(self) -> None:
        """Fail fast when the label table and mapping table disagree.

        Raises:
            ConfigurationError: Listing every inconsistency found.
        """
        errors: list[str] = []
        if len(self.labels) != self._settings.num_classes:
            errors.append(f"Label table has {len(self.labels)} labels, configured for {self._settings.num_classes}")
        errors.extend(self.mapper.validate(self.labels).errors)
        if errors:
            raise ConfigurationError("; ".join(errors))
        logger.info("Label table and mapping table agree (%d classes)", len(self.labels))

    def status(self) -> LoadStatus:
        return self._loader.status()

    async def load_model(self) -> LoadStatus:
        """Load the model off the event loop; waits for a free slot indefinitely."""
        state = await self._pool.run(self._loader.load, timeout=0)
        return LoadStatus.from_state(state)

    async def normalize_and_predict(self, photo_ref: str) -> PredictionResult | None:
        """Classify the photo at ``photo_ref``.

        Returns:
            The prediction, or None while the model is not ready.

        Raises:
            NormalizationError: The photo could not be turned into a tensor.
            InferenceError: The model output could not be decoded.
        """
        state = self._loader.state
        if not isinstance(state, Ready):
            logger.info("Model not ready (%s), skipping %s", state.phase.value, photo_ref)
            return None

        tensor = await self._pool.run(self._normalizer.normalize, photo_ref, discard=Tensor.release)
        # predict() consumes the tensor; cleanup covers a predict that never runs.
        return await self._pool.run(self._engine.predict, tensor, state, cleanup=tensor.release)

    async def detect(self, photo_ref: str) -> Detection | None:
        """Classify a photo and map the label to the external vocabulary."""
        prediction = await self.normalize_and_predict(photo_ref)
        if prediction is None:
            return None

        mapping = self.mapper.to_external(prediction.label)
        if mapping is None:
            logger.warning("No mapping for label %r", prediction.label)
        return Detection(
            prediction=prediction,
            mapping=mapping,
            crop_type=self.mapper.crop_type_of(prediction.label),
            is_healthy=self.mapper.is_healthy(prediction.label),
        )
