"""Crop disease classification: forward pass and score decoding.

Scores are used exactly as the model emits them; no softmax is applied. If
the exported model ends in a softmax the confidence is a probability,
otherwise it is only a relative ranking signal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from cropscan.errors import InsufficientOutputClasses, NonFiniteScore
from cropscan.ml.model_manager import ModelState, Ready
from cropscan.ml.tensors import BufferTracker, Tensor, TensorScope

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from cropscan.ml.labels import LabelTable

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE = 0.9
MODERATE_CONFIDENCE = 0.75
MIN_CONFIDENCE_THRESHOLD = 0.6


@dataclass(frozen=True)
class RankedPrediction:
    """A single entry of the top-k list."""

    label: str
    confidence: float
    class_index: int


@dataclass(frozen=True)
class PredictionResult:
    """Outcome of one forward pass."""

    label: str
    confidence: float
    class_index: int
    all_scores: tuple[float, ...]
    top_predictions: tuple[RankedPrediction, ...]

    @property
    def confidence_level(self) -> str:
        return confidence_level(self.confidence)

    def is_confident(self, threshold: float = MIN_CONFIDENCE_THRESHOLD) -> bool:
        return self.confidence >= threshold

    def to_dict(self) -> dict[str, object]:
        return {
            "label": self.label,
            "confidence": self.confidence,
            "class_index": self.class_index,
            "all_scores": list(self.all_scores),
            "top_predictions": [
                {"label": p.label, "confidence": p.confidence, "class_index": p.class_index}
                for p in self.top_predictions
            ],
        }


def confidence_level(confidence: float) -> str:
    """Coarse banding of a confidence value for display."""
    if confidence >= HIGH_CONFIDENCE:
        return "high"
    if confidence >= MODERATE_CONFIDENCE:
        return "moderate"
    return "low"


def reconcile_scores(raw: Tensor, num_classes: int, scope: TensorScope) -> NDArray[np.float32]:
    """Reduce a raw model output to exactly ``num_classes`` scores.

    1. Flatten the output; done if it already has ``num_classes`` values.
    2. Otherwise squeeze singleton dimensions when the output has more than
       one non-batch dimension, and re-read.
    3. Keep the first ``num_classes`` values when there are more.
    4. Fail when there are fewer.

    Raises:
        InsufficientOutputClasses: Fewer scores than classes.
    """
    scores = np.asarray(raw.data, dtype=np.float32).reshape(-1)
    if scores.size == num_classes:
        return scores

    logger.warning("Got %d scores, expected %d", scores.size, num_classes)
    if raw.data.ndim - 1 > 1:
        squeezed = scope.track(np.squeeze(raw.data), "squeezed")
        logger.debug("Squeezed output shape %s -> %s", raw.shape, squeezed.shape)
        scores = np.asarray(squeezed.data, dtype=np.float32).reshape(-1)

    if scores.size > num_classes:
        logger.info("Trimming scores to first %d values", num_classes)
        return scores[:num_classes]
    if scores.size < num_classes:
        raise InsufficientOutputClasses(int(scores.size), num_classes)
    return scores


def rank_scores(scores: NDArray[np.float32], labels: LabelTable, top_k: int) -> tuple[RankedPrediction, ...]:
    """Top-k predictions by descending score; equal scores keep index order."""
    order = sorted(range(len(scores)), key=lambda i: -float(scores[i]))
    return tuple(
        RankedPrediction(label=labels.label_at(i), confidence=float(scores[i]), class_index=i) for i in order[:top_k]
    )


class InferenceEngine:
    """Runs the classifier and decodes its output against a label table."""

    def __init__(self, labels: LabelTable, tracker: BufferTracker, top_k: int = 3) -> None:
        self._labels = labels
        self._tracker = tracker
        self._top_k = top_k

    @property
    def num_classes(self) -> int:
        return len(self._labels)

    def predict(self, tensor: Tensor, state: ModelState | None) -> PredictionResult | None:
        """Classify a normalized input tensor.

        The input tensor is consumed: it is released before this returns or
        raises.

        Returns:
            The prediction, or None when the model is not ready.

        Raises:
            InsufficientOutputClasses: The model emitted too few scores.
            NonFiniteScore: A reconciled score is NaN or infinite.
        """
        with TensorScope(self._tracker) as scope:
            scope.adopt(tensor)
            if not isinstance(state, Ready):
                logger.info("Model not ready, skipping prediction")
                return None

            handle = state.handle
            logger.debug("Running model on input shape %s", tensor.shape)
            raw = scope.track(handle.run(tensor.data), "output")
            scores = reconcile_scores(raw, self.num_classes, scope)

            if not np.all(np.isfinite(scores)):
                bad = [i for i, value in enumerate(scores) if not np.isfinite(value)]
                raise NonFiniteScore(f"Non-finite scores at indices {bad}")

            class_index = int(np.argmax(scores))
            result = PredictionResult(
                label=self._labels.label_at(class_index),
                confidence=float(scores[class_index]),
                class_index=class_index,
                all_scores=tuple(float(s) for s in scores),
                top_predictions=rank_scores(scores, self._labels, self._top_k),
            )

        logger.info("Prediction: %s (%.2f%%)", result.label, result.confidence * 100)
        return result
