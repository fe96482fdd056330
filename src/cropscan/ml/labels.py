"""Class label table, index-aligned with the classifier's output vector.

Index ``i`` names output neuron ``i``. Nothing verifies that correspondence at
runtime; the bundled model and ``DEFAULT_LABELS`` must be exported together.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from pathlib import Path
from typing import TYPE_CHECKING

from cropscan.errors import ConfigurationError, LabelIndexError

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

logger = logging.getLogger(__name__)

DEFAULT_LABELS: tuple[str, ...] = (
    "Cashew - Anthracnose",
    "Cashew - Gumosis",
    "Cashew - Healthy",
    "Cashew - Leaf Miner",
    "Cashew - Red Rust",
    "Cassava - Bacterial Blight",
    "Cassava - Brown Spot",
    "Cassava - Green Mite",
    "Cassava - Healthy",
    "Cassava - Mosaic",
    "Maize - Fall Armyworm",
    "Maize - Grasshopper",
    "Maize - Healthy",
    "Maize - Leaf Beetle",
    "Maize - Leaf Blight",
    "Maize - Leaf Spot",
    "Maize - Streak Virus",
    "Tomato - Healthy",
    "Tomato - Leaf Blight",
    "Tomato - Leaf Curl",
    "Tomato - Septoria Leaf Spot",
    "Tomato - Verticillium Wilt",
)


class LabelTable:
    """Immutable ordered sequence of class names."""

    __slots__ = ("_labels",)

    def __init__(self, labels: Iterable[str] = DEFAULT_LABELS) -> None:
        self._labels: tuple[str, ...] = tuple(labels)
        if not self._labels:
            raise ConfigurationError("Label table is empty")
        duplicates = sorted(label for label, count in Counter(self._labels).items() if count > 1)
        if duplicates:
            raise ConfigurationError(f"Duplicate labels: {', '.join(duplicates)}")

    @classmethod
    def from_json(cls, path: str | Path) -> LabelTable:
        """Load a label table from a JSON list of strings."""
        try:
            with Path(path).open(encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read label table {path}: {e}") from e
        if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
            raise ConfigurationError(f"{path} must contain a JSON list of strings")
        logger.info("Loaded %d labels from %s", len(data), path)
        return cls(data)

    def label_at(self, index: int) -> str:
        """Return the label for output neuron ``index``."""
        if not 0 <= index < len(self._labels):
            raise LabelIndexError(index, len(self._labels))
        return self._labels[index]

    def index_of(self, label: str) -> int:
        """Return the output index of ``label``.

        Raises:
            ValueError: If the label is not in the table.
        """
        return self._labels.index(label)

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    def __len__(self) -> int:
        return len(self._labels)

    def __iter__(self) -> Iterator[str]:
        return iter(self._labels)

    def __contains__(self, label: object) -> bool:
        return label in self._labels

    def __repr__(self) -> str:
        return f"LabelTable({len(self._labels)} labels)"
