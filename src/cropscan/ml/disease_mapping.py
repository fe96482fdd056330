"""Translation between classifier labels and the disease-information service.

Local labels look like ``"Cashew - Anthracnose"``: a crop name, a
``" - "`` separator and a condition. A condition of ``"Healthy"`` marks the
healthy class of that crop. External identifiers (``"anthracnose"``,
``"healthy"``) are scoped per crop: several crops share ``"healthy"`` and
``"leaf_blight"``, so the reverse index is keyed by ``(crop, identifier)``.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

LABEL_SEPARATOR = " - "
HEALTHY_CONDITION = "healthy"


class CropType(StrEnum):
    CASHEW = "cashew"
    CASSAVA = "cassava"
    MAIZE = "maize"
    TOMATO = "tomato"


DEFAULT_CROP_TYPE = CropType.MAIZE


@dataclass(frozen=True)
class DiseaseMapping:
    """One classifier label and its counterpart in the external vocabulary."""

    local_label: str
    external_disease_id: str
    crop_type: CropType
    is_healthy: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "local_label": self.local_label,
            "external_disease_id": self.external_disease_id,
            "crop_type": self.crop_type.value,
            "is_healthy": self.is_healthy,
        }


@dataclass(frozen=True)
class ValidationReport:
    """Outcome of :meth:`LabelMapper.validate`."""

    valid: bool
    errors: list[str] = field(default_factory=list)


def _m(label: str, external_id: str, crop: CropType, healthy: bool = False) -> DiseaseMapping:
    return DiseaseMapping(label, external_id, crop, healthy)


DEFAULT_MAPPINGS: tuple[DiseaseMapping, ...] = (
    _m("Cashew - Anthracnose", "anthracnose", CropType.CASHEW),
    _m("Cashew - Gumosis", "gumosis", CropType.CASHEW),
    _m("Cashew - Healthy", "healthy", CropType.CASHEW, healthy=True),
    _m("Cashew - Leaf Miner", "leaf_miner", CropType.CASHEW),
    _m("Cashew - Red Rust", "red_rust", CropType.CASHEW),
    _m("Cassava - Bacterial Blight", "bacterial_blight", CropType.CASSAVA),
    _m("Cassava - Brown Spot", "brown_spot", CropType.CASSAVA),
    _m("Cassava - Green Mite", "green_mite", CropType.CASSAVA),
    _m("Cassava - Healthy", "healthy", CropType.CASSAVA, healthy=True),
    _m("Cassava - Mosaic", "mosaic", CropType.CASSAVA),
    _m("Maize - Fall Armyworm", "fall_armyworm", CropType.MAIZE),
    _m("Maize - Grasshopper", "grasshopper", CropType.MAIZE),
    _m("Maize - Healthy", "healthy", CropType.MAIZE, healthy=True),
    _m("Maize - Leaf Beetle", "leaf_beetle", CropType.MAIZE),
    _m("Maize - Leaf Blight", "leaf_blight", CropType.MAIZE),
    _m("Maize - Leaf Spot", "leaf_spot", CropType.MAIZE),
    _m("Maize - Streak Virus", "streak_virus", CropType.MAIZE),
    _m("Tomato - Healthy", "healthy", CropType.TOMATO, healthy=True),
    _m("Tomato - Leaf Blight", "leaf_blight", CropType.TOMATO),
    _m("Tomato - Leaf Curl", "leaf_curl", CropType.TOMATO),
    _m("Tomato - Septoria Leaf Spot", "septoria_leaf_spot", CropType.TOMATO),
    _m("Tomato - Verticillium Wilt", "verticillium_wilt", CropType.TOMATO),
)


def split_label(local_label: str) -> tuple[str, str]:
    """Split ``"Crop - Condition"`` into its two halves.

    Labels without a separator yield an empty condition.
    """
    crop, sep, condition = local_label.partition(LABEL_SEPARATOR)
    if not sep:
        return local_label.strip(), ""
    return crop.strip(), condition.strip()


def parse_crop_type(local_label: str) -> CropType | None:
    """Best-effort crop type from a label's crop prefix."""
    crop, _ = split_label(local_label)
    try:
        return CropType(crop.lower())
    except ValueError:
        pass
    lowered = local_label.lower()
    for crop_type in CropType:
        if crop_type.value in lowered:
            return crop_type
    return None


def slugify_condition(text: str) -> str:
    return re.sub(r"\s+", "_", text.strip().lower())


def names_healthy_condition(local_label: str) -> bool:
    _, condition = split_label(local_label)
    return condition.lower() == HEALTHY_CONDITION


class LabelMapper:
    """Bidirectional lookup over an immutable mapping table."""

    def __init__(self, mappings: Iterable[DiseaseMapping] = DEFAULT_MAPPINGS) -> None:
        self._mappings: tuple[DiseaseMapping, ...] = tuple(mappings)
        self._by_local: dict[str, DiseaseMapping] = {}
        self._by_external: dict[tuple[CropType, str], DiseaseMapping] = {}
        self._by_external_id: dict[str, list[DiseaseMapping]] = defaultdict(list)

        # First entry wins on duplicates; validate() reports them.
        for mapping in self._mappings:
            self._by_local.setdefault(mapping.local_label, mapping)
            self._by_external.setdefault((mapping.crop_type, mapping.external_disease_id), mapping)
            self._by_external_id[mapping.external_disease_id].append(mapping)

    @property
    def mappings(self) -> tuple[DiseaseMapping, ...]:
        return self._mappings

    def __len__(self) -> int:
        return len(self._mappings)

    # -- Lookups ------------------------------------------------------------

    def to_external(self, local_label: str) -> DiseaseMapping | None:
        """Return the mapping for a classifier label, or None if unmapped."""
        return self._by_local.get(local_label)

    def to_local(self, external_id: str, crop_type: CropType | str | None = None) -> DiseaseMapping | None:
        """Return the mapping for an external identifier.

        Without ``crop_type`` the identifier must be unique across crops;
        shared identifiers such as ``"healthy"`` then resolve to None.
        """
        if crop_type is not None:
            try:
                crop = CropType(crop_type)
            except ValueError:
                return None
            return self._by_external.get((crop, external_id))

        candidates = self._by_external_id.get(external_id, [])
        if len(candidates) == 1:
            return candidates[0]
        if candidates:
            logger.debug("External id %r is shared by %d crops", external_id, len(candidates))
        return None

    def crop_type_of(self, local_label: str) -> CropType:
        """Crop type for a label, parsed from its prefix when unmapped.

        Falls back to ``DEFAULT_CROP_TYPE`` when nothing matches.
        """
        mapping = self.to_external(local_label)
        if mapping is not None:
            return mapping.crop_type
        parsed = parse_crop_type(local_label)
        if parsed is None:
            logger.warning("Cannot parse crop from %r, defaulting to %s", local_label, DEFAULT_CROP_TYPE)
            return DEFAULT_CROP_TYPE
        return parsed

    def is_healthy(self, local_label: str) -> bool:
        """True only for a mapped label recorded as healthy."""
        mapping = self.to_external(local_label)
        return mapping.is_healthy if mapping is not None else False

    def is_known_label(self, local_label: str) -> bool:
        return local_label in self._by_local

    def external_disease_of(self, local_label: str) -> str:
        """External identifier for a label, derived from its condition when unmapped."""
        mapping = self.to_external(local_label)
        if mapping is not None:
            return mapping.external_disease_id
        _, condition = split_label(local_label)
        return slugify_condition(condition or local_label)

    def readable_name(self, external_id: str, crop_type: CropType | str | None = None) -> str:
        """Human-readable name for an external identifier."""
        mapping = self.to_local(external_id, crop_type)
        if mapping is not None:
            return mapping.local_label
        return " ".join(word.capitalize() for word in external_id.split("_"))

    def diseases_for_crop(self, crop_type: CropType | str) -> list[DiseaseMapping]:
        crop = CropType(crop_type)
        return [m for m in self._mappings if m.crop_type == crop]

    def supported_crop_types(self) -> list[CropType]:
        return list(dict.fromkeys(m.crop_type for m in self._mappings))

    # -- Validation ---------------------------------------------------------

    def validate(self, labels: Iterable[str] | None = None) -> ValidationReport:
        """Check the table's self-consistency and, optionally, label coverage.

        Args:
            labels: The classifier's label vocabulary. When given, every label
                must have exactly one mapping and every mapping must name a
                label.
        """
        errors: list[str] = []
        local_seen: set[str] = set()
        external_seen: set[tuple[CropType, str]] = set()
        healthy_per_crop: dict[CropType, list[str]] = defaultdict(list)

        for mapping in self._mappings:
            if mapping.local_label in local_seen:
                errors.append(f"Duplicate local label: {mapping.local_label}")
            local_seen.add(mapping.local_label)

            key = (mapping.crop_type, mapping.external_disease_id)
            if key in external_seen:
                errors.append(f"Duplicate external id for {mapping.crop_type}: {mapping.external_disease_id}")
            external_seen.add(key)

            expected_crop, _ = split_label(mapping.local_label)
            expected_crop = expected_crop.lower()
            actual_crop = mapping.crop_type.value
            if not expected_crop:
                errors.append(f"Missing crop prefix in label: {mapping.local_label!r}")
            elif expected_crop not in actual_crop and actual_crop not in expected_crop:
                errors.append(
                    f"Crop type mismatch for {mapping.local_label}: expected {expected_crop}, got {actual_crop}"
                )

            if mapping.is_healthy != names_healthy_condition(mapping.local_label):
                errors.append(f"Healthy flag mismatch for {mapping.local_label}: is_healthy={mapping.is_healthy}")
            if mapping.is_healthy:
                healthy_per_crop[mapping.crop_type].append(mapping.local_label)

        for crop, healthy_labels in healthy_per_crop.items():
            if len(healthy_labels) > 1:
                errors.append(f"Multiple healthy records for {crop}: {', '.join(healthy_labels)}")

        if labels is not None:
            label_list = list(labels)
            label_set = set(label_list)
            for label in label_list:
                if label not in local_seen:
                    errors.append(f"Missing mapping for model label: {label}")
            for mapping in self._mappings:
                if mapping.local_label not in label_set:
                    errors.append(f"Mapping exists for non-existent model label: {mapping.local_label}")

        return ValidationReport(valid=not errors, errors=errors)

    def summary(self) -> str:
        """Markdown summary of the table grouped by crop."""
        lines = ["# Disease Mapping Summary", ""]
        for crop in self.supported_crop_types():
            lines.append(f"## {crop.value.upper()}")
            lines.append("")
            for mapping in self.diseases_for_crop(crop):
                status = "healthy" if mapping.is_healthy else "disease"
                lines.append(f"- **{mapping.local_label}** -> `{mapping.external_disease_id}` ({status})")
            lines.append("")
        return "\n".join(lines)
