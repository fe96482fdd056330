"""Exception hierarchy for CropScan.

Model-not-ready has no exception class: callers receive ``None`` instead.
"""

from __future__ import annotations


class CropScanError(Exception):
    """Base class for all CropScan errors."""


class ConfigurationError(CropScanError):
    """Label table and mapping table disagree, or a table is malformed."""


class LabelIndexError(CropScanError, IndexError):
    """A class index lies outside the label table."""

    def __init__(self, index: int, size: int) -> None:
        super().__init__(f"Label index {index} out of range [0, {size})")
        self.index = index
        self.size = size


# ---------------------------------------------------------------------------
# Model loading
# ---------------------------------------------------------------------------


class ModelLoadError(CropScanError):
    """The model bundle could not be turned into a usable session."""


class ModelValidationError(ModelLoadError):
    """The model declares a structure that makes inference impossible."""


# ---------------------------------------------------------------------------
# Image normalization
# ---------------------------------------------------------------------------


class NormalizationError(CropScanError):
    """A photo reference could not be turned into a model input tensor."""


class EmptyReference(NormalizationError):
    """The photo reference is blank."""


class ReadFailure(NormalizationError):
    """The photo bytes could not be read from storage."""


class DecodeFailure(NormalizationError):
    """The photo bytes are not a decodable image."""


class InvalidImageData(NormalizationError):
    """The decoded image is not a rank-3, 3-channel pixel array."""


# ---------------------------------------------------------------------------
# Inference
# ---------------------------------------------------------------------------


class InferenceError(CropScanError):
    """A forward pass produced an unusable result."""


class InsufficientOutputClasses(InferenceError):
    """The model produced fewer scores than there are labels."""

    def __init__(self, got: int, expected: int) -> None:
        super().__init__(f"Insufficient output classes: got {got}, need {expected}")
        self.got = got
        self.expected = expected


class NonFiniteScore(InferenceError):
    """A reconciled score is NaN or infinite."""


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


class RetryExhausted(CropScanError):
    """Every attempt allowed by a retry policy failed."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error
