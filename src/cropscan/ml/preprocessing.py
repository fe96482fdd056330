"""Image normalization pipeline.

Turns a photo reference (filesystem path or ``file://`` URI) into a
``[1, H, W, 3]`` float32 tensor with values in [0, 1].

Two strategies share one decode stage:

* ``resize-then-decode``: open, resize to (W, H), JPEG-encode, decode.
  The open/resize/encode step is retried with backoff because a freshly
  captured photo may still be flushing to disk.
* ``read-then-decode-then-resize``: read the raw bytes, decode, and
  bilinear-resize the pixel array only if its size differs.

The primary strategy falls back to the second once its retries run out.
App-private files skip straight to the second.
"""

from __future__ import annotations

import io
import logging
import time
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import urlparse
from urllib.request import url2pathname

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from cropscan.errors import (
    DecodeFailure,
    EmptyReference,
    InvalidImageData,
    ReadFailure,
    RetryExhausted,
)
from cropscan.ml.retry import RetryPolicy, retry
from cropscan.ml.tensors import BufferTracker, Tensor, TensorScope

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import NDArray

    from cropscan.config import Settings

logger = logging.getLogger(__name__)

RGB_CHANNELS = 3


class Strategy(StrEnum):
    RESIZE_THEN_DECODE = "resize-then-decode"
    READ_THEN_DECODE_THEN_RESIZE = "read-then-decode-then-resize"


def resolve_photo_ref(photo_ref: str) -> Path:
    """Resolve a photo reference to a local path.

    Raises:
        EmptyReference: If the reference is blank.
        ReadFailure: If the reference uses a scheme other than ``file``.
    """
    if not photo_ref or not photo_ref.strip():
        raise EmptyReference("Empty or invalid photo reference")
    ref = photo_ref.strip()
    parsed = urlparse(ref)
    if parsed.scheme == "file":
        return Path(url2pathname(parsed.path))
    # Single-letter schemes are Windows drive letters.
    if len(parsed.scheme) > 1:
        raise ReadFailure(f"Cannot resolve photo reference with scheme '{parsed.scheme}': {ref}")
    return Path(ref)


def resize_bilinear(array: NDArray[np.generic], height: int, width: int) -> NDArray[np.float32]:
    """Bilinear resize of an HxWxC array (no corner alignment, no half-pixel offset)."""
    in_h, in_w = array.shape[:2]
    src = array.astype(np.float32, copy=False)

    ys = np.arange(height, dtype=np.float32) * (in_h / height)
    xs = np.arange(width, dtype=np.float32) * (in_w / width)
    y0 = np.minimum(np.floor(ys).astype(np.intp), in_h - 1)
    x0 = np.minimum(np.floor(xs).astype(np.intp), in_w - 1)
    y1 = np.minimum(y0 + 1, in_h - 1)
    x1 = np.minimum(x0 + 1, in_w - 1)
    wy = (ys - y0)[:, np.newaxis, np.newaxis]
    wx = (xs - x0)[np.newaxis, :, np.newaxis]

    top = src[y0][:, x0] * (1.0 - wx) + src[y0][:, x1] * wx
    bottom = src[y1][:, x0] * (1.0 - wx) + src[y1][:, x1] * wx
    return (top * (1.0 - wy) + bottom * wy).astype(np.float32, copy=False)


class ImageNormalizer:
    """Produces model input tensors from photo references."""

    def __init__(
        self,
        tracker: BufferTracker,
        *,
        height: int = 224,
        width: int = 224,
        policy: RetryPolicy | None = None,
        jpeg_quality: int = 80,
        crop_to_aspect: bool = False,
        direct_read_markers: Sequence[str] = (),
        camera_markers: Sequence[str] = (),
        camera_settle_delay: float = 0.0,
        max_file_size: int = 20_971_520,
        sleep: Callable[[float], object] = time.sleep,
    ) -> None:
        self._tracker = tracker
        self.height = height
        self.width = width
        self._policy = policy or RetryPolicy()
        self._jpeg_quality = jpeg_quality
        self._crop_to_aspect = crop_to_aspect
        self._direct_read_markers = tuple(direct_read_markers)
        self._camera_markers = tuple(camera_markers)
        self._camera_settle_delay = camera_settle_delay
        self._max_file_size = max_file_size
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        tracker: BufferTracker,
        sleep: Callable[[float], object] = time.sleep,
    ) -> ImageNormalizer:
        return cls(
            tracker,
            height=settings.input_height,
            width=settings.input_width,
            policy=RetryPolicy(settings.retry_max_attempts, settings.retry_base_delay),
            jpeg_quality=settings.jpeg_quality,
            crop_to_aspect=settings.crop_to_aspect,
            direct_read_markers=settings.direct_read_markers,
            camera_markers=settings.camera_markers,
            camera_settle_delay=settings.camera_settle_delay,
            max_file_size=settings.max_file_size,
            sleep=sleep,
        )

    # -- Public API ---------------------------------------------------------

    def choose_strategy(self, photo_ref: str) -> Strategy:
        """Pick the first strategy to try for a reference."""
        if any(marker in photo_ref for marker in self._direct_read_markers):
            return Strategy.READ_THEN_DECODE_THEN_RESIZE
        return Strategy.RESIZE_THEN_DECODE

    def normalize(self, photo_ref: str) -> Tensor:
        """Return a ``[1, H, W, 3]`` float32 tensor in [0, 1] owned by the caller.

        Raises:
            EmptyReference: Blank reference.
            ReadFailure: The file cannot be read.
            DecodeFailure: The bytes are not an image.
            InvalidImageData: The image is not 3-channel.
        """
        path = resolve_photo_ref(photo_ref)
        strategy = self.choose_strategy(photo_ref)
        logger.info("Normalizing %s via %s", path, strategy)

        with TensorScope(self._tracker) as scope:
            encoded: bytes | None = None
            if strategy is Strategy.RESIZE_THEN_DECODE:
                encoded = self._try_resize_and_encode(photo_ref, path)
                if encoded is None:
                    strategy = Strategy.READ_THEN_DECODE_THEN_RESIZE
                    logger.info("Falling back to %s for %s", strategy, path)
            if encoded is None:
                encoded = self._read_bytes(path)

            pixels = self._decode(encoded, scope)
            pixels = self._fit(pixels, scope)
            normalized = scope.track(self._finalize(pixels.data), "normalized")
            logger.debug("Normalized tensor shape: %s", normalized.shape)
            return scope.detach(normalized)

    # -- Stages -------------------------------------------------------------

    def _try_resize_and_encode(self, photo_ref: str, path: Path) -> bytes | None:
        if self._camera_settle_delay and any(marker in photo_ref for marker in self._camera_markers):
            logger.debug("Camera capture, waiting %.2fs for flush", self._camera_settle_delay)
            self._sleep(self._camera_settle_delay)
        try:
            return retry(lambda: self._resize_and_encode(path), self._policy, sleep=self._sleep)
        except RetryExhausted as e:
            logger.warning("Resize pipeline gave up on %s after %d attempts: %s", path, e.attempts, e.last_error)
            return None

    def _resize_and_encode(self, path: Path) -> bytes:
        size = (self.width, self.height)
        with Image.open(path) as img:
            oriented = ImageOps.exif_transpose(img)
            if self._crop_to_aspect:
                resized = ImageOps.fit(oriented, size, method=Image.Resampling.BILINEAR)
            else:
                resized = oriented.resize(size, Image.Resampling.BILINEAR)
            buffer = io.BytesIO()
            resized.save(buffer, format="JPEG", quality=self._jpeg_quality)
        return buffer.getvalue()

    def _read_bytes(self, path: Path) -> bytes:
        try:
            size = path.stat().st_size
            if size > self._max_file_size:
                raise ReadFailure(f"Image file {path} is {size} bytes, limit is {self._max_file_size}")
            return path.read_bytes()
        except OSError as e:
            raise ReadFailure(f"Failed to read image file {path}: {e}") from e

    def _decode(self, encoded: bytes, scope: TensorScope) -> Tensor:
        try:
            with Image.open(io.BytesIO(encoded)) as img:
                array = np.asarray(ImageOps.exif_transpose(img))
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise DecodeFailure(f"Could not decode image: {e}") from e

        pixels = scope.track(array, "decoded")
        if pixels.data.ndim != 3 or pixels.shape[-1] != RGB_CHANNELS:
            raise InvalidImageData(
                f"Invalid decoded tensor shape: {list(pixels.shape)}. "
                f"Expected [{self.height}, {self.width}, {RGB_CHANNELS}]"
            )
        return pixels

    def _fit(self, pixels: Tensor, scope: TensorScope) -> Tensor:
        height, width = pixels.shape[:2]
        if (height, width) == (self.height, self.width):
            return pixels
        logger.debug("Resizing %dx%d tensor to %dx%d", height, width, self.height, self.width)
        resized = scope.track(resize_bilinear(pixels.data, self.height, self.width), "resized")
        pixels.release()
        return resized

    @staticmethod
    def _finalize(pixels: NDArray[np.generic]) -> NDArray[np.float32]:
        batched = np.expand_dims(pixels, axis=0).astype(np.float32)
        return batched / np.float32(255.0)
