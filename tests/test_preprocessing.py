"""Tests for the image normalization pipeline."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
from conftest import write_image

from cropscan.config import Settings
from cropscan.errors import DecodeFailure, EmptyReference, InvalidImageData, ReadFailure
from cropscan.ml.preprocessing import ImageNormalizer, Strategy, resize_bilinear, resolve_photo_ref
from cropscan.ml.retry import RetryPolicy
from cropscan.ml.tensors import BufferTracker

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_normalizer(tracker: BufferTracker, sleeps: list[float], **overrides: object) -> ImageNormalizer:
    options: dict[str, object] = {
        "height": 16,
        "width": 16,
        "policy": RetryPolicy(max_attempts=3, base_delay=0.2),
        "direct_read_markers": ["files/crop_image_"],
        "camera_markers": ["Camera/"],
        "camera_settle_delay": 0.1,
        "sleep": sleeps.append,
    }
    options.update(overrides)
    return ImageNormalizer(tracker, **options)  # type: ignore[arg-type]


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def normalizer(tracker: BufferTracker, sleeps: list[float]) -> ImageNormalizer:
    return _make_normalizer(tracker, sleeps)


# ---------------------------------------------------------------------------
# Reference handling
# ---------------------------------------------------------------------------


class TestResolvePhotoRef:
    @pytest.mark.parametrize("ref", ["", "   ", "\n"])
    def test_blank_reference(self, ref: str) -> None:
        with pytest.raises(EmptyReference):
            resolve_photo_ref(ref)

    def test_plain_path(self) -> None:
        assert resolve_photo_ref("/data/leaf.jpg") == Path("/data/leaf.jpg")

    def test_file_uri(self) -> None:
        assert resolve_photo_ref("file:///data/my%20leaf.jpg") == Path("/data/my leaf.jpg")

    def test_unsupported_scheme(self) -> None:
        with pytest.raises(ReadFailure, match="content"):
            resolve_photo_ref("content://media/external/images/1")


class TestChooseStrategy:
    def test_default_is_resize_first(self, normalizer: ImageNormalizer) -> None:
        assert normalizer.choose_strategy("/sdcard/DCIM/leaf.jpg") is Strategy.RESIZE_THEN_DECODE

    def test_app_private_file_reads_directly(self, normalizer: ImageNormalizer) -> None:
        ref = "/data/user/0/app/files/crop_image_123.jpg"
        assert normalizer.choose_strategy(ref) is Strategy.READ_THEN_DECODE_THEN_RESIZE


# ---------------------------------------------------------------------------
# Successful normalization
# ---------------------------------------------------------------------------


class TestNormalize:
    def test_primary_path_shape_and_range(
        self, normalizer: ImageNormalizer, tracker: BufferTracker, leaf_photo: Path
    ) -> None:
        tensor = normalizer.normalize(str(leaf_photo))

        assert tensor.shape == (1, 16, 16, 3)
        assert tensor.data.dtype == np.float32
        assert float(tensor.data.min()) >= 0.0
        assert float(tensor.data.max()) <= 1.0
        # JPEG round trip keeps a flat colour close to the source.
        np.testing.assert_allclose(tensor.data[0, 8, 8], np.array([10, 120, 200]) / 255.0, atol=0.05)
        assert tracker.live_count == 1
        tensor.release()
        assert tracker.live_count == 0

    def test_file_uri_reference(self, normalizer: ImageNormalizer, leaf_photo: Path) -> None:
        tensor = normalizer.normalize(leaf_photo.as_uri())
        assert tensor.shape == (1, 16, 16, 3)
        tensor.release()

    def test_direct_read_resizes_tensor(
        self, normalizer: ImageNormalizer, tracker: BufferTracker, tmp_path: Path, sleeps: list[float]
    ) -> None:
        photo = write_image(tmp_path / "files" / "crop_image_1.png", size=(40, 30), color=(51, 102, 204))

        tensor = normalizer.normalize(str(photo))

        assert tensor.shape == (1, 16, 16, 3)
        # PNG is lossless and bilinear resize of a flat image is exact.
        np.testing.assert_allclose(tensor.data[0], np.broadcast_to([0.2, 0.4, 0.8], (16, 16, 3)), atol=1e-6)
        assert sleeps == []
        tensor.release()
        assert tracker.live_count == 0

    def test_direct_read_skips_resize_when_size_matches(
        self, normalizer: ImageNormalizer, tracker: BufferTracker, tmp_path: Path
    ) -> None:
        photo = write_image(tmp_path / "files" / "crop_image_2.png", size=(16, 16))
        tensor = normalizer.normalize(str(photo))
        assert tensor.shape == (1, 16, 16, 3)
        # decoded + normalized only; no resized intermediate
        assert tracker.allocated_count == 2
        tensor.release()

    def test_camera_capture_waits_before_first_attempt(
        self, normalizer: ImageNormalizer, tmp_path: Path, sleeps: list[float]
    ) -> None:
        photo = write_image(tmp_path / "Camera" / "IMG_0001.jpg", fmt="JPEG")
        normalizer.normalize(str(photo)).release()
        assert sleeps == [0.1]

    def test_crop_to_aspect(self, tracker: BufferTracker, sleeps: list[float], tmp_path: Path) -> None:
        normalizer = _make_normalizer(tracker, sleeps, crop_to_aspect=True)
        photo = write_image(tmp_path / "wide.png", size=(64, 16))
        tensor = normalizer.normalize(str(photo))
        assert tensor.shape == (1, 16, 16, 3)
        tensor.release()

    def test_from_settings(self, settings: Settings, tracker: BufferTracker, leaf_photo: Path) -> None:
        normalizer = ImageNormalizer.from_settings(settings, tracker, sleep=lambda _: None)
        tensor = normalizer.normalize(str(leaf_photo))
        assert tensor.shape == (1, settings.input_height, settings.input_width, 3)
        tensor.release()


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestNormalizeFailures:
    def test_missing_file_retries_then_falls_back(
        self, normalizer: ImageNormalizer, tracker: BufferTracker, tmp_path: Path, sleeps: list[float]
    ) -> None:
        with pytest.raises(ReadFailure, match="Failed to read"):
            normalizer.normalize(str(tmp_path / "DCIM" / "missing.jpg"))
        # Three attempts: two backoff waits between them.
        assert sleeps == pytest.approx([0.2, 0.4])
        assert tracker.live_count == 0

    def test_empty_reference(self, normalizer: ImageNormalizer, tracker: BufferTracker) -> None:
        with pytest.raises(EmptyReference):
            normalizer.normalize("  ")
        assert tracker.allocated_count == 0

    def test_not_an_image(self, normalizer: ImageNormalizer, tracker: BufferTracker, tmp_path: Path) -> None:
        path = tmp_path / "notes.jpg"
        path.write_bytes(b"definitely not pixels")
        with pytest.raises(DecodeFailure):
            normalizer.normalize(str(path))
        assert tracker.live_count == 0

    def test_grayscale_is_rejected(self, normalizer: ImageNormalizer, tracker: BufferTracker, tmp_path: Path) -> None:
        photo = write_image(tmp_path / "gray.png", mode="L", color=128)
        with pytest.raises(InvalidImageData, match="Invalid decoded tensor shape"):
            normalizer.normalize(str(photo))
        assert tracker.live_count == 0

    def test_rgba_falls_back_and_is_rejected(
        self, normalizer: ImageNormalizer, tracker: BufferTracker, tmp_path: Path, sleeps: list[float]
    ) -> None:
        photo = write_image(tmp_path / "alpha.png", mode="RGBA", color=(1, 2, 3, 4))
        with pytest.raises(InvalidImageData, match="4"):
            normalizer.normalize(str(photo))
        # JPEG cannot hold alpha, so the primary path exhausts its attempts.
        assert len(sleeps) == 2
        assert tracker.live_count == 0

    def test_file_too_large(self, tracker: BufferTracker, sleeps: list[float], tmp_path: Path) -> None:
        normalizer = _make_normalizer(tracker, sleeps, max_file_size=10)
        photo = write_image(tmp_path / "files" / "crop_image_3.png")
        with pytest.raises(ReadFailure, match="limit"):
            normalizer.normalize(str(photo))


# ---------------------------------------------------------------------------
# Bilinear resize
# ---------------------------------------------------------------------------


class TestResizeBilinear:
    def test_identity(self) -> None:
        image = np.arange(2 * 3 * 3, dtype=np.uint8).reshape(2, 3, 3)
        np.testing.assert_array_equal(resize_bilinear(image, 2, 3), image.astype(np.float32))

    def test_upsample_interpolates_between_columns(self) -> None:
        image = np.array([[[0], [100]]], dtype=np.uint8)
        resized = resize_bilinear(image, 1, 4)
        np.testing.assert_allclose(resized[0, :, 0], [0.0, 50.0, 100.0, 100.0])

    def test_downsample_shape(self) -> None:
        image = np.zeros((30, 40, 3), dtype=np.uint8)
        assert resize_bilinear(image, 16, 16).shape == (16, 16, 3)
