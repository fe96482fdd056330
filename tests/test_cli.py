"""Tests for the cropscan command line."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import FakeNodeArg, FakeSession, one_hot, write_image

from cropscan.cli import main
from cropscan.ml.labels import DEFAULT_LABELS


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CROPSCAN_MODEL_DIR", str(tmp_path / "models"))
    monkeypatch.setenv("CROPSCAN_INPUT_HEIGHT", "16")
    monkeypatch.setenv("CROPSCAN_INPUT_WIDTH", "16")
    monkeypatch.setenv("CROPSCAN_RETRY_BASE_DELAY", "0")
    monkeypatch.delenv("CROPSCAN_LABELS_PATH", raising=False)


class TestValidateMapping:
    def test_bundled_tables_pass(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["validate-mapping"]) == 0
        out = capsys.readouterr().out
        assert "OK: Internal mapping validation" in out
        assert "OK: Model coverage validation" in out
        assert "Total mappings: 22" in out
        assert "Healthy mappings: 4" in out

    def test_labels_file_missing_an_entry(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        labels_path = tmp_path / "labels.json"
        labels_path.write_text(json.dumps([label for label in DEFAULT_LABELS if label != "Tomato - Leaf Curl"]))

        assert main(["validate-mapping", "--labels", str(labels_path)]) == 1

        out = capsys.readouterr().out
        assert "FAILED: Model coverage validation" in out
        assert "Mapping exists for non-existent model label: Tomato - Leaf Curl" in out

    def test_unreadable_labels_file(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["validate-mapping", "--labels", str(tmp_path / "missing.json")]) == 1
        assert "Error:" in capsys.readouterr().err


class TestPredict:
    def test_without_model_fails(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        photo = write_image(tmp_path / "leaf.png")
        assert main(["predict", str(photo)]) == 1
        assert "Model failed to load" in capsys.readouterr().err

    def test_prints_top_predictions(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        model_dir = tmp_path / "models"
        model_dir.mkdir()
        (model_dir / "crop_disease.onnx").write_bytes(b"onnx-graph")
        session = FakeSession(output=one_hot(2))
        session.inputs = [FakeNodeArg("input_1", ["batch", 16, 16, 3])]
        photo = write_image(tmp_path / "leaf.png")

        with patch("cropscan.ml.model_manager.InferenceSession", return_value=session):
            assert main(["predict", str(photo)]) == 0

        out = capsys.readouterr().out
        assert "1. Cashew - Healthy: 0.9000" in out
        assert "Disease id: healthy (crop=cashew, healthy=True)" in out


class TestFetchModel:
    def test_requires_repo_id(self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
        monkeypatch.delenv("CROPSCAN_MODEL_REPO_ID", raising=False)
        assert main(["fetch-model"]) == 1
        assert "CROPSCAN_MODEL_REPO_ID" in capsys.readouterr().err
