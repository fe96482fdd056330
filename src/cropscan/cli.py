"""Command-line entry point: ``cropscan <command>``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import TYPE_CHECKING

from cropscan.config import Settings, get_settings
from cropscan.errors import CropScanError
from cropscan.main import LOG_FORMAT
from cropscan.ml.disease_mapping import LabelMapper
from cropscan.ml.inference import InferencePool
from cropscan.ml.labels import LabelTable
from cropscan.ml.model_manager import fetch_model_bundle
from cropscan.ml.pipeline import DetectionPipeline, load_labels

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)


def _validate_mapping(args: argparse.Namespace, settings: Settings) -> int:
    labels = LabelTable.from_json(args.labels) if args.labels else load_labels(settings)
    mapper = LabelMapper()

    print("Validating disease mapping...\n")
    internal = mapper.validate()
    coverage = mapper.validate(labels)
    coverage_errors = [e for e in coverage.errors if e not in internal.errors]

    for title, errors in (("Internal mapping", internal.errors), ("Model coverage", coverage_errors)):
        if errors:
            print(f"FAILED: {title} validation")
            for error in errors:
                print(f"  - {error}")
        else:
            print(f"OK: {title} validation")

    healthy = sum(1 for m in mapper.mappings if m.is_healthy)
    print("\nMapping statistics:")
    print(f"  - Total mappings: {len(mapper)}")
    print(f"  - Disease mappings: {len(mapper) - healthy}")
    print(f"  - Healthy mappings: {healthy}")
    print(f"  - Supported crops: {len(mapper.supported_crop_types())}")
    print()
    print(mapper.summary())

    return 0 if coverage.valid else 1


async def _predict(image: str, settings: Settings) -> int:
    pool = InferencePool(settings)
    try:
        pipeline = DetectionPipeline(settings, pool)
        status = await pipeline.load_model()
        if not status.ready:
            print(f"Model failed to load: {status.error}", file=sys.stderr)
            return 1
        detection = await pipeline.detect(image)
    finally:
        pool.shutdown()

    if detection is None:
        print("Model is not ready", file=sys.stderr)
        return 1

    prediction = detection.prediction
    print(f"\nPredictions for {image}:")
    for rank, entry in enumerate(prediction.top_predictions, 1):
        print(f"{rank}. {entry.label}: {entry.confidence:.4f}")
    if detection.mapping is not None:
        print(
            f"\nDisease id: {detection.mapping.external_disease_id} "
            f"(crop={detection.crop_type}, healthy={detection.is_healthy})"
        )
    else:
        print(f"\nNo mapping for {prediction.label}")
    return 0


def _fetch_model(settings: Settings) -> int:
    path = fetch_model_bundle(settings)
    print(f"Model bundle stored at {path}")
    return 0


def _serve(settings: Settings) -> int:
    import uvicorn

    uvicorn.run("cropscan.main:app", host=settings.host, port=settings.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cropscan", description="Crop disease detection")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate-mapping", help="Check the mapping table against the label table")
    validate.add_argument("--labels", help="JSON list of labels (default: bundled labels)")

    predict = sub.add_parser("predict", help="Classify one image")
    predict.add_argument("image", help="Path to image file")

    sub.add_parser("fetch-model", help="Download the model bundle into CROPSCAN_MODEL_DIR")
    sub.add_parser("serve", help="Run the HTTP API")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, format=LOG_FORMAT)
    settings = get_settings()

    try:
        if args.command == "validate-mapping":
            return _validate_mapping(args, settings)
        if args.command == "predict":
            return asyncio.run(_predict(args.image, settings))
        if args.command == "fetch-model":
            return _fetch_model(settings)
        return _serve(settings)
    except CropScanError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
