"""CLI: precision/recall and AP of detections against annotations.

Input is a JSON list of images (or an object with an `images` list), each with
`pred_boxes`, `pred_scores` and `gt_boxes`; boxes are (x, y, w, h).
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

from cellcascade.core.analytics.counts import count_agreement, count_predictions
from cellcascade.core.analytics.evaluation import (
    ImageDetections,
    ap_over_thresholds,
    evaluate_dataset,
)
from cellcascade.core.config.settings import load_settings
from cellcascade.core.types import CellCascadeError

logger = logging.getLogger(__name__)


def _load_images(path: str) -> list[ImageDetections]:
    """Read the input file and raise a user-friendly error on failure."""

    p = Path(path)
    if not p.exists():
        raise SystemExit(f"Input not found: {p}")
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SystemExit(f"Cannot parse {p}: {exc}") from exc
    if isinstance(data, dict):
        data = data.get("images", [])
    if not isinstance(data, list):
        raise SystemExit(f"Expected a list of images in {p}")
    try:
        return [ImageDetections.of(item) for item in data]
    except (KeyError, TypeError, ValueError) as exc:
        raise SystemExit(f"Malformed image entry in {p}: {exc}") from exc


def run(args: argparse.Namespace) -> dict[str, Any]:
    settings = load_settings()
    iou_threshold = (
        settings.eval_iou_threshold if args.iou_threshold is None else args.iou_threshold
    )
    workers = settings.eval_workers if args.workers is None else args.workers
    images = _load_images(args.input)
    logger.info("Loaded %d images from %s", len(images), args.input)

    try:
        curve = evaluate_dataset(
            images,
            iou_threshold,
            max_workers=workers,
            skip_images_without_ground_truth=not args.include_empty_images,
        )
        report: dict[str, Any] = {"num_images": len(images), **curve.to_dict()}

        if args.sweep:
            sweep = ap_over_thresholds(images, max_workers=workers)
            report["sweep"] = {
                "thresholds": sweep.thresholds.tolist(),
                "average_precision": sweep.average_precision.tolist(),
                "mean_average_precision": sweep.mean_average_precision,
            }
    except CellCascadeError as exc:
        raise SystemExit(f"Evaluation failed: {exc}") from exc

    if args.counts:
        score_threshold = (
            settings.count_score_threshold
            if args.count_score_threshold is None
            else args.count_score_threshold
        )
        predicted = [count_predictions(img.pred_scores, score_threshold) for img in images]
        true = [int(img.gt_boxes.shape[0]) for img in images]
        report["counts"] = {
            "score_threshold": score_threshold,
            **count_agreement(true, predicted).to_dict(),
        }

    logger.info("AP@%.2f = %.4f", curve.iou_threshold, curve.average_precision)
    return report


def main() -> None:
    """CLI entrypoint for dataset evaluation."""

    parser = argparse.ArgumentParser(description="Evaluate detections against annotations")
    parser.add_argument("--input", required=True, help="JSON file with per-image detections")
    parser.add_argument("--output", default=None, help="Where to write the JSON report")
    parser.add_argument("--iou-threshold", type=float, default=None)
    parser.add_argument(
        "--sweep", action="store_true", help="Also report AP over IoU 0.50:0.05:0.95"
    )
    parser.add_argument("--counts", action="store_true", help="Also report count agreement")
    parser.add_argument("--count-score-threshold", type=float, default=None)
    parser.add_argument(
        "--include-empty-images",
        action="store_true",
        help="Count predictions on images without annotations as false positives",
    )
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.WARNING))

    report = run(args)
    text = json.dumps(report, indent=2)
    if args.output:
        out_path = Path(args.output)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(text, encoding="utf-8")
        print(f"AP={report['average_precision']:.4f}; wrote report to {out_path}")
    else:
        print(text)


if __name__ == "__main__":
    main()
