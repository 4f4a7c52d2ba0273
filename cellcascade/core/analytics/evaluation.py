"""Precision/recall and Average Precision over a dataset of images.

All predictions are ranked globally by descending confidence. Each one is
compared only against the ground truth of its own image and claims the best
still-unclaimed box when the IoU reaches the threshold. Per-image matching is
independent, so it is computed image by image (optionally on a thread pool)
and the partial results are concatenated before ranking.

AP uses the PASCAL-VOC monotonic precision envelope integrated as a step
function over recall.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np

from cellcascade.core.geometry import pairwise_iou
from cellcascade.core.types import ConfigurationError, ShapeMismatchError, as_float_array

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_THRESHOLDS = tuple(round(0.5 + 0.05 * i, 2) for i in range(10))


@dataclass
class ImageDetections:
    """Predictions and ground truth of one image, boxes in (x, y, w, h)."""

    pred_boxes: np.ndarray
    pred_scores: np.ndarray
    gt_boxes: np.ndarray

    def __post_init__(self) -> None:
        self.pred_boxes = as_float_array(self.pred_boxes, 4, "pred_boxes")
        self.pred_scores = np.asarray(self.pred_scores, dtype=np.float64).reshape(-1)
        self.gt_boxes = as_float_array(self.gt_boxes, 4, "gt_boxes")
        if self.pred_scores.shape[0] != self.pred_boxes.shape[0]:
            raise ShapeMismatchError(
                f"{self.pred_boxes.shape[0]} predicted boxes but "
                f"{self.pred_scores.shape[0]} scores"
            )

    @classmethod
    def of(cls, value: ImageDetections | Mapping | Sequence) -> ImageDetections:
        if isinstance(value, ImageDetections):
            return value
        if isinstance(value, Mapping):
            return cls(value["pred_boxes"], value["pred_scores"], value["gt_boxes"])
        pred_boxes, pred_scores, gt_boxes = value
        return cls(pred_boxes, pred_scores, gt_boxes)


@dataclass
class ImageMatches:
    """Per-image partial result: predictions sorted by descending score."""

    image_index: int
    scores: np.ndarray
    is_true_positive: np.ndarray
    num_ground_truth: int


@dataclass
class PrecisionRecallCurve:
    precision: np.ndarray
    recall: np.ndarray
    interpolated_precision: np.ndarray
    scores: np.ndarray
    is_true_positive: np.ndarray
    image_index: np.ndarray
    average_precision: float
    iou_threshold: float
    num_ground_truth: int

    def to_dict(self) -> dict:
        return {
            "iou_threshold": self.iou_threshold,
            "average_precision": self.average_precision,
            "num_ground_truth": self.num_ground_truth,
            "num_predictions": int(self.scores.shape[0]),
            "precision": self.precision.tolist(),
            "recall": self.recall.tolist(),
            "interpolated_precision": self.interpolated_precision.tolist(),
        }


@dataclass
class ThresholdSweep:
    thresholds: np.ndarray
    average_precision: np.ndarray

    @property
    def mean_average_precision(self) -> float:
        if self.average_precision.size == 0:
            return 0.0
        return float(self.average_precision.mean())

    def as_dict(self) -> dict[float, float]:
        return {float(t): float(ap) for t, ap in zip(self.thresholds, self.average_precision)}


def _check_threshold(iou_threshold: float) -> float:
    thr = float(iou_threshold)
    if not 0.0 < thr <= 1.0:
        raise ConfigurationError(f"IoU threshold must be in (0, 1], got {iou_threshold}")
    return thr


def match_image(
    image: ImageDetections,
    iou_threshold: float,
    image_index: int = 0,
) -> ImageMatches:
    """Greedy one-to-one matching of an image's predictions in score order."""

    order = np.argsort(-image.pred_scores, kind="stable")
    scores = image.pred_scores[order]
    num_gt = image.gt_boxes.shape[0]
    is_tp = np.zeros(scores.shape[0], dtype=bool)
    if scores.shape[0] == 0 or num_gt == 0:
        return ImageMatches(image_index, scores, is_tp, num_gt)

    iou = pairwise_iou(image.pred_boxes[order], image.gt_boxes)
    claimed = np.zeros(num_gt, dtype=bool)
    for i in range(scores.shape[0]):
        candidates = np.where(claimed, -1.0, iou[i])
        best = int(candidates.argmax())
        if candidates[best] >= iou_threshold:
            is_tp[i] = True
            claimed[best] = True
    return ImageMatches(image_index, scores, is_tp, num_gt)


def interpolate_precision(precision: np.ndarray) -> np.ndarray:
    """Replace each precision with the max over itself and all lower-ranked entries."""

    p = np.asarray(precision, dtype=np.float64)
    if p.size == 0:
        return p.copy()
    return np.maximum.accumulate(p[::-1])[::-1]


def area_under_curve(recall: np.ndarray, interpolated_precision: np.ndarray) -> float:
    """Step-function area of the interpolated precision over recall."""

    recall_levels = np.concatenate(([0.0], np.asarray(recall, dtype=np.float64), [1.0]))
    precision_levels = np.concatenate(
        ([0.0], np.asarray(interpolated_precision, dtype=np.float64), [0.0])
    )
    return float(np.sum(np.diff(recall_levels) * precision_levels[1:]))


def _empty_curve(iou_threshold: float, num_gt: int) -> PrecisionRecallCurve:
    return PrecisionRecallCurve(
        precision=np.zeros(1),
        recall=np.zeros(1),
        interpolated_precision=np.zeros(1),
        scores=np.zeros(0),
        is_true_positive=np.zeros(0, dtype=bool),
        image_index=np.zeros(0, dtype=np.int64),
        average_precision=0.0,
        iou_threshold=iou_threshold,
        num_ground_truth=num_gt,
    )


def evaluate_dataset(
    images: Iterable[ImageDetections | Mapping | Sequence],
    iou_threshold: float = 0.5,
    *,
    max_workers: int | None = None,
    skip_images_without_ground_truth: bool = True,
) -> PrecisionRecallCurve:
    """Combined precision/recall curve and AP across all images.

    Predictions of images without any ground truth are left out of the ranking
    unless `skip_images_without_ground_truth` is False, in which case they all
    count as false positives.
    """

    thr = _check_threshold(iou_threshold)
    dataset = [ImageDetections.of(img) for img in images]
    total_gt = int(sum(img.gt_boxes.shape[0] for img in dataset))
    if total_gt == 0:
        logger.debug("No ground truth across %d images; AP is 0", len(dataset))
        return _empty_curve(thr, 0)

    def _match(item: tuple[int, ImageDetections]) -> ImageMatches:
        idx, img = item
        return match_image(img, thr, image_index=idx)

    if max_workers and max_workers > 1 and len(dataset) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            partials = list(pool.map(_match, enumerate(dataset)))
    else:
        partials = [_match(item) for item in enumerate(dataset)]

    kept = [
        p
        for p in partials
        if p.scores.shape[0] > 0 and (p.num_ground_truth > 0 or not skip_images_without_ground_truth)
    ]
    if not kept:
        return _empty_curve(thr, total_gt)

    scores = np.concatenate([p.scores for p in kept])
    is_tp = np.concatenate([p.is_true_positive for p in kept])
    image_index = np.concatenate(
        [np.full(p.scores.shape[0], p.image_index, dtype=np.int64) for p in kept]
    )
    order = np.argsort(-scores, kind="stable")
    scores, is_tp, image_index = scores[order], is_tp[order], image_index[order]

    cum_tp = np.cumsum(is_tp, dtype=np.float64)
    cum_fp = np.cumsum(~is_tp, dtype=np.float64)
    precision = cum_tp / (cum_tp + cum_fp)
    recall = cum_tp / float(total_gt)
    interpolated = interpolate_precision(precision)
    ap = area_under_curve(recall, interpolated)

    logger.debug(
        "Evaluated %d predictions over %d images (%d ground truth) at IoU %.3f: AP=%.4f",
        scores.shape[0],
        len(dataset),
        total_gt,
        thr,
        ap,
    )
    return PrecisionRecallCurve(
        precision=precision,
        recall=recall,
        interpolated_precision=interpolated,
        scores=scores,
        is_true_positive=is_tp,
        image_index=image_index,
        average_precision=ap,
        iou_threshold=thr,
        num_ground_truth=total_gt,
    )


def average_precision(
    pred_boxes: np.ndarray,
    pred_scores: np.ndarray,
    gt_boxes: np.ndarray,
    iou_threshold: float = 0.5,
) -> float:
    """AP of a single image."""

    image = ImageDetections(pred_boxes, pred_scores, gt_boxes)
    return evaluate_dataset([image], iou_threshold).average_precision


def ap_over_thresholds(
    images: Iterable[ImageDetections | Mapping | Sequence],
    thresholds: Sequence[float] = DEFAULT_SWEEP_THRESHOLDS,
    *,
    max_workers: int | None = None,
) -> ThresholdSweep:
    """AP at each IoU threshold (default 0.50:0.05:0.95) plus their mean."""

    dataset = [ImageDetections.of(img) for img in images]
    thr = np.array([_check_threshold(t) for t in thresholds], dtype=np.float64)
    aps = np.array(
        [evaluate_dataset(dataset, t, max_workers=max_workers).average_precision for t in thr],
        dtype=np.float64,
    )
    return ThresholdSweep(thresholds=thr, average_precision=aps)
