"""Proposal to ground-truth matching by IoU ranges.

Each proposal is compared against every ground-truth box of its image and
classified by its best IoU:

- positive: best IoU in the closed `positive_range` (assigned to that box),
- negative: best IoU in `negative_range` (lower bound inclusive, upper bound
  exclusive) and not positive,
- ignored: neither; excluded from both index sets.

Many proposals may claim the same ground-truth box.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from cellcascade.core.geometry import pairwise_iou, xyxy_to_xywh
from cellcascade.core.types import ConfigurationError, ShapeMismatchError


@dataclass(frozen=True)
class IoURange:
    lo: float
    hi: float

    def __post_init__(self) -> None:
        lo, hi = float(self.lo), float(self.hi)
        if not 0.0 <= lo <= 1.0 or not 0.0 <= hi <= 1.0:
            raise ConfigurationError(f"IoU range bounds must lie in [0, 1], got [{lo}, {hi}]")
        if lo > hi:
            raise ConfigurationError(f"IoU range is empty: [{lo}, {hi}]")

    @classmethod
    def of(cls, value: IoURange | Sequence[float]) -> IoURange:
        if isinstance(value, IoURange):
            return value
        lo, hi = value
        return cls(float(lo), float(hi))


@dataclass
class MatchResult:
    """Per-proposal assignment for one image.

    `assignment[i]` is the 1-based index of the matched ground-truth box for
    positive proposals and 0 otherwise. Index arrays are 0-based proposal indices.
    """

    assignment: np.ndarray
    positive_index: np.ndarray
    negative_index: np.ndarray
    max_iou: np.ndarray
    best_gt: np.ndarray

    @property
    def num_proposals(self) -> int:
        return int(self.assignment.shape[0])

    @property
    def ignored_index(self) -> np.ndarray:
        mask = np.ones(self.num_proposals, dtype=bool)
        mask[self.positive_index] = False
        mask[self.negative_index] = False
        return np.flatnonzero(mask)


def as_corner_boxes(boxes: np.ndarray, name: str) -> np.ndarray:
    arr = np.asarray(boxes, dtype=np.float64)
    if arr.size == 0:
        return np.zeros((0, 4), dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] < 4:
        raise ShapeMismatchError(f"{name} must have shape (N, 4) or (N, 5), got {tuple(arr.shape)}")
    return arr[:, :4]


def compute_iou_matrix(proposals: np.ndarray, gt_boxes: np.ndarray) -> np.ndarray:
    """Return the (num_proposals, num_gt) IoU matrix for pixel-inclusive corner boxes."""

    props = as_corner_boxes(proposals, "proposals")
    gts = as_corner_boxes(gt_boxes, "gt_boxes")
    return pairwise_iou(xyxy_to_xywh(props), xyxy_to_xywh(gts))


def match_proposals(
    proposals: np.ndarray,
    gt_boxes: np.ndarray,
    positive_range: IoURange | Sequence[float] = (0.5, 1.0),
    negative_range: IoURange | Sequence[float] = (0.0, 0.5),
    *,
    force_best_proposal: bool = False,
) -> MatchResult:
    """Assign every proposal to a ground-truth box, background, or ignore.

    With `force_best_proposal`, the highest-IoU proposal of every ground-truth
    box is made positive even when its IoU is below the positive range.
    """

    pos = IoURange.of(positive_range)
    neg = IoURange.of(negative_range)
    props = as_corner_boxes(proposals, "proposals")
    gts = as_corner_boxes(gt_boxes, "gt_boxes")
    n = props.shape[0]

    if n == 0:
        empty = np.zeros(0, dtype=np.int64)
        return MatchResult(
            assignment=empty,
            positive_index=empty.copy(),
            negative_index=empty.copy(),
            max_iou=np.zeros(0, dtype=np.float64),
            best_gt=empty.copy(),
        )

    if gts.shape[0] == 0:
        return MatchResult(
            assignment=np.zeros(n, dtype=np.int64),
            positive_index=np.zeros(0, dtype=np.int64),
            negative_index=np.arange(n, dtype=np.int64),
            max_iou=np.zeros(n, dtype=np.float64),
            best_gt=np.full(n, -1, dtype=np.int64),
        )

    iou = pairwise_iou(xyxy_to_xywh(props), xyxy_to_xywh(gts))
    best_gt = iou.argmax(axis=1)
    max_iou = iou[np.arange(n), best_gt]

    positive = (max_iou >= pos.lo) & (max_iou <= pos.hi)
    if force_best_proposal:
        best_props = iou.argmax(axis=0)
        has_overlap = iou[best_props, np.arange(gts.shape[0])] > 0.0
        for gi, pi in zip(np.flatnonzero(has_overlap), best_props[has_overlap]):
            best_gt[pi] = gi
            positive[pi] = True
    negative = (max_iou >= neg.lo) & (max_iou < neg.hi) & ~positive

    assignment = np.zeros(n, dtype=np.int64)
    assignment[positive] = best_gt[positive] + 1
    return MatchResult(
        assignment=assignment,
        positive_index=np.flatnonzero(positive),
        negative_index=np.flatnonzero(negative),
        max_iou=max_iou,
        best_gt=best_gt,
    )


def match_batch(
    proposals: Sequence[np.ndarray],
    gt_boxes: Sequence[np.ndarray],
    positive_range: IoURange | Sequence[float] = (0.5, 1.0),
    negative_range: IoURange | Sequence[float] = (0.0, 0.5),
    *,
    force_best_proposal: bool = False,
) -> list[MatchResult]:
    """Run `match_proposals` independently for every image of a batch."""

    if len(proposals) != len(gt_boxes):
        raise ShapeMismatchError(
            f"Batch has {len(proposals)} proposal sets but {len(gt_boxes)} ground-truth sets"
        )
    return [
        match_proposals(
            p,
            g,
            positive_range,
            negative_range,
            force_best_proposal=force_best_proposal,
        )
        for p, g in zip(proposals, gt_boxes)
    ]
