"""Classification/regression training targets for cascade detector stages.

Each cascade stage matches its own proposals against the ground truth with
progressively stricter IoU ranges, then builds:

- one-of-(K+1) classification targets (K foreground classes, background last;
  ignored proposals are all-zero rows),
- regression targets encoded with `encode_boxes(proposal, matched_gt)`,
- regression instance weights (1 for positives, 0 otherwise).

Loss weights are carried per stage so later, repeated stages can be
down-weighted by the external loss module.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np

from cellcascade.core.regression.box_codec import encode_boxes
from cellcascade.core.regression.matcher import (
    IoURange,
    MatchResult,
    as_corner_boxes,
    match_proposals,
)
from cellcascade.core.types import (
    ClassIndexOutOfRangeError,
    ConfigurationError,
    ShapeMismatchError,
)


@dataclass(frozen=True)
class CascadeStage:
    """IoU ranges and loss weight of one refinement stage."""

    positive_range: IoURange | tuple[float, float] = (0.5, 1.0)
    negative_range: IoURange | tuple[float, float] = (0.0, 0.5)
    loss_weight: float = 1.0

    def __post_init__(self) -> None:
        pos = IoURange.of(self.positive_range)
        neg = IoURange.of(self.negative_range)
        object.__setattr__(self, "positive_range", pos)
        object.__setattr__(self, "negative_range", neg)
        if neg.hi > pos.lo:
            raise ConfigurationError(
                f"negative range [{neg.lo}, {neg.hi}] overlaps positive range [{pos.lo}, {pos.hi}]"
            )
        if float(self.loss_weight) < 0.0:
            raise ConfigurationError(f"loss_weight must be >= 0, got {self.loss_weight}")


# Stage-wise tightening 0.5 -> 0.6 -> 0.7 -> 0.7; the two repeated 0.7 stages are halved.
DEFAULT_CASCADE_STAGES: tuple[CascadeStage, ...] = (
    CascadeStage((0.5, 1.0), (0.0, 0.5), 1.0),
    CascadeStage((0.6, 1.0), (0.0, 0.6), 1.0),
    CascadeStage((0.7, 1.0), (0.0, 0.7), 0.5),
    CascadeStage((0.7, 1.0), (0.0, 0.7), 0.5),
)


@dataclass
class StageTargets:
    """Dense supervision for one stage (one image, or a concatenated batch)."""

    class_labels: np.ndarray  # (N,) foreground 0..K-1, background K, ignored -> ignore_label
    classification: np.ndarray  # (N, K + 1)
    regression: np.ndarray  # (N, 4K)
    regression_weights: np.ndarray  # (N, 4K)
    loss_weight: float = 1.0
    matches: list[MatchResult] = field(default_factory=list)

    @property
    def num_proposals(self) -> int:
        return int(self.class_labels.shape[0])


def _check_ignore_label(ignore_label: int, num_classes: int) -> None:
    if 0 <= int(ignore_label) <= num_classes:
        raise ConfigurationError(
            f"ignore_label {ignore_label} collides with class ids 0..{num_classes}"
        )


def _gt_labels(gt_labels: np.ndarray | None, num_gt: int, num_classes: int) -> np.ndarray:
    if gt_labels is None:
        return np.zeros(num_gt, dtype=np.int64)
    labels = np.asarray(gt_labels, dtype=np.int64).reshape(-1)
    if labels.shape[0] != num_gt:
        raise ShapeMismatchError(
            f"gt_labels has {labels.shape[0]} entries for {num_gt} ground-truth boxes"
        )
    if labels.size and (labels.min() < 0 or labels.max() >= num_classes):
        raise ClassIndexOutOfRangeError(
            f"gt_labels must lie in [0, {num_classes - 1}], got range "
            f"[{labels.min()}, {labels.max()}]"
        )
    return labels


def generate_stage_targets(
    proposals: np.ndarray,
    gt_boxes: np.ndarray,
    gt_labels: np.ndarray | None = None,
    stage: CascadeStage = DEFAULT_CASCADE_STAGES[0],
    *,
    num_classes: int = 1,
    ignore_label: int = -1,
    force_best_proposal: bool = False,
) -> StageTargets:
    """Build the targets of one stage for one image."""

    if int(num_classes) < 1:
        raise ConfigurationError(f"num_classes must be >= 1, got {num_classes}")
    _check_ignore_label(ignore_label, num_classes)

    match = match_proposals(
        proposals,
        gt_boxes,
        stage.positive_range,
        stage.negative_range,
        force_best_proposal=force_best_proposal,
    )
    n = match.num_proposals
    props = as_corner_boxes(proposals, "proposals")
    gts = as_corner_boxes(gt_boxes, "gt_boxes")
    labels = _gt_labels(gt_labels, gts.shape[0], num_classes)

    class_labels = np.full(n, int(ignore_label), dtype=np.int64)
    class_labels[match.negative_index] = num_classes
    pos = match.positive_index
    gt_idx = match.assignment[pos] - 1
    class_labels[pos] = labels[gt_idx]

    classification = np.zeros((n, num_classes + 1), dtype=np.float64)
    supervised = np.flatnonzero(class_labels != ignore_label)
    classification[supervised, class_labels[supervised]] = 1.0

    regression = np.zeros((n, 4 * num_classes), dtype=np.float64)
    weights = np.zeros_like(regression)
    if pos.size:
        deltas = encode_boxes(props[pos], gts[gt_idx])
        cols = labels[gt_idx][:, None] * 4 + np.arange(4)[None, :]
        regression[pos[:, None], cols] = deltas
        weights[pos[:, None], cols] = 1.0

    return StageTargets(
        class_labels=class_labels,
        classification=classification,
        regression=regression,
        regression_weights=weights,
        loss_weight=float(stage.loss_weight),
        matches=[match],
    )


def concatenate_targets(targets: Sequence[StageTargets]) -> StageTargets:
    """Stack per-image targets of the same stage into batch tensors."""

    if not targets:
        raise ShapeMismatchError("Cannot concatenate an empty list of stage targets")
    widths = {t.classification.shape[1] for t in targets}
    if len(widths) != 1:
        raise ShapeMismatchError(f"Stage targets disagree in class count: {sorted(widths)}")
    return StageTargets(
        class_labels=np.concatenate([t.class_labels for t in targets]),
        classification=np.concatenate([t.classification for t in targets]),
        regression=np.concatenate([t.regression for t in targets]),
        regression_weights=np.concatenate([t.regression_weights for t in targets]),
        loss_weight=targets[0].loss_weight,
        matches=[m for t in targets for m in t.matches],
    )


class TargetGenerator:
    """Build targets for every cascade stage of a detector."""

    def __init__(
        self,
        stages: Sequence[CascadeStage] = DEFAULT_CASCADE_STAGES,
        num_classes: int = 1,
        *,
        ignore_label: int = -1,
        force_best_proposal: bool = False,
    ) -> None:
        if not stages:
            raise ConfigurationError("At least one cascade stage is required")
        if int(num_classes) < 1:
            raise ConfigurationError(f"num_classes must be >= 1, got {num_classes}")
        _check_ignore_label(ignore_label, num_classes)
        self.stages = tuple(stages)
        self.num_classes = int(num_classes)
        self.ignore_label = int(ignore_label)
        self.force_best_proposal = force_best_proposal

    @property
    def num_stages(self) -> int:
        return len(self.stages)

    @property
    def loss_weights(self) -> np.ndarray:
        return np.array([s.loss_weight for s in self.stages], dtype=np.float64)

    def generate(
        self,
        stage_proposals: Sequence[np.ndarray],
        gt_boxes: np.ndarray,
        gt_labels: np.ndarray | None = None,
    ) -> list[StageTargets]:
        """Targets for one image; `stage_proposals[i]` feeds stage i."""

        if len(stage_proposals) != self.num_stages:
            raise ShapeMismatchError(
                f"Got proposals for {len(stage_proposals)} stages, "
                f"generator has {self.num_stages}"
            )
        return [
            generate_stage_targets(
                proposals,
                gt_boxes,
                gt_labels,
                stage,
                num_classes=self.num_classes,
                ignore_label=self.ignore_label,
                force_best_proposal=self.force_best_proposal,
            )
            for proposals, stage in zip(stage_proposals, self.stages)
        ]

    def generate_batch(
        self,
        stage_proposals: Sequence[Sequence[np.ndarray]],
        gt_boxes: Sequence[np.ndarray],
        gt_labels: Sequence[np.ndarray | None] | None = None,
    ) -> list[StageTargets]:
        """Targets for a batch, concatenated per stage across images."""

        if len(stage_proposals) != len(gt_boxes):
            raise ShapeMismatchError(
                f"Batch has {len(stage_proposals)} proposal sets but {len(gt_boxes)} "
                "ground-truth sets"
            )
        labels = list(gt_labels) if gt_labels is not None else [None] * len(gt_boxes)
        if len(labels) != len(gt_boxes):
            raise ShapeMismatchError(
                f"Batch has {len(labels)} label sets for {len(gt_boxes)} images"
            )
        per_image = [
            self.generate(props, gts, lbls)
            for props, gts, lbls in zip(stage_proposals, gt_boxes, labels)
        ]
        if not per_image:
            return []
        return [
            concatenate_targets([image_targets[i] for image_targets in per_image])
            for i in range(self.num_stages)
        ]
