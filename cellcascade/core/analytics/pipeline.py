"""Per-frame inference post-processing.

This module ties together box decoding, detection filtering and tracking into
a single per-frame processing pipeline.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import numpy as np

from cellcascade.core.geometry import pairwise_iou, xyxy_to_xywh
from cellcascade.core.regression.box_codec import (
    DecodeConfig,
    RegressionLayout,
    apply_regression,
)
from cellcascade.core.trackers.cell_tracker import CellTracker
from cellcascade.core.types import CellDetection, ConfigurationError, FrameSummary

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PostprocessConfig:
    score_threshold: float = 0.0
    # Side-length limits in pixels; None disables the upper bound.
    min_size: float = 0.0
    max_size: float | None = None
    # None disables non-maximum suppression.
    nms_iou: float | None = 0.5
    max_detections: int | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= float(self.score_threshold) <= 1.0:
            raise ConfigurationError(
                f"score_threshold must be in [0, 1], got {self.score_threshold}"
            )
        if float(self.min_size) < 0.0:
            raise ConfigurationError(f"min_size must be >= 0, got {self.min_size}")
        if self.max_size is not None and float(self.max_size) < float(self.min_size):
            raise ConfigurationError(
                f"max_size ({self.max_size}) must be >= min_size ({self.min_size})"
            )
        if self.nms_iou is not None and not 0.0 < float(self.nms_iou) <= 1.0:
            raise ConfigurationError(f"nms_iou must be in (0, 1], got {self.nms_iou}")
        if self.max_detections is not None and int(self.max_detections) < 0:
            raise ConfigurationError(f"max_detections must be >= 0, got {self.max_detections}")


def nms_boxes(boxes: np.ndarray, scores: np.ndarray, iou_threshold: float) -> np.ndarray:
    """Greedy non-maximum suppression on (x, y, w, h) boxes.

    Returns the indices of the kept boxes in descending score order.
    """

    if boxes.shape[0] == 0:
        return np.zeros(0, dtype=np.int64)

    thr = float(iou_threshold)
    order = np.argsort(-scores, kind="stable")
    iou = pairwise_iou(boxes[order], boxes[order])
    kept: list[int] = []
    for i in range(order.shape[0]):
        if kept and np.any(iou[i, kept] >= thr):
            continue
        kept.append(i)
    return order[np.asarray(kept, dtype=np.int64)]


def postprocess_detections(
    boxes: np.ndarray,
    scores: np.ndarray,
    config: PostprocessConfig | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Filter (x, y, w, h) detections; output is sorted by descending score."""

    cfg = config or PostprocessConfig()
    b = np.asarray(boxes, dtype=np.float64).reshape(-1, 4)
    s = np.asarray(scores, dtype=np.float64).reshape(-1)

    keep = s >= cfg.score_threshold
    sides = np.minimum(b[:, 2], b[:, 3])
    keep &= sides >= cfg.min_size
    if cfg.max_size is not None:
        keep &= np.maximum(b[:, 2], b[:, 3]) <= cfg.max_size
    b, s = b[keep], s[keep]

    if cfg.nms_iou is not None:
        order = nms_boxes(b, s, cfg.nms_iou)
    else:
        order = np.argsort(-s, kind="stable")
    if cfg.max_detections is not None:
        order = order[: int(cfg.max_detections)]
    return b[order], s[order]


class CellAnalysisPipeline:
    """End-to-end per-frame processing of detector outputs.

    Responsibilities:
    - decode regression deltas onto proposals
    - filter detections (score, size, NMS, top-N)
    - update the tracker to produce stable cell IDs
    """

    def __init__(
        self,
        tracker: CellTracker | None = None,
        decode_config: DecodeConfig | None = None,
        postprocess_config: PostprocessConfig | None = None,
        layout: RegressionLayout | None = None,
    ) -> None:
        self.tracker = tracker or CellTracker()
        self.decode_config = decode_config or DecodeConfig()
        self.postprocess_config = postprocess_config or PostprocessConfig()
        self.layout = layout
        self.frame_id = 0

    def detect(
        self, proposals: np.ndarray, regressions: np.ndarray
    ) -> list[CellDetection]:
        """Decode and filter one image's (5, N) proposals into detections."""

        props = np.asarray(proposals, dtype=np.float64)
        refined = apply_regression(
            props, regressions, layout=self.layout, config=self.decode_config
        ).reshape(5, -1)
        boxes, scores = postprocess_detections(
            xyxy_to_xywh(refined[:4].T), refined[4], self.postprocess_config
        )
        return [
            CellDetection(bbox=tuple(float(v) for v in box), confidence=float(score))
            for box, score in zip(boxes, scores)
        ]

    def process(
        self,
        proposals: np.ndarray,
        regressions: np.ndarray,
        frame_index: int | None = None,
        profile: bool = False,
    ) -> FrameSummary:
        """Process one frame and return its summary.

        Args:
            proposals: (5, N) rows x1, y1, x2, y2, score for a single image.
            regressions: Regression deltas in any supported layout.
            frame_index: Frame number; defaults to one past the previous frame.
            profile: Attach stage durations (milliseconds) to the summary.
        """

        timings: dict[str, float] = {}
        t_all0 = time.perf_counter()
        self.frame_id = int(frame_index) if frame_index is not None else self.frame_id + 1

        t0 = time.perf_counter()
        detections = self.detect(proposals, regressions)
        t1 = time.perf_counter()
        timings["decode_ms"] = (t1 - t0) * 1000.0

        if detections:
            boxes = np.array([d.bbox for d in detections], dtype=np.float64)
            scores = np.array([d.confidence for d in detections], dtype=np.float64)
        else:
            boxes = np.zeros((0, 4), dtype=np.float64)
            scores = np.zeros(0, dtype=np.float64)
        tracks = self.tracker.update(boxes, scores, frame_index=self.frame_id)
        timings["track_ms"] = (time.perf_counter() - t1) * 1000.0
        timings["pipeline_ms"] = (time.perf_counter() - t_all0) * 1000.0

        num_proposals = int(np.asarray(proposals).reshape(5, -1).shape[1])
        active = sum(1 for t in tracks if t.consecutive_invisible_count == 0)
        logger.debug(
            "Frame %d: %d proposals -> %d detections, %d live tracks",
            self.frame_id,
            num_proposals,
            len(detections),
            len(tracks),
        )
        return FrameSummary(
            frame_id=self.frame_id,
            timestamp=time.time(),
            detections=detections,
            tracks=tracks,
            num_proposals=num_proposals,
            profile=timings if profile else None,
            counts={
                "detections": len(detections),
                "tracks": len(tracks),
                "active_tracks": active,
                "coasting_tracks": len(tracks) - active,
            },
        )

    def reset(self) -> None:
        self.tracker.reset()
        self.frame_id = 0
