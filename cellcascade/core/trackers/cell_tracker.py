"""Frame-to-frame cell tracking by overlap, size and shape similarity.

The functional core is `update_tracks`, which advances an explicit
`TrackerState`; `CellTracker` wraps it for callers that feed frames in order.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace

import numpy as np

from cellcascade.core.geometry import box_centers, paired_iou
from cellcascade.core.trackers.assignment import (
    EXACT_ASSIGNMENT_LIMIT,
    assign_detections_to_tracks,
)
from cellcascade.core.trackers.records import TrackingTable
from cellcascade.core.types import (
    ConfigurationError,
    ShapeMismatchError,
    Track,
    as_float_array,
)

logger = logging.getLogger(__name__)

_WEIGHT_TOLERANCE = 1e-6
_EPS = 1e-12


@dataclass(frozen=True)
class TrackerConfig:
    """Association and lifetime parameters of `CellTracker`."""

    # Doubles as the ceiling on association cost: pairs need cost < min_iou.
    min_iou: float = 0.3
    max_invisible_count: int = 10
    size_weight: float = 0.2
    aspect_ratio_weight: float = 0.2
    iou_weight: float = 0.6
    # Center-to-center gate in pixels.
    max_distance: float = math.inf
    preallocate_rows: int = 1000
    exact_assignment_limit: int = EXACT_ASSIGNMENT_LIMIT

    def __post_init__(self) -> None:
        if not 0.0 <= float(self.min_iou) <= 1.0:
            raise ConfigurationError(f"min_iou must be in [0, 1], got {self.min_iou}")
        if int(self.max_invisible_count) < 1:
            raise ConfigurationError(
                f"max_invisible_count must be >= 1, got {self.max_invisible_count}"
            )
        weights = (self.size_weight, self.aspect_ratio_weight, self.iou_weight)
        if min(weights) < 0.0 or sum(weights) <= 0.0:
            raise ConfigurationError(f"cost weights must be >= 0 with a positive sum, got {weights}")
        if not float(self.max_distance) > 0.0:
            raise ConfigurationError(f"max_distance must be > 0, got {self.max_distance}")
        if int(self.preallocate_rows) < 1:
            raise ConfigurationError(f"preallocate_rows must be >= 1, got {self.preallocate_rows}")
        if int(self.exact_assignment_limit) < 0:
            raise ConfigurationError(
                f"exact_assignment_limit must be >= 0, got {self.exact_assignment_limit}"
            )

    @property
    def cost_threshold(self) -> float:
        return float(self.min_iou)

    def normalized(self) -> TrackerConfig:
        """Return a config whose cost weights sum to 1, warning when they did not."""

        total = self.size_weight + self.aspect_ratio_weight + self.iou_weight
        if abs(total - 1.0) <= _WEIGHT_TOLERANCE:
            return self
        logger.warning(
            "Tracker weights sum to %.4f (iou=%.4f size=%.4f aspect=%.4f); normalizing",
            total,
            self.iou_weight,
            self.size_weight,
            self.aspect_ratio_weight,
        )
        return replace(
            self,
            size_weight=self.size_weight / total,
            aspect_ratio_weight=self.aspect_ratio_weight / total,
            iou_weight=self.iou_weight / total,
        )


@dataclass
class TrackerState:
    """Everything carried from one frame to the next."""

    tracks: list[Track] = field(default_factory=list)
    next_id: int = 1
    table: TrackingTable = field(default_factory=TrackingTable)
    frames_processed: int = 0


def compute_cost_matrix(
    track_boxes: np.ndarray,
    detections: np.ndarray,
    config: TrackerConfig,
) -> np.ndarray:
    """Association cost between (x, y, w, h) track boxes and detections.

    cost = iou_w * (1 - IoU) + size_w * sizeDiff + aspect_w * aspectDiff, with
    infinity for pairs whose centers are farther apart than `max_distance`.
    """

    tb = as_float_array(track_boxes, 4, "track boxes")
    db = as_float_array(detections, 4, "detections")
    cost = np.full((tb.shape[0], db.shape[0]), np.inf, dtype=np.float64)
    if cost.size == 0:
        return cost

    if math.isinf(config.max_distance):
        valid = np.ones(cost.shape, dtype=bool)
    else:
        diff = box_centers(tb)[:, None, :] - box_centers(db)[None, :, :]
        valid = np.hypot(diff[..., 0], diff[..., 1]) <= config.max_distance
    ti, di = np.nonzero(valid)
    if ti.size == 0:
        return cost

    a = tb[ti]
    b = db[di]
    iou_cost = 1.0 - paired_iou(a, b)

    area_a = a[:, 2] * a[:, 3]
    area_b = b[:, 2] * b[:, 3]
    max_area = np.maximum(area_a, area_b)
    size_diff = np.zeros_like(max_area)
    np.divide(np.abs(area_a - area_b), max_area, out=size_diff, where=max_area > 0.0)

    aspect_a = a[:, 2] / np.maximum(a[:, 3], _EPS)
    aspect_b = b[:, 2] / np.maximum(b[:, 3], _EPS)
    aspect_gap = np.abs(aspect_a - aspect_b)
    aspect_diff = aspect_gap / (1.0 + aspect_gap)

    cost[ti, di] = (
        config.iou_weight * iou_cost
        + config.size_weight * size_diff
        + config.aspect_ratio_weight * aspect_diff
    )
    return cost


def _spawn(
    next_id: int, boxes: np.ndarray, scores: np.ndarray
) -> tuple[list[Track], int]:
    new_tracks = [
        Track(
            id=next_id + i,
            bbox=tuple(float(v) for v in box),
            score=float(score),
        )
        for i, (box, score) in enumerate(zip(boxes, scores))
    ]
    return new_tracks, next_id + len(new_tracks)


def update_tracks(
    state: TrackerState,
    detections: np.ndarray,
    scores: np.ndarray,
    frame_index: int,
    config: TrackerConfig,
    *,
    copy_table: bool = True,
) -> TrackerState:
    """Advance `state` by one frame and return the new state.

    `detections` is an (N, 4) array of (x, y, w, h) boxes, `scores` has N
    entries. The input state is not modified: the new state gets its own copy
    of the tracking table, appended to only after the whole frame has been
    resolved. Owners that discard the old state may pass `copy_table=False`
    to append in place.
    """

    cfg = config.normalized()
    dets = as_float_array(detections, 4, "detections")
    scs = np.asarray(scores, dtype=np.float64).reshape(-1)
    if scs.shape[0] != dets.shape[0]:
        raise ShapeMismatchError(
            f"Got {dets.shape[0]} detections but {scs.shape[0]} scores in frame {frame_index}"
        )

    tracks = [replace(t) for t in state.tracks]
    next_id = state.next_id
    recorded_ids: list[int] = []
    recorded_rows: list[int] = []

    if dets.shape[0] == 0:
        for track in tracks:
            track.age += 1
            track.consecutive_invisible_count += 1
    elif not tracks:
        tracks, next_id = _spawn(next_id, dets, scs)
        recorded_ids = [t.id for t in tracks]
        recorded_rows = list(range(dets.shape[0]))
    else:
        track_boxes = np.array([t.bbox for t in tracks], dtype=np.float64)
        cost = compute_cost_matrix(track_boxes, dets, cfg)
        result = assign_detections_to_tracks(
            cost, cfg.cost_threshold, exact_limit=cfg.exact_assignment_limit
        )

        for ti, di in result.matches:
            track = tracks[int(ti)]
            track.bbox = tuple(float(v) for v in dets[di])
            track.score = float(scs[di])
            track.age += 1
            track.total_visible_count += 1
            track.consecutive_invisible_count = 0
            recorded_ids.append(track.id)
            recorded_rows.append(int(di))

        for ti in result.unassigned_tracks:
            track = tracks[int(ti)]
            track.age += 1
            track.consecutive_invisible_count += 1

        unmatched = result.unassigned_detections
        new_tracks, next_id = _spawn(next_id, dets[unmatched], scs[unmatched])
        tracks.extend(new_tracks)
        recorded_ids.extend(t.id for t in new_tracks)
        recorded_rows.extend(int(di) for di in unmatched)

    live = [t for t in tracks if t.consecutive_invisible_count < cfg.max_invisible_count]

    table = state.table.copy() if copy_table else state.table
    if recorded_ids:
        rows = np.asarray(recorded_rows, dtype=np.int64)
        table.append(frame_index, recorded_ids, scs[rows], dets[rows])

    logger.debug(
        "Frame %s: %d detections, %d recorded, %d live tracks (%d pruned)",
        frame_index,
        dets.shape[0],
        len(recorded_ids),
        len(live),
        len(tracks) - len(live),
    )
    return TrackerState(
        tracks=live,
        next_id=next_id,
        table=table,
        frames_processed=state.frames_processed + 1,
    )


class CellTracker:
    """Online multi-cell tracker based on overlap, size and shape.

    Tracks are created for unmatched detections, coast while unmatched, and are
    dropped once they have been invisible for `max_invisible_count` frames.
    IDs increase monotonically and are never reused.
    """

    def __init__(self, config: TrackerConfig | None = None) -> None:
        self.config = (config or TrackerConfig()).normalized()
        self.state = TrackerState(table=TrackingTable(self.config.preallocate_rows))

    @property
    def tracks(self) -> list[Track]:
        return [replace(t) for t in self.state.tracks]

    @property
    def table(self) -> TrackingTable:
        return self.state.table

    def update(
        self,
        detections: np.ndarray,
        scores: np.ndarray | None = None,
        frame_index: int | None = None,
    ) -> list[Track]:
        """Feed one frame of (x, y, w, h) detections and return the live tracks."""

        dets = as_float_array(detections, 4, "detections")
        if scores is None:
            scores = np.ones(dets.shape[0], dtype=np.float64)
        if frame_index is None:
            frame_index = self.state.frames_processed + 1
        self.state = update_tracks(
            self.state, dets, scores, int(frame_index), self.config, copy_table=False
        )
        return self.tracks

    def reset(self) -> None:
        self.state = TrackerState(table=TrackingTable(self.config.preallocate_rows))
