"""Shared type definitions used across the analytics engine.

This module centralizes small, stable types (boxes, tracks, tracking rows,
per-frame summaries) and the error taxonomy so codec/matcher/tracker/evaluator
code can stay strongly typed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import numpy as np

# Corner form (x1, y1, x2, y2) and center/size form (x, y, w, h), both in pixels.
BBox = tuple[float, float, float, float]


class CellCascadeError(RuntimeError):
    pass


class ShapeMismatchError(CellCascadeError, ValueError):
    """Regression, proposal or batch dimensions disagree."""


class ConfigurationError(CellCascadeError, ValueError):
    """Malformed thresholds, ranges or weights caught at entry."""


class ClassIndexOutOfRangeError(CellCascadeError, IndexError):
    """A per-class regression slice beyond the available class count was requested."""


class TrackStatus(str, Enum):
    ACTIVE = "active"
    COASTING = "coasting"


@dataclass
class Track:
    """Identity-persistent cell track.

    `bbox` is stored in (x, y, w, h) form, as handed over by the detector.
    """

    id: int
    bbox: BBox
    score: float
    age: int = 1
    total_visible_count: int = 1
    consecutive_invisible_count: int = 0

    @property
    def status(self) -> TrackStatus:
        if self.consecutive_invisible_count == 0:
            return TrackStatus.ACTIVE
        return TrackStatus.COASTING


@dataclass(frozen=True)
class TrackingRecord:
    """One row of the tracking table."""

    frame_id: int
    object_id: int
    confidence: float
    bbox: BBox


@dataclass
class CellDetection:
    """Post-processed detection in image coordinates."""

    bbox: BBox  # x, y, w, h
    confidence: float


@dataclass
class FrameSummary:
    """Metadata payload associated with a processed frame."""

    frame_id: int
    timestamp: float
    detections: list[CellDetection]
    tracks: list[Track]
    num_proposals: int = 0
    profile: dict[str, float] | None = None
    counts: dict[str, int] = field(default_factory=dict)


def as_float_array(values, columns: int, name: str) -> np.ndarray:
    """Return `values` as a float64 (N, columns) array, raising on other shapes."""

    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0:
        return np.zeros((0, columns), dtype=np.float64)
    if arr.ndim == 1 and arr.shape[0] == columns:
        arr = arr.reshape(1, columns)
    if arr.ndim != 2 or arr.shape[1] != columns:
        raise ShapeMismatchError(
            f"{name} must have shape (N, {columns}), got {tuple(arr.shape)}"
        )
    return arr
