"""Append-only tracking table with amortized capacity doubling."""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import numpy as np

from cellcascade.core.types import ShapeMismatchError, TrackingRecord

RECORD_DTYPE = np.dtype(
    [
        ("frame_id", np.int64),
        ("object_id", np.int64),
        ("confidence", np.float64),
        ("bbox", np.float64, (4,)),
    ]
)


class TrackingTable:
    """Row-oriented (frame_id, object_id, confidence, bbox) log.

    Rows live in a preallocated structured array; when an append does not fit,
    capacity grows to max(2 * capacity, rows needed).
    """

    def __init__(self, capacity: int = 1000) -> None:
        self._rows = np.zeros(max(1, int(capacity)), dtype=RECORD_DTYPE)
        self._size = 0

    def __len__(self) -> int:
        return self._size

    @property
    def capacity(self) -> int:
        return int(self._rows.shape[0])

    def _reserve(self, extra: int) -> None:
        needed = self._size + extra
        if needed <= self.capacity:
            return
        grown = np.zeros(max(self.capacity * 2, needed), dtype=RECORD_DTYPE)
        grown[: self._size] = self._rows[: self._size]
        self._rows = grown

    def append(
        self,
        frame_id: int,
        object_ids: np.ndarray,
        confidences: np.ndarray,
        boxes: np.ndarray,
    ) -> None:
        ids = np.asarray(object_ids, dtype=np.int64).reshape(-1)
        scores = np.asarray(confidences, dtype=np.float64).reshape(-1)
        bxs = np.asarray(boxes, dtype=np.float64).reshape(-1, 4)
        if not ids.shape[0] == scores.shape[0] == bxs.shape[0]:
            raise ShapeMismatchError(
                f"Tracking rows disagree: {ids.shape[0]} ids, {scores.shape[0]} scores, "
                f"{bxs.shape[0]} boxes"
            )
        count = ids.shape[0]
        if count == 0:
            return
        self._reserve(count)
        rows = self._rows[self._size : self._size + count]
        rows["frame_id"] = int(frame_id)
        rows["object_id"] = ids
        rows["confidence"] = scores
        rows["bbox"] = bxs
        self._size += count

    def copy(self) -> TrackingTable:
        """Independent table with the same rows and capacity."""

        other = type(self).__new__(type(self))
        other._rows = self._rows.copy()
        other._size = self._size
        return other

    def as_array(self) -> np.ndarray:
        """Copy of the used rows as a structured array."""

        return self._rows[: self._size].copy()

    def __iter__(self) -> Iterator[TrackingRecord]:
        for row in self._rows[: self._size]:
            yield TrackingRecord(
                frame_id=int(row["frame_id"]),
                object_id=int(row["object_id"]),
                confidence=float(row["confidence"]),
                bbox=tuple(float(v) for v in row["bbox"]),
            )

    def to_records(self) -> list[TrackingRecord]:
        return list(self)

    def rows_for_track(self, object_id: int) -> np.ndarray:
        rows = self._rows[: self._size]
        return rows[rows["object_id"] == int(object_id)].copy()

    def rows_for_frame(self, frame_id: int) -> np.ndarray:
        rows = self._rows[: self._size]
        return rows[rows["frame_id"] == int(frame_id)].copy()

    def to_dict(self) -> dict[str, list[Any]]:
        """Column-oriented JSON-serializable view."""

        rows = self._rows[: self._size]
        return {
            "frameID": rows["frame_id"].tolist(),
            "objectID": rows["object_id"].tolist(),
            "confidence": rows["confidence"].tolist(),
            "bbox": rows["bbox"].tolist(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, list[Any]]) -> TrackingTable:
        frames = list(data.get("frameID", []))
        table = cls(capacity=max(1, len(frames)))
        ids = list(data.get("objectID", []))
        scores = list(data.get("confidence", []))
        boxes = list(data.get("bbox", []))
        if not len(frames) == len(ids) == len(scores) == len(boxes):
            raise ShapeMismatchError("Tracking table columns have different lengths")
        for frame_id, object_id, score, box in zip(frames, ids, scores, boxes):
            table.append(int(frame_id), [object_id], [score], [box])
        return table

    def save_json(self, path: str | Path) -> None:
        out_path = Path(path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")

    @classmethod
    def load_json(cls, path: str | Path) -> TrackingTable:
        return cls.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))
