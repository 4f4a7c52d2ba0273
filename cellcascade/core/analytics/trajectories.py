"""Per-track trajectory statistics derived from a tracking table."""

from __future__ import annotations

from dataclasses import asdict, dataclass

import numpy as np

from cellcascade.core.geometry import box_centers
from cellcascade.core.trackers.records import TrackingTable


@dataclass
class TrackSummary:
    track_id: int
    first_frame: int
    last_frame: int
    num_observations: int
    mean_confidence: float
    path_length: float
    net_displacement: float
    mean_speed: float  # pixels per frame between first and last observation

    def to_dict(self) -> dict:
        return asdict(self)


def summarize_tracks(table: TrackingTable) -> list[TrackSummary]:
    """One summary per track ID, ordered by ID. Positions are box centers."""

    rows = table.as_array()
    if rows.shape[0] == 0:
        return []

    summaries: list[TrackSummary] = []
    for track_id in np.unique(rows["object_id"]):
        track_rows = rows[rows["object_id"] == track_id]
        track_rows = track_rows[np.argsort(track_rows["frame_id"], kind="stable")]
        centers = box_centers(track_rows["bbox"])
        steps = np.diff(centers, axis=0)
        path_length = float(np.hypot(steps[:, 0], steps[:, 1]).sum()) if steps.size else 0.0
        net = centers[-1] - centers[0]
        first_frame = int(track_rows["frame_id"][0])
        last_frame = int(track_rows["frame_id"][-1])
        span = last_frame - first_frame
        summaries.append(
            TrackSummary(
                track_id=int(track_id),
                first_frame=first_frame,
                last_frame=last_frame,
                num_observations=int(track_rows.shape[0]),
                mean_confidence=float(track_rows["confidence"].mean()),
                path_length=path_length,
                net_displacement=float(np.hypot(net[0], net[1])),
                mean_speed=path_length / span if span > 0 else 0.0,
            )
        )
    return summaries
