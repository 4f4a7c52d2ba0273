"""One-to-one track/detection assignment over a cost matrix.

Small problems are solved exactly (Hungarian algorithm via scipy); larger ones
use a greedy cheapest-pair-first pass. Either way a pair is only accepted when
its cost is strictly below the caller's threshold.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.optimize import linear_sum_assignment

# tracks * detections above which the greedy solver is used.
EXACT_ASSIGNMENT_LIMIT = 1000


@dataclass
class AssignmentResult:
    matches: np.ndarray  # (K, 2) rows of (track_index, detection_index)
    unassigned_tracks: np.ndarray
    unassigned_detections: np.ndarray


def greedy_assignment(cost: np.ndarray) -> np.ndarray:
    """Return per-row column indices (-1 if unassigned), claiming cheapest pairs first."""

    m, n = cost.shape
    assignment = np.full(m, -1, dtype=np.int64)
    if m == 0 or n == 0:
        return assignment
    used_cols = np.zeros(n, dtype=bool)
    flat = cost.ravel()
    finite = np.flatnonzero(np.isfinite(flat))
    order = finite[np.argsort(flat[finite], kind="stable")]
    remaining = min(m, n)
    for idx in order:
        r, c = divmod(int(idx), n)
        if assignment[r] >= 0 or used_cols[c]:
            continue
        assignment[r] = c
        used_cols[c] = True
        remaining -= 1
        if remaining == 0:
            break
    return assignment


def exact_assignment(cost: np.ndarray) -> np.ndarray:
    """Return per-row column indices minimizing total cost (-1 if unassigned)."""

    m, n = cost.shape
    assignment = np.full(m, -1, dtype=np.int64)
    finite = np.isfinite(cost)
    if m == 0 or n == 0 or not finite.any():
        return assignment
    # linear_sum_assignment rejects infeasible matrices; gated pairs get a cost
    # no finite assignment can beat, and are dropped afterwards.
    big = float(np.abs(cost[finite]).max()) * (m + n) + 1.0
    padded = np.where(finite, cost, big)
    rows, cols = linear_sum_assignment(padded)
    keep = finite[rows, cols]
    assignment[rows[keep]] = cols[keep]
    return assignment


def assign_detections_to_tracks(
    cost: np.ndarray,
    cost_threshold: float,
    *,
    exact_limit: int = EXACT_ASSIGNMENT_LIMIT,
) -> AssignmentResult:
    """Solve the assignment and keep pairs with `cost < cost_threshold`."""

    cost = np.asarray(cost, dtype=np.float64)
    m, n = cost.shape
    if m == 0 or n == 0:
        return AssignmentResult(
            matches=np.zeros((0, 2), dtype=np.int64),
            unassigned_tracks=np.arange(m, dtype=np.int64),
            unassigned_detections=np.arange(n, dtype=np.int64),
        )

    if m * n <= exact_limit:
        assignment = exact_assignment(cost)
    else:
        assignment = greedy_assignment(cost)

    rows = np.flatnonzero(assignment >= 0)
    cols = assignment[rows]
    accepted = cost[rows, cols] < float(cost_threshold)
    rows, cols = rows[accepted], cols[accepted]

    track_mask = np.ones(m, dtype=bool)
    track_mask[rows] = False
    det_mask = np.ones(n, dtype=bool)
    det_mask[cols] = False
    return AssignmentResult(
        matches=np.stack([rows, cols], axis=1).astype(np.int64),
        unassigned_tracks=np.flatnonzero(track_mask),
        unassigned_detections=np.flatnonzero(det_mask),
    )
