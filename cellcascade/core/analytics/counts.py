"""Cell-count agreement between predictions and annotations.

Counts predictions above a confidence cut-off per image and compares them
with the annotated counts (absolute error, capped percentage error and the
linear correlation used for predicted-vs-true scatter plots).
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from cellcascade.core.types import ShapeMismatchError

MAPE_CAP = 100.0


@dataclass
class CountAgreement:
    true_counts: np.ndarray
    predicted_counts: np.ndarray
    ape_per_image: np.ndarray  # absolute percentage error, capped at 100
    mean_absolute_error: float
    mean_absolute_percentage_error: float
    correlation: float

    def to_dict(self) -> dict:
        return {
            "true_counts": self.true_counts.tolist(),
            "predicted_counts": self.predicted_counts.tolist(),
            "ape_per_image": self.ape_per_image.tolist(),
            "mean_absolute_error": self.mean_absolute_error,
            "mean_absolute_percentage_error": self.mean_absolute_percentage_error,
            "correlation": self.correlation,
        }


def count_predictions(scores: np.ndarray, score_threshold: float = 0.2) -> int:
    """Number of predictions scoring strictly above `score_threshold`."""

    s = np.asarray(scores, dtype=np.float64).reshape(-1)
    return int(np.count_nonzero(s > float(score_threshold)))


def count_agreement(
    true_counts: Sequence[int] | np.ndarray,
    predicted_counts: Sequence[int] | np.ndarray,
) -> CountAgreement:
    true_c = np.asarray(true_counts, dtype=np.float64).reshape(-1)
    pred_c = np.asarray(predicted_counts, dtype=np.float64).reshape(-1)
    if true_c.shape != pred_c.shape:
        raise ShapeMismatchError(
            f"{true_c.shape[0]} true counts but {pred_c.shape[0]} predicted counts"
        )
    if true_c.size == 0:
        empty = np.zeros(0)
        return CountAgreement(true_c, pred_c, empty, 0.0, 0.0, 0.0)

    abs_err = np.abs(true_c - pred_c)
    # An empty annotation with any prediction is the worst case.
    ape = np.full_like(abs_err, MAPE_CAP)
    np.divide(abs_err * 100.0, true_c, out=ape, where=true_c > 0)
    ape[(true_c == 0) & (pred_c == 0)] = 0.0
    ape = np.minimum(ape, MAPE_CAP)

    correlation = 0.0
    if true_c.size > 1 and np.std(true_c) > 0 and np.std(pred_c) > 0:
        correlation = float(np.corrcoef(true_c, pred_c)[0, 1])

    return CountAgreement(
        true_counts=true_c,
        predicted_counts=pred_c,
        ape_per_image=ape,
        mean_absolute_error=float(abs_err.mean()),
        mean_absolute_percentage_error=float(ape.mean()),
        correlation=correlation,
    )
