"""Box regression encode/decode in R-CNN log-space parameterization.

Boxes are pixel-inclusive corners (x1, y1, x2, y2). For a reference box

    w = x2 - x1 + 1,  cx = x1 + 0.5 * (w - 1)

a delta (dx, dy, dw, dh) maps it to a box with center `cx + dx * w` and width
`w * exp(dw)` (same for y/h). `encode_boxes` is the exact inverse.

Regression tensors arrive from the network in several physically equivalent
layouts (see `RegressionLayout`). They are normalized to the canonical
(4 * num_classes, num_proposals, batch) layout on entry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np

from cellcascade.core.types import (
    ClassIndexOutOfRangeError,
    ConfigurationError,
    ShapeMismatchError,
    as_float_array,
)

logger = logging.getLogger(__name__)


class RegressionLayout(str, Enum):
    # (L,) or (1, 1, 1, L) with L = 4 * num_classes * num_proposals; batch of one.
    FLAT = "flat"
    # (1, 1, 1, L, batch)
    FLAT_BATCHED = "flat_batched"
    # (4 * num_classes, num_proposals[, 1], batch) or (4 * num_classes, num_proposals)
    STANDARD = "standard"


@dataclass(frozen=True)
class DecodeConfig:
    """Post-processing policy applied after decoding."""

    # 1-based index of the class slice to use when deltas are per-class.
    class_index: int = 1
    # Boxes narrower/shorter than this are expanded symmetrically around their center.
    min_size: float = 1.0
    # (image_width, image_height); None disables clipping.
    clip_bounds: tuple[float, float] | None = None
    round_to_pixels: bool = False

    def __post_init__(self) -> None:
        if int(self.class_index) < 1:
            raise ConfigurationError(f"class_index must be >= 1, got {self.class_index}")
        if not float(self.min_size) > 0.0:
            raise ConfigurationError(f"min_size must be > 0, got {self.min_size}")
        if self.clip_bounds is not None:
            if len(self.clip_bounds) != 2:
                raise ConfigurationError(
                    f"clip_bounds must be (width, height), got {self.clip_bounds!r}"
                )
            if min(float(v) for v in self.clip_bounds) <= 0.0:
                raise ConfigurationError(f"clip_bounds must be positive, got {self.clip_bounds!r}")


def _widths_and_centers(boxes: np.ndarray) -> tuple[np.ndarray, ...]:
    widths = boxes[:, 2] - boxes[:, 0] + 1.0
    heights = boxes[:, 3] - boxes[:, 1] + 1.0
    cx = boxes[:, 0] + 0.5 * (widths - 1.0)
    cy = boxes[:, 1] + 0.5 * (heights - 1.0)
    return widths, heights, cx, cy


def decode_boxes(reference: np.ndarray, deltas: np.ndarray) -> np.ndarray:
    """Apply (dx, dy, dw, dh) deltas to (N, 4) corner boxes."""

    ref = as_float_array(reference, 4, "reference boxes")
    d = as_float_array(deltas, 4, "deltas")
    if ref.shape[0] != d.shape[0]:
        raise ShapeMismatchError(
            f"reference boxes ({ref.shape[0]}) and deltas ({d.shape[0]}) disagree in count"
        )

    widths, heights, cx, cy = _widths_and_centers(ref)
    pred_cx = d[:, 0] * widths + cx
    pred_cy = d[:, 1] * heights + cy
    pred_w = np.exp(d[:, 2]) * widths
    pred_h = np.exp(d[:, 3]) * heights

    out = np.empty_like(ref)
    out[:, 0] = pred_cx - 0.5 * (pred_w - 1.0)
    out[:, 1] = pred_cy - 0.5 * (pred_h - 1.0)
    out[:, 2] = pred_cx + 0.5 * (pred_w - 1.0)
    out[:, 3] = pred_cy + 0.5 * (pred_h - 1.0)
    return out


def encode_boxes(reference: np.ndarray, target: np.ndarray) -> np.ndarray:
    """Return the deltas that map each reference box onto its target box."""

    ref = as_float_array(reference, 4, "reference boxes")
    tgt = as_float_array(target, 4, "target boxes")
    if ref.shape[0] != tgt.shape[0]:
        raise ShapeMismatchError(
            f"reference boxes ({ref.shape[0]}) and target boxes ({tgt.shape[0]}) disagree in count"
        )

    rw, rh, rcx, rcy = _widths_and_centers(ref)
    tw, th, tcx, tcy = _widths_and_centers(tgt)
    out = np.empty_like(ref)
    out[:, 0] = (tcx - rcx) / rw
    out[:, 1] = (tcy - rcy) / rh
    out[:, 2] = np.log(tw / rw)
    out[:, 3] = np.log(th / rh)
    return out


def infer_layout(shape: tuple[int, ...], num_proposals: int, batch_size: int) -> RegressionLayout:
    """Recognize which documented layout a regression array uses."""

    shape = tuple(int(s) for s in shape)
    if len(shape) == 1:
        return RegressionLayout.FLAT
    if len(shape) == 4 and shape[:3] == (1, 1, 1):
        return RegressionLayout.FLAT
    if len(shape) == 5 and shape[:3] == (1, 1, 1):
        return RegressionLayout.FLAT_BATCHED
    if len(shape) in (2, 3) and shape[0] % 4 == 0 and shape[0] > 0:
        return RegressionLayout.STANDARD
    if len(shape) == 4 and shape[2] == 1 and shape[0] % 4 == 0 and shape[0] > 0:
        return RegressionLayout.STANDARD
    raise ShapeMismatchError(
        f"Unsupported regression shape {shape} for {num_proposals} proposals x {batch_size} "
        "batch. Expected (L,), (1,1,1,L), (1,1,1,L,B), (4C,N), (4C,N,B) or (4C,N,1,B)"
    )


def _flat_num_classes(length: int, num_proposals: int, shape: tuple[int, ...]) -> int:
    if length == 0 or length % (4 * num_proposals) != 0:
        raise ShapeMismatchError(
            f"Regression length {length} (shape {shape}) is not a multiple of "
            f"4 x {num_proposals} proposals"
        )
    return length // (4 * num_proposals)


def normalize_regressions(
    regressions: np.ndarray,
    num_proposals: int,
    batch_size: int,
    layout: RegressionLayout | None = None,
) -> np.ndarray:
    """Return regressions in canonical (4 * num_classes, num_proposals, batch) layout."""

    reg = np.asarray(regressions, dtype=np.float64)
    shape = tuple(reg.shape)
    detected = infer_layout(shape, num_proposals, batch_size)
    if layout is not None and RegressionLayout(layout) is not detected:
        raise ShapeMismatchError(
            f"Regression shape {shape} does not match the declared {RegressionLayout(layout).value} layout"
        )

    if detected is RegressionLayout.FLAT:
        if batch_size != 1:
            raise ShapeMismatchError(
                f"Flat regression shape {shape} requires batch size 1, proposals have "
                f"batch size {batch_size}; use (1,1,1,L,B) for batches"
            )
        flat = reg.reshape(-1)
        num_classes = _flat_num_classes(flat.size, num_proposals, shape)
        canonical = flat.reshape(num_proposals, 4 * num_classes).T[:, :, None]
    elif detected is RegressionLayout.FLAT_BATCHED:
        if shape[4] != batch_size:
            raise ShapeMismatchError(
                f"Regression batch size ({shape[4]}) must match proposal batch size ({batch_size})"
            )
        num_classes = _flat_num_classes(shape[3], num_proposals, shape)
        canonical = reg.reshape(shape[3], batch_size).reshape(
            num_proposals, 4 * num_classes, batch_size
        ).transpose(1, 0, 2)
    else:
        proposals_axis = shape[1]
        batch_axis = 1 if len(shape) == 2 else shape[-1]
        if proposals_axis != num_proposals:
            raise ShapeMismatchError(
                f"Regression shape {shape} covers {proposals_axis} proposals, "
                f"expected {num_proposals}"
            )
        if batch_axis != batch_size:
            raise ShapeMismatchError(
                f"Regression batch size ({batch_axis}, shape {shape}) must match "
                f"proposal batch size ({batch_size})"
            )
        canonical = reg.reshape(shape[0], num_proposals, batch_size)

    logger.debug(
        "Normalized regression shape %s (%s) to %s", shape, detected.value, canonical.shape
    )
    return np.ascontiguousarray(canonical)


def select_class_deltas(canonical: np.ndarray, class_index: int) -> np.ndarray:
    """Pick the (4, N, B) slice of a canonical per-class regression array (1-based index)."""

    num_classes = canonical.shape[0] // 4
    if not 1 <= int(class_index) <= num_classes:
        raise ClassIndexOutOfRangeError(
            f"class_index {class_index} out of range for {num_classes} regression classes"
        )
    start = (int(class_index) - 1) * 4
    return canonical[start : start + 4]


def _as_proposal_array(proposals: np.ndarray) -> tuple[np.ndarray, tuple[int, ...]]:
    """Normalize proposals to (5, N, B); also return the caller's shape."""

    props = np.asarray(proposals, dtype=np.float64)
    shape = tuple(props.shape)
    if props.ndim == 2 and shape[0] == 5:
        return props[:, :, None], shape
    if props.ndim == 3 and shape[0] == 5:
        return props, shape
    if props.ndim == 4 and shape[0] == 5 and shape[2] == 1:
        return props.reshape(5, shape[1], shape[3]), shape
    raise ShapeMismatchError(
        f"Proposals must have shape (5, N), (5, N, B) or (5, N, 1, B), got {shape}"
    )


def enforce_min_size(boxes: np.ndarray, min_size: float) -> np.ndarray:
    """Expand (N, 4) corner boxes below `min_size` symmetrically around their center."""

    out = np.array(boxes, dtype=np.float64, copy=True)
    widths = out[:, 2] - out[:, 0] + 1.0
    heights = out[:, 3] - out[:, 1] + 1.0
    small_w = widths < min_size
    small_h = heights < min_size
    if np.any(small_w):
        expand = (min_size - widths[small_w]) / 2.0
        out[small_w, 0] -= expand
        out[small_w, 2] += expand
    if np.any(small_h):
        expand = (min_size - heights[small_h]) / 2.0
        out[small_h, 1] -= expand
        out[small_h, 3] += expand
    return out


def apply_regression(
    proposals: np.ndarray,
    regressions: np.ndarray,
    *,
    layout: RegressionLayout | None = None,
    config: DecodeConfig | None = None,
) -> np.ndarray:
    """Refine proposals with regression deltas.

    `proposals` has rows (x1, y1, x2, y2, score) and shape (5, N), (5, N, B) or
    (5, N, 1, B). The result has the same shape; scores are passed through.
    """

    cfg = config or DecodeConfig()
    props, out_shape = _as_proposal_array(proposals)
    num_proposals, batch_size = props.shape[1], props.shape[2]
    if num_proposals == 0:
        return np.zeros(out_shape, dtype=np.float64)

    canonical = normalize_regressions(regressions, num_proposals, batch_size, layout)
    deltas = select_class_deltas(canonical, cfg.class_index)

    reference = props[:4].reshape(4, -1).T
    boxes = decode_boxes(reference, deltas.reshape(4, -1).T)
    boxes = enforce_min_size(boxes, float(cfg.min_size))

    if cfg.clip_bounds is not None:
        img_w, img_h = (float(v) for v in cfg.clip_bounds)
        boxes[:, [0, 2]] = np.clip(boxes[:, [0, 2]], 0.0, img_w - 1.0)
        boxes[:, [1, 3]] = np.clip(boxes[:, [1, 3]], 0.0, img_h - 1.0)

    if cfg.round_to_pixels:
        boxes = np.round(boxes)

    refined = np.empty_like(props)
    refined[:4] = boxes.T.reshape(4, num_proposals, batch_size)
    refined[4] = props[4]
    return refined.reshape(out_shape)
