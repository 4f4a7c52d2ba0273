"""Box geometry shared by the codec, matcher, tracker and evaluator.

Two conventions coexist:

- corner form (x1, y1, x2, y2) is pixel-inclusive, so a box covering pixels
  0..9 has width 10 (`w = x2 - x1 + 1`);
- center/size form (x, y, w, h) spans the continuous extent [x, x + w).

`xyxy_to_xywh` / `xywh_to_xyxy` translate between the two, and IoU is always
computed on the (x, y, w, h) extent.
"""

from __future__ import annotations

import numpy as np

from cellcascade.core.types import BBox, as_float_array


def box_iou(boxA: BBox, boxB: BBox) -> float:
    """Compute the intersection-over-union (IoU) of two (x, y, w, h) boxes."""

    ax, ay, aw, ah = boxA
    bx, by, bw, bh = boxB
    inter_w = max(0.0, min(ax + aw, bx + bw) - max(ax, bx))
    inter_h = max(0.0, min(ay + ah, by + bh) - max(ay, by))
    inter = inter_w * inter_h
    union = max(0.0, aw) * max(0.0, ah) + max(0.0, bw) * max(0.0, bh) - inter
    if union <= 0.0:
        return 0.0
    return inter / union


def pairwise_iou(boxes_a: np.ndarray, boxes_b: np.ndarray) -> np.ndarray:
    """Return the (N, M) IoU matrix between two sets of (x, y, w, h) boxes."""

    a = as_float_array(boxes_a, 4, "boxes_a")
    b = as_float_array(boxes_b, 4, "boxes_b")
    if a.shape[0] == 0 or b.shape[0] == 0:
        return np.zeros((a.shape[0], b.shape[0]), dtype=np.float64)

    xA = np.maximum(a[:, None, 0], b[None, :, 0])
    yA = np.maximum(a[:, None, 1], b[None, :, 1])
    xB = np.minimum(a[:, None, 0] + a[:, None, 2], b[None, :, 0] + b[None, :, 2])
    yB = np.minimum(a[:, None, 1] + a[:, None, 3], b[None, :, 1] + b[None, :, 3])
    inter = np.maximum(0.0, xB - xA) * np.maximum(0.0, yB - yA)
    area_a = np.maximum(0.0, a[:, 2]) * np.maximum(0.0, a[:, 3])
    area_b = np.maximum(0.0, b[:, 2]) * np.maximum(0.0, b[:, 3])
    union = area_a[:, None] + area_b[None, :] - inter
    out = np.zeros_like(inter)
    np.divide(inter, union, out=out, where=union > 0.0)
    return out


def paired_iou(boxes_a: np.ndarray, boxes_b: np.ndarray) -> np.ndarray:
    """IoU of row i of `boxes_a` with row i of `boxes_b` ((x, y, w, h) boxes)."""

    a = as_float_array(boxes_a, 4, "boxes_a")
    b = as_float_array(boxes_b, 4, "boxes_b")
    x_overlap = np.maximum(
        0.0, np.minimum(a[:, 0] + a[:, 2], b[:, 0] + b[:, 2]) - np.maximum(a[:, 0], b[:, 0])
    )
    y_overlap = np.maximum(
        0.0, np.minimum(a[:, 1] + a[:, 3], b[:, 1] + b[:, 3]) - np.maximum(a[:, 1], b[:, 1])
    )
    inter = x_overlap * y_overlap
    union = a[:, 2] * a[:, 3] + b[:, 2] * b[:, 3] - inter
    out = np.zeros_like(inter)
    np.divide(inter, union, out=out, where=union > 0.0)
    return out


def xyxy_to_xywh(boxes: np.ndarray) -> np.ndarray:
    """Pixel-inclusive corners -> (x, y, w, h)."""

    b = as_float_array(boxes, 4, "boxes")
    out = b.copy()
    out[:, 2] = b[:, 2] - b[:, 0] + 1.0
    out[:, 3] = b[:, 3] - b[:, 1] + 1.0
    return out


def xywh_to_xyxy(boxes: np.ndarray) -> np.ndarray:
    """(x, y, w, h) -> pixel-inclusive corners."""

    b = as_float_array(boxes, 4, "boxes")
    out = b.copy()
    out[:, 2] = b[:, 0] + b[:, 2] - 1.0
    out[:, 3] = b[:, 1] + b[:, 3] - 1.0
    return out


def box_area(boxes: np.ndarray) -> np.ndarray:
    """Area of (x, y, w, h) boxes; negative extents count as zero."""

    b = as_float_array(boxes, 4, "boxes")
    return np.maximum(0.0, b[:, 2]) * np.maximum(0.0, b[:, 3])


def box_centers(boxes: np.ndarray) -> np.ndarray:
    """Centers of (x, y, w, h) boxes as an (N, 2) array."""

    b = as_float_array(boxes, 4, "boxes")
    return b[:, 0:2] + b[:, 2:4] / 2.0


def clip_boxes(boxes: np.ndarray, width: float, height: float) -> np.ndarray:
    """Clamp pixel-inclusive corners into [0, width - 1] x [0, height - 1]."""

    b = as_float_array(boxes, 4, "boxes").copy()
    b[:, 0] = np.maximum(b[:, 0], 0.0)
    b[:, 1] = np.maximum(b[:, 1], 0.0)
    b[:, 2] = np.minimum(b[:, 2], float(width) - 1.0)
    b[:, 3] = np.minimum(b[:, 3], float(height) - 1.0)
    return b
