"""Per-cell morphology and intensity features from instance masks.

Each detected cell contributes one `CellFeatures` row. Areas and lengths are
scaled by `pixel_to_length` (length units per pixel). Intensity statistics
use the non-zero pixels under each mask of a [0, 1] grayscale image.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass

import numpy as np
from scipy import ndimage, stats
from skimage import color, exposure, measure

from cellcascade.core.types import ShapeMismatchError, as_float_array

# Stand-in intensity for cells whose masked pixels are all zero.
_EMPTY_INTENSITY = 1e-5


@dataclass(frozen=True)
class CellFeatures:
    cell_index: int  # 1-based, in mask order
    confidence: float
    area: float
    perimeter: float
    bbox_x: float
    bbox_y: float
    bbox_width: float
    bbox_height: float
    confluency: float
    aspect_ratio: float
    mean_intensity: float
    min_intensity: float
    max_intensity: float
    intensity_p5: float
    intensity_p95: float
    intensity_std: float
    intensity_skewness: float
    intensity_kurtosis: float
    weighted_centroid_x: float  # relative to the box, 0 at its left edge
    weighted_centroid_y: float
    eccentricity: float
    circularity: float
    solidity: float
    max_feret_diameter: float

    def to_dict(self) -> dict:
        return asdict(self)


def _grayscale(image: np.ndarray) -> np.ndarray:
    img = np.asarray(image)
    if img.dtype == np.uint8:
        img = exposure.rescale_intensity(img.astype(np.float64), out_range=(0.0, 1.0))
    img = img.astype(np.float64)
    if img.ndim == 3 and img.shape[2] == 3:
        img = color.rgb2gray(img)
    elif img.ndim == 3 and img.shape[2] == 1:
        img = img[:, :, 0]
    if img.ndim != 2:
        raise ShapeMismatchError(f"Expected an (H, W) or (H, W, 3) image, got {img.shape}")
    return img


def _intensity_stats(values: np.ndarray) -> dict[str, float]:
    ins = np.sort(values[values != 0])
    if ins.size == 0:
        ins = np.array([_EMPTY_INTENSITY])
    n = ins.size

    def rank(q: float) -> float:
        # Nearest-rank percentile on the sorted values.
        return float(ins[max(1, math.ceil(q * n)) - 1])

    flat = n < 2 or float(np.ptp(ins)) == 0.0
    return {
        "mean_intensity": float(ins.mean()),
        "min_intensity": float(ins[0]),
        "max_intensity": float(ins[-1]),
        "intensity_p5": rank(0.05),
        "intensity_p95": rank(0.95),
        "intensity_std": float(ins.std(ddof=1)) if n > 1 else 0.0,
        "intensity_skewness": math.nan if flat else float(stats.skew(ins)),
        "intensity_kurtosis": math.nan if flat else float(stats.kurtosis(ins, fisher=False)),
    }


def _shape_props(mask: np.ndarray, scale: float) -> dict[str, float]:
    """Shape descriptors of the largest 8-connected component of `mask`."""

    labels = measure.label(mask, connectivity=2)
    regions = measure.regionprops(labels)
    if not regions:
        return {
            "perimeter": 0.0,
            "eccentricity": math.nan,
            "circularity": math.nan,
            "solidity": math.nan,
            "max_feret_diameter": 0.0,
        }
    region = max(regions, key=lambda r: r.area)
    blob = labels == region.label
    # Boundary pixels: object pixels with a 4-neighbour outside the object.
    boundary = blob & ~ndimage.binary_erosion(blob, border_value=0)
    contour_length = float(region.perimeter)
    circularity = math.nan
    if contour_length > 0.0:
        circularity = 4.0 * math.pi * float(region.area) / contour_length**2
    return {
        "perimeter": float(np.count_nonzero(boundary)) * scale,
        "eccentricity": float(region.eccentricity),
        "circularity": circularity,
        "solidity": float(region.solidity),
        "max_feret_diameter": float(region.feret_diameter_max) * scale,
    }


def extract_features(
    image: np.ndarray,
    masks: np.ndarray,
    boxes: np.ndarray,
    scores: np.ndarray | None = None,
    pixel_to_length: float = 1.0,
) -> list[CellFeatures]:
    """Compute one feature row per cell.

    `masks` is an (H, W, N) stack of binary masks aligned with `image`,
    `boxes` the matching (N, 4) (x, y, w, h) boxes in 0-based pixel
    coordinates. Missing `scores` are reported as zero confidence. Zero
    cells give an empty list.
    """

    if not float(pixel_to_length) > 0.0:
        raise ValueError(f"pixel_to_length must be > 0, got {pixel_to_length}")
    img = _grayscale(image)
    stack = np.asarray(masks).astype(bool)
    if stack.ndim == 2:
        stack = stack[:, :, None]
    if stack.ndim != 3 or stack.shape[:2] != img.shape:
        raise ShapeMismatchError(
            f"Masks of shape {stack.shape} do not match an image of shape {img.shape}"
        )
    num_cells = stack.shape[2]
    bxs = as_float_array(boxes, 4, "boxes")
    if bxs.shape[0] != num_cells:
        raise ShapeMismatchError(f"Got {num_cells} masks but {bxs.shape[0]} boxes")
    if scores is None:
        scs = np.zeros(num_cells, dtype=np.float64)
    else:
        scs = np.asarray(scores, dtype=np.float64).reshape(-1)
        if scs.shape[0] != num_cells:
            raise ShapeMismatchError(f"Got {num_cells} masks but {scs.shape[0]} scores")
    if num_cells == 0:
        return []

    scale = float(pixel_to_length)
    pixel_areas = stack.sum(axis=(0, 1)).astype(np.float64)
    confluency = float(pixel_areas.sum()) / float(img.size)
    masked = stack * img[:, :, None]
    weights = masked.sum(axis=(0, 1))
    rows, cols = np.indices(img.shape, dtype=np.float64)
    with np.errstate(invalid="ignore", divide="ignore"):
        centroid_x = (masked * cols[:, :, None]).sum(axis=(0, 1)) / weights
        centroid_y = (masked * rows[:, :, None]).sum(axis=(0, 1)) / weights
        aspect = bxs[:, 2] / bxs[:, 3]
        rel_x = (centroid_x - bxs[:, 0]) / bxs[:, 2]
        rel_y = (centroid_y - bxs[:, 1]) / bxs[:, 3]

    features = []
    for i in range(num_cells):
        features.append(
            CellFeatures(
                cell_index=i + 1,
                confidence=float(scs[i]),
                area=float(pixel_areas[i]) * scale**2,
                bbox_x=float(bxs[i, 0]),
                bbox_y=float(bxs[i, 1]),
                bbox_width=float(bxs[i, 2]),
                bbox_height=float(bxs[i, 3]),
                confluency=confluency,
                aspect_ratio=float(aspect[i]),
                weighted_centroid_x=float(rel_x[i]),
                weighted_centroid_y=float(rel_y[i]),
                **_intensity_stats(masked[:, :, i][stack[:, :, i]]),
                **_shape_props(stack[:, :, i], scale),
            )
        )
    return features


def features_to_columns(features: list[CellFeatures]) -> dict[str, list]:
    """Column-oriented view of feature rows, keyed by field name."""

    names = list(CellFeatures.__dataclass_fields__)
    return {name: [getattr(f, name) for f in features] for name in names}
