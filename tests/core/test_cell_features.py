import math

import numpy as np
import pytest
from scipy import stats

from cellcascade.core.analytics.features import extract_features, features_to_columns
from cellcascade.core.types import ShapeMismatchError


def _rectangle_cell(value=0.5):
    image = np.zeros((20, 30))
    mask = np.zeros((20, 30, 1), dtype=bool)
    mask[3:9, 2:12, 0] = True
    image[3:9, 2:12] = value
    return image, mask, np.array([[2.0, 3.0, 10.0, 6.0]])


def test_zero_cells_give_empty_result():
    image = np.zeros((20, 30))
    assert extract_features(image, np.zeros((20, 30, 0)), np.zeros((0, 4))) == []
    assert features_to_columns([])["area"] == []


def test_rectangle_morphology():
    image, mask, boxes = _rectangle_cell()
    (cell,) = extract_features(image, mask, boxes, scores=np.array([0.8]))

    assert cell.cell_index == 1
    assert cell.confidence == pytest.approx(0.8)
    assert cell.area == 60.0
    assert cell.perimeter == 28.0
    assert cell.confluency == pytest.approx(60 / 600)
    assert cell.aspect_ratio == pytest.approx(10 / 6)
    assert (cell.bbox_x, cell.bbox_y, cell.bbox_width, cell.bbox_height) == (2.0, 3.0, 10.0, 6.0)
    assert cell.solidity == pytest.approx(1.0)
    assert 0.0 < cell.eccentricity < 1.0
    assert 9.5 < cell.max_feret_diameter < 12.5
    assert cell.circularity > 0.0


def test_uniform_intensity_and_weighted_centroid():
    image, mask, boxes = _rectangle_cell(0.5)
    (cell,) = extract_features(image, mask, boxes)

    assert cell.confidence == 0.0
    assert cell.mean_intensity == pytest.approx(0.5)
    assert cell.min_intensity == cell.max_intensity == pytest.approx(0.5)
    assert cell.intensity_p5 == cell.intensity_p95 == pytest.approx(0.5)
    assert cell.intensity_std == 0.0
    assert math.isnan(cell.intensity_skewness)
    assert math.isnan(cell.intensity_kurtosis)
    assert cell.weighted_centroid_x == pytest.approx((6.5 - 2.0) / 10.0)
    assert cell.weighted_centroid_y == pytest.approx((5.5 - 3.0) / 6.0)


def test_intensity_statistics_ignore_zero_pixels():
    values = np.linspace(0.1, 1.0, 10)
    image = np.zeros((10, 10))
    image[0:2, 0:5] = values.reshape(2, 5)
    mask = np.zeros((10, 10, 1), dtype=bool)
    mask[0:4, 0:5, 0] = True  # lower half of the mask is dark

    (cell,) = extract_features(image, mask, np.array([[0.0, 0.0, 5.0, 4.0]]))
    assert cell.area == 20.0
    assert cell.mean_intensity == pytest.approx(0.55)
    assert cell.intensity_p5 == pytest.approx(0.1)
    assert cell.intensity_p95 == pytest.approx(1.0)
    assert cell.intensity_std == pytest.approx(np.std(values, ddof=1))
    assert cell.intensity_skewness == pytest.approx(0.0, abs=1e-9)
    assert cell.intensity_kurtosis == pytest.approx(stats.kurtosis(values, fisher=False))


def test_pixel_to_length_scales_areas_and_lengths():
    image, mask, boxes = _rectangle_cell()
    (unit,) = extract_features(image, mask, boxes)
    (scaled,) = extract_features(image, mask, boxes, pixel_to_length=2.0)

    assert scaled.area == pytest.approx(4 * unit.area)
    assert scaled.perimeter == pytest.approx(2 * unit.perimeter)
    assert scaled.max_feret_diameter == pytest.approx(2 * unit.max_feret_diameter)
    assert scaled.confluency == pytest.approx(unit.confluency)
    with pytest.raises(ValueError):
        extract_features(image, mask, boxes, pixel_to_length=0.0)


def test_shape_uses_largest_component():
    image = np.ones((20, 20))
    mask = np.zeros((20, 20, 1), dtype=bool)
    mask[2:8, 2:8, 0] = True
    mask[15, 15, 0] = True

    (cell,) = extract_features(image, mask, np.array([[2.0, 2.0, 14.0, 14.0]]))
    assert cell.area == 37.0
    assert cell.perimeter == 20.0
    assert cell.eccentricity == pytest.approx(0.0, abs=1e-6)


def test_empty_mask_and_uint8_image():
    image = np.zeros((10, 10), dtype=np.uint8)
    image[2:6, 2:6] = 255
    mask = np.zeros((10, 10, 2), dtype=bool)
    mask[2:6, 2:6, 0] = True

    full, empty = extract_features(image, mask, np.array([[2, 2, 4, 4], [0, 0, 1, 1]]))
    assert full.mean_intensity == pytest.approx(1.0)
    assert empty.area == 0.0
    assert empty.perimeter == 0.0
    assert math.isnan(empty.eccentricity)
    assert math.isnan(empty.weighted_centroid_x)
    assert empty.mean_intensity == pytest.approx(1e-5)

    columns = features_to_columns([full, empty])
    assert columns["cell_index"] == [1, 2]
    assert full.to_dict()["area"] == 16.0


def test_mismatched_inputs_raise():
    image, mask, boxes = _rectangle_cell()
    with pytest.raises(ShapeMismatchError):
        extract_features(image, mask, np.zeros((2, 4)))
    with pytest.raises(ShapeMismatchError):
        extract_features(image, mask, boxes, scores=np.array([0.1, 0.2]))
    with pytest.raises(ShapeMismatchError):
        extract_features(np.zeros((5, 5)), mask, boxes)
