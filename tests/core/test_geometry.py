import numpy as np
import pytest

from cellcascade.core.geometry import (
    box_area,
    box_centers,
    box_iou,
    clip_boxes,
    paired_iou,
    pairwise_iou,
    xywh_to_xyxy,
    xyxy_to_xywh,
)
from cellcascade.core.types import ShapeMismatchError


def test_box_iou_edge_cases():
    assert box_iou((0, 0, 1, 1), (2, 2, 1, 1)) == 0.0
    assert box_iou((0, 0, 0, 0), (0, 0, 0, 0)) == 0.0
    assert box_iou((10, 10, 50, 50), (12, 12, 48, 48)) == pytest.approx(2304 / 2500)


def test_pairwise_matches_scalar_iou():
    a = np.array([[0, 0, 10, 10], [5, 5, 10, 10]], float)
    b = np.array([[0, 0, 10, 10], [20, 20, 5, 5], [2, 0, 10, 10]], float)
    iou = pairwise_iou(a, b)
    assert iou.shape == (2, 3)
    for i in range(2):
        for j in range(3):
            assert iou[i, j] == pytest.approx(box_iou(tuple(a[i]), tuple(b[j])))
    assert np.allclose(paired_iou(a, b[:2]), [iou[0, 0], iou[1, 1]])
    assert pairwise_iou(a, np.zeros((0, 4))).shape == (2, 0)


def test_corner_conversion_is_pixel_inclusive():
    corners = np.array([[0.0, 0.0, 9.0, 9.0]])
    assert xyxy_to_xywh(corners).tolist() == [[0.0, 0.0, 10.0, 10.0]]
    assert xywh_to_xyxy(xyxy_to_xywh(corners)).tolist() == corners.tolist()


def test_area_centers_and_clip():
    boxes = np.array([[0, 0, 4, 6], [10, 10, -1, 3]], float)
    assert box_area(boxes).tolist() == [24.0, 0.0]
    assert box_centers(boxes[:1]).tolist() == [[2.0, 3.0]]
    clipped = clip_boxes(np.array([[-5.0, -1.0, 120.0, 50.0]]), 100, 40)
    assert clipped.tolist() == [[0.0, 0.0, 99.0, 39.0]]


def test_bad_shapes_raise():
    with pytest.raises(ShapeMismatchError, match=r"\(N, 4\)"):
        pairwise_iou(np.zeros((2, 3)), np.zeros((1, 4)))
