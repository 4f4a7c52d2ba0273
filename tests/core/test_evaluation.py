import numpy as np
import pytest

from cellcascade.core.analytics.evaluation import (
    DEFAULT_SWEEP_THRESHOLDS,
    ImageDetections,
    ap_over_thresholds,
    area_under_curve,
    average_precision,
    evaluate_dataset,
    interpolate_precision,
)
from cellcascade.core.types import ConfigurationError, ShapeMismatchError


def test_single_exact_prediction():
    curve = evaluate_dataset(
        [ImageDetections([[12, 12, 48, 48]], [0.9], [[10, 10, 50, 50]])]
    )
    assert curve.precision.tolist() == [1.0]
    assert curve.recall.tolist() == [1.0]
    assert curve.average_precision == pytest.approx(1.0)


def test_false_positive_after_true_positive():
    image = {
        "pred_boxes": [[10, 10, 40, 40], [100, 100, 10, 10]],
        "pred_scores": [0.9, 0.5],
        "gt_boxes": [[10, 10, 40, 40]],
    }
    curve = evaluate_dataset([image])
    assert curve.precision.tolist() == [1.0, 0.5]
    assert curve.recall.tolist() == [1.0, 1.0]
    assert curve.is_true_positive.tolist() == [True, False]
    assert curve.average_precision == pytest.approx(1.0)


def test_duplicate_detection_is_false_positive():
    image = ([[0, 0, 10, 10], [0, 0, 10, 10]], [0.8, 0.9], [[0, 0, 10, 10]])
    curve = evaluate_dataset([image])
    assert curve.scores.tolist() == [0.9, 0.8]
    assert curve.is_true_positive.tolist() == [True, False]


def test_prediction_claims_best_unclaimed_ground_truth():
    gts = [[0, 0, 10, 10], [2, 0, 10, 10]]
    # the first prediction ties between both boxes and takes the first one;
    # the second one still finds the other box above the threshold
    preds = [[1, 0, 10, 10], [0, 0, 10, 10]]
    curve = evaluate_dataset([(preds, [0.9, 0.8], gts)])
    assert curve.is_true_positive.tolist() == [True, True]
    assert curve.average_precision == pytest.approx(1.0)


def test_matching_is_per_image():
    a = ([[0, 0, 10, 10]], [0.9], [[50, 50, 10, 10]])
    b = ([[50, 50, 10, 10]], [0.8], [[0, 0, 10, 10]])
    curve = evaluate_dataset([a, b])
    assert curve.is_true_positive.tolist() == [False, False]
    assert curve.average_precision == 0.0


def test_ranking_is_global_across_images():
    a = ([[0, 0, 10, 10], [30, 30, 10, 10]], [0.9, 0.3], [[0, 0, 10, 10]])
    b = ([[0, 0, 10, 10]], [0.6], [[0, 0, 10, 10]])
    curve = evaluate_dataset([a, b])
    assert curve.scores.tolist() == [0.9, 0.6, 0.3]
    assert curve.image_index.tolist() == [0, 1, 0]
    assert curve.recall.tolist() == [0.5, 1.0, 1.0]


def test_images_without_ground_truth_are_skipped_by_default():
    a = ([[0, 0, 10, 10]], [0.8], [[0, 0, 10, 10]])
    empty = ([[0, 0, 10, 10]], [0.9], np.zeros((0, 4)))

    skipped = evaluate_dataset([a, empty])
    assert skipped.precision.tolist() == [1.0]
    assert skipped.average_precision == pytest.approx(1.0)

    counted = evaluate_dataset([a, empty], skip_images_without_ground_truth=False)
    assert counted.precision.tolist() == [0.0, 0.5]
    assert counted.average_precision == pytest.approx(0.5)


def test_no_predictions_or_no_ground_truth():
    curve = evaluate_dataset([(np.zeros((0, 4)), [], [[0, 0, 10, 10]])])
    assert curve.average_precision == 0.0
    assert curve.num_ground_truth == 1
    assert evaluate_dataset([]).average_precision == 0.0


def test_interpolated_precision_is_non_increasing():
    rng = np.random.default_rng(4)
    images = []
    for _ in range(5):
        gts = rng.uniform(0, 200, size=(6, 2))
        gt_boxes = np.concatenate([gts, np.full((6, 2), 12.0)], axis=1)
        preds = gt_boxes + rng.normal(0, 4, size=gt_boxes.shape) * [1, 1, 0, 0]
        preds = np.concatenate([preds, rng.uniform(0, 200, size=(4, 4)) * [1, 1, 0, 0] + [0, 0, 12, 12]])
        images.append((preds, rng.uniform(0, 1, size=preds.shape[0]), gt_boxes))

    curve = evaluate_dataset(images)
    assert np.all(np.diff(curve.interpolated_precision) <= 1e-12)
    assert np.all(curve.interpolated_precision >= curve.precision)
    assert 0.0 <= curve.average_precision <= 1.0


def test_parallel_matches_serial():
    rng = np.random.default_rng(6)
    images = []
    for _ in range(8):
        boxes = np.concatenate([rng.uniform(0, 100, size=(5, 2)), np.full((5, 2), 10.0)], axis=1)
        images.append((boxes + rng.normal(0, 2, size=(5, 4)), rng.uniform(size=5), boxes))

    serial = evaluate_dataset(images)
    parallel = evaluate_dataset(images, max_workers=4)
    assert np.allclose(serial.precision, parallel.precision)
    assert np.array_equal(serial.image_index, parallel.image_index)
    assert serial.average_precision == pytest.approx(parallel.average_precision)


def test_interpolation_and_area_helpers():
    assert interpolate_precision(np.array([0.5, 1.0, 0.2, 0.4])).tolist() == [1.0, 1.0, 0.4, 0.4]
    assert area_under_curve(np.array([0.5, 1.0]), np.array([1.0, 0.5])) == pytest.approx(0.75)


def test_single_image_average_precision():
    assert average_precision([[12, 12, 48, 48]], [0.9], [[10, 10, 50, 50]]) == pytest.approx(1.0)


def test_threshold_sweep():
    sweep = ap_over_thresholds([([[12, 12, 48, 48]], [0.9], [[10, 10, 50, 50]])])
    # IoU is 0.9216: everything but 0.95 counts
    assert sweep.thresholds.tolist() == list(DEFAULT_SWEEP_THRESHOLDS)
    assert sweep.average_precision.tolist() == [1.0] * 9 + [0.0]
    assert sweep.mean_average_precision == pytest.approx(0.9)
    assert sweep.as_dict()[0.95] == 0.0


def test_invalid_inputs():
    with pytest.raises(ConfigurationError):
        evaluate_dataset([], iou_threshold=0.0)
    with pytest.raises(ShapeMismatchError):
        ImageDetections([[0, 0, 1, 1]], [0.5, 0.6], [])
    with pytest.raises(ShapeMismatchError):
        ImageDetections([[0, 0, 1]], [0.5], [])
