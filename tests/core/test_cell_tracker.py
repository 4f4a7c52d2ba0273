import logging
import math

import numpy as np
import pytest

from cellcascade.core.trackers.cell_tracker import (
    CellTracker,
    TrackerConfig,
    TrackerState,
    compute_cost_matrix,
    update_tracks,
)
from cellcascade.core.types import ConfigurationError, ShapeMismatchError, TrackStatus


def test_track_pruned_after_max_invisible_frames():
    tracker = CellTracker(TrackerConfig(max_invisible_count=1))
    assert len(tracker.update(np.array([[0.0, 0.0, 10.0, 10.0]]))) == 1
    assert len(tracker.update(np.zeros((0, 4)))) == 0


def test_coasting_track_survives_until_limit():
    tracker = CellTracker(TrackerConfig(max_invisible_count=3))
    tracker.update(np.array([[0.0, 0.0, 10.0, 10.0]]))
    tracks = tracker.update(np.zeros((0, 4)))
    assert tracks[0].status is TrackStatus.COASTING
    tracker.update(np.zeros((0, 4)))
    assert len(tracker.tracks) == 1
    assert tracker.tracks[0].consecutive_invisible_count == 2
    assert tracker.update(np.zeros((0, 4))) == []


def test_matched_detection_keeps_identity():
    tracker = CellTracker()
    first = tracker.update(np.array([[0.0, 0.0, 10.0, 10.0], [50.0, 50.0, 12.0, 12.0]]))
    second = tracker.update(np.array([[51.0, 50.0, 12.0, 12.0], [1.0, 0.0, 10.0, 10.0]]))

    by_id = {t.id: t for t in second}
    assert sorted(by_id) == sorted(t.id for t in first)
    assert by_id[1].bbox == (1.0, 0.0, 10.0, 10.0)
    assert by_id[2].bbox == (51.0, 50.0, 12.0, 12.0)
    assert by_id[1].age == 2 and by_id[1].total_visible_count == 2


def test_ids_are_never_reused():
    tracker = CellTracker(TrackerConfig(max_invisible_count=1))
    seen: set[int] = set()
    rng = np.random.default_rng(5)
    for _ in range(30):
        n = int(rng.integers(0, 4))
        xy = rng.uniform(0, 500, size=(n, 2))
        boxes = np.concatenate([xy, np.full((n, 2), 8.0)], axis=1)
        before = {t.id for t in tracker.tracks}
        tracks = tracker.update(boxes)
        ids = [t.id for t in tracks]
        assert len(ids) == len(set(ids))
        new_ids = set(ids) - before
        assert not new_ids & seen
        seen |= set(ids)


def test_empty_frame_never_creates_or_moves_tracks():
    tracker = CellTracker(TrackerConfig(max_invisible_count=5))
    before = tracker.update(np.array([[0.0, 0.0, 10.0, 10.0], [30.0, 30.0, 10.0, 10.0]]))
    after = tracker.update(np.zeros((0, 4)))
    assert len(after) <= len(before)
    assert {t.id: t.bbox for t in after} == {t.id: t.bbox for t in before}


def test_table_records_matched_and_new_tracks_only():
    tracker = CellTracker()
    tracker.update(np.array([[0.0, 0.0, 10.0, 10.0], [50.0, 50.0, 10.0, 10.0]]), [0.9, 0.8])
    tracker.update(np.array([[1.0, 0.0, 10.0, 10.0]]), [0.7])

    rows = tracker.table.as_array()
    assert rows["frame_id"].tolist() == [1, 1, 2]
    assert rows["object_id"].tolist() == [1, 2, 1]
    assert rows["confidence"].tolist() == pytest.approx([0.9, 0.8, 0.7])


def test_distance_gate_blocks_association():
    boxes1 = np.array([[0.0, 0.0, 100.0, 100.0]])
    boxes2 = np.array([[10.0, 0.0, 100.0, 100.0]])  # IoU 0.82, centers 10 px apart

    ungated = CellTracker()
    ungated.update(boxes1)
    assert [t.id for t in ungated.update(boxes2)] == [1]

    gated = CellTracker(TrackerConfig(max_distance=5.0))
    gated.update(boxes1)
    assert sorted(t.id for t in gated.update(boxes2)) == [1, 2]


def test_cost_matrix_terms():
    cfg = TrackerConfig()
    cost = compute_cost_matrix(
        np.array([[0.0, 0.0, 10.0, 10.0]]),
        np.array([[0.0, 0.0, 10.0, 10.0], [100.0, 100.0, 10.0, 10.0], [0.0, 0.0, 20.0, 10.0]]),
        cfg,
    )
    assert cost.shape == (1, 3)
    assert cost[0, 0] == pytest.approx(0.0)
    assert cost[0, 1] == pytest.approx(0.6)
    # IoU 0.5, half the area, aspect 1 vs 2
    assert cost[0, 2] == pytest.approx(0.6 * 0.5 + 0.2 * 0.5 + 0.2 * 0.5)

    gated = compute_cost_matrix(
        np.array([[0.0, 0.0, 10.0, 10.0]]),
        np.array([[100.0, 100.0, 10.0, 10.0]]),
        TrackerConfig(max_distance=20.0),
    )
    assert math.isinf(gated[0, 0])


def test_weights_are_normalized_with_warning(caplog):
    with caplog.at_level(logging.WARNING, logger="cellcascade.core.trackers.cell_tracker"):
        tracker = CellTracker(TrackerConfig(size_weight=0.5, aspect_ratio_weight=0.5, iou_weight=1.0))
    cfg = tracker.config
    assert cfg.size_weight + cfg.aspect_ratio_weight + cfg.iou_weight == pytest.approx(1.0)
    assert cfg.iou_weight == pytest.approx(0.5)
    assert any("normalizing" in r.getMessage() for r in caplog.records)


def test_greedy_path_gives_same_result_on_clear_cases():
    boxes = np.array([[0.0, 0.0, 10.0, 10.0], [40.0, 40.0, 10.0, 10.0]])
    greedy = CellTracker(TrackerConfig(exact_assignment_limit=0))
    greedy.update(boxes)
    tracks = greedy.update(boxes + np.array([1.0, 0.0, 0.0, 0.0]))
    assert sorted(t.id for t in tracks) == [1, 2]


def test_failed_update_leaves_state_untouched():
    state = TrackerState()
    state = update_tracks(state, np.array([[0.0, 0.0, 10.0, 10.0]]), [0.9], 1, TrackerConfig())
    rows_before = len(state.table)
    with pytest.raises(ShapeMismatchError):
        update_tracks(state, np.array([[0.0, 0.0, 10.0, 10.0]]), [0.9, 0.1], 2, TrackerConfig())
    with pytest.raises(ShapeMismatchError):
        update_tracks(state, np.zeros((2, 3)), [0.9, 0.1], 2, TrackerConfig())
    assert len(state.table) == rows_before
    assert state.tracks[0].age == 1
    assert state.next_id == 2


def test_update_does_not_mutate_previous_state():
    state = update_tracks(TrackerState(), np.array([[0.0, 0.0, 10.0, 10.0]]), [0.9], 1, TrackerConfig())
    nxt = update_tracks(state, np.zeros((0, 4)), [], 2, TrackerConfig())
    assert state.tracks[0].consecutive_invisible_count == 0
    assert nxt.tracks[0].consecutive_invisible_count == 1
    assert nxt.frames_processed == 2


def test_branching_from_earlier_state_keeps_tables_apart():
    first = update_tracks(
        TrackerState(), np.array([[0.0, 0.0, 10.0, 10.0]]), [0.9], 1, TrackerConfig()
    )
    frame2 = np.array([[1.0, 0.0, 10.0, 10.0], [50.0, 50.0, 8.0, 8.0]])
    branch_a = update_tracks(first, frame2, [0.9, 0.8], 2, TrackerConfig())
    branch_b = update_tracks(first, frame2, [0.9, 0.8], 2, TrackerConfig())

    assert len(first.table) == 1
    assert len(branch_a.table) == len(branch_b.table) == 3
    assert branch_a.table is not first.table
    assert branch_a.table.to_dict() == branch_b.table.to_dict()


def test_tracker_appends_to_its_own_table_in_place():
    tracker = CellTracker()
    table = tracker.table
    tracker.update(np.array([[0.0, 0.0, 10.0, 10.0]]))
    tracker.update(np.array([[1.0, 0.0, 10.0, 10.0]]))
    assert tracker.table is table
    assert len(table) == 2


def test_reset_clears_tracks_and_table():
    tracker = CellTracker()
    tracker.update(np.array([[0.0, 0.0, 10.0, 10.0]]))
    tracker.reset()
    assert tracker.tracks == []
    assert len(tracker.table) == 0
    assert tracker.update(np.array([[0.0, 0.0, 10.0, 10.0]]))[0].id == 1


def test_config_validation():
    with pytest.raises(ConfigurationError):
        TrackerConfig(max_invisible_count=0)
    with pytest.raises(ConfigurationError):
        TrackerConfig(min_iou=1.5)
    with pytest.raises(ConfigurationError):
        TrackerConfig(size_weight=-0.1)
    with pytest.raises(ConfigurationError):
        TrackerConfig(max_distance=0.0)
