import numpy as np
import pytest

from cellcascade.core.analytics.trajectories import summarize_tracks
from cellcascade.core.trackers.cell_tracker import CellTracker
from cellcascade.core.trackers.records import TrackingTable


def test_summaries_per_track():
    table = TrackingTable()
    table.append(1, [1, 2], [0.8, 0.5], [[0, 0, 10, 10], [100, 100, 10, 10]])
    table.append(2, [1], [0.6], [[3, 4, 10, 10]])
    table.append(4, [1], [1.0], [[6, 8, 10, 10]])

    one, two = summarize_tracks(table)
    assert one.track_id == 1
    assert (one.first_frame, one.last_frame, one.num_observations) == (1, 4, 3)
    assert one.mean_confidence == pytest.approx(0.8)
    assert one.path_length == pytest.approx(10.0)
    assert one.net_displacement == pytest.approx(10.0)
    assert one.mean_speed == pytest.approx(10.0 / 3.0)

    assert two.num_observations == 1
    assert two.path_length == 0.0
    assert two.mean_speed == 0.0
    assert set(two.to_dict()) >= {"track_id", "path_length", "mean_speed"}


def test_empty_table():
    assert summarize_tracks(TrackingTable()) == []


def test_summaries_from_tracker_output():
    tracker = CellTracker()
    for step in range(5):
        tracker.update(np.array([[2.0 * step, 0.0, 20.0, 20.0]]), [0.9])
    (summary,) = summarize_tracks(tracker.table)
    assert summary.num_observations == 5
    assert summary.net_displacement == pytest.approx(8.0)
    assert summary.mean_speed == pytest.approx(2.0)
