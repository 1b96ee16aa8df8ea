import numpy as np
import pytest

from synthetic import TRUE_PARAMS, build_graph

from selfcal.camera import unit_rays
from selfcal.errors import NonMonotonicTimestampError
from selfcal.pose_graph import Pose, PoseGraphStore


def _graph_with_times(times):
    graph = PoseGraphStore()
    for t in times:
        graph.add_pose(Pose(t_wb=np.eye(4), time=t))
    return graph


def test_timestamps_must_strictly_increase():
    graph = _graph_with_times([0.1, 0.2])
    with pytest.raises(NonMonotonicTimestampError) as err:
        graph.add_pose(Pose(t_wb=np.eye(4), time=0.2))
    assert err.value.previous == pytest.approx(0.2)
    assert graph.num_poses == 2


def test_track_creation_records_reference_observation():
    graph = _graph_with_times([0.1, 0.2])
    tid = graph.add_track(0, np.array([320.0, 240.0]), TRUE_PARAMS, 0.25)
    assert graph.tracks[tid].observations[0] == pytest.approx([320.0, 240.0])
    assert np.allclose(graph.tracks[tid].ray, [0.0, 0.0, 1.0])
    assert list(graph.pose_tracks(0))[0].id == tid
    assert graph.tracks[tid].rho == pytest.approx(0.25)


def test_ba_pose_range_reaches_back_to_reference_poses():
    graph = _graph_with_times([0.1 * (i + 1) for i in range(12)])
    tid = graph.add_track(2, np.array([300.0, 200.0]), TRUE_PARAMS, 0.2)
    for ii in range(3, 12):
        graph.add_observation(tid, ii, np.array([300.0, 200.0]))
    for ii in range(12):
        graph.update_longest_track(ii)

    start, start_active = graph.ba_pose_range(4)
    assert start_active == 8
    assert start == 2

    start, start_active = graph.ba_pose_range(50)
    assert (start, start_active) == (0, 0)


def test_longest_track_ignores_lost_and_outliers():
    graph = build_graph(num_poses=8)
    longest = graph.longest_track_id()
    assert longest is not None
    graph.tracks[longest].tracked = False
    assert graph.longest_track_id() != longest


def test_rebackproject_refreshes_rays_from_start_pose():
    graph = build_graph(num_poses=6)
    new_params = TRUE_PARAMS * np.array([1.1, 1.1, 1.0, 1.0, 1.0])
    old_first = [t.ray.copy() for t in graph.pose_tracks(0)]
    graph.rebackproject(3, new_params)

    assert np.allclose([t.ray for t in graph.pose_tracks(0)], old_first)
    for ii in range(3, 6):
        assert np.allclose(graph.poses[ii].cam_params, new_params)
        for t in graph.pose_tracks(ii):
            assert np.allclose(t.ray, unit_rays(new_params, t.center_px)[0])
