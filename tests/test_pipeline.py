import time

import numpy as np
import pytest

from synthetic import TRUE_PARAMS, camera_only_config, imu_config, keyframe_stream

from selfcal.calibration_window import make_window
from selfcal.errors import NonMonotonicTimestampError
from selfcal.metrics import TimingMetrics
from selfcal.pipeline import KeyframeInput, SelfCalPipeline
from selfcal.sensors import CAMERA, IMU
from selfcal.state_machine import CalibrationState


def _run(pipeline, keyframes):
    reports = []
    for kf in keyframes:
        pipeline.add_keyframe(kf)
        reports.append(pipeline.process_keyframe())
    return reports


def test_non_monotonic_keyframe_is_fatal():
    pipeline = SelfCalPipeline(camera_only_config())
    pipeline.add_keyframe(KeyframeInput(timestamp=1.0, t_wb=np.eye(4)))
    with pytest.raises(SystemExit) as exc:
        pipeline.add_keyframe(KeyframeInput(timestamp=1.0, t_wb=np.eye(4)))
    assert exc.value.code == 1
    assert isinstance(exc.value.__cause__, NonMonotonicTimestampError)
    assert pipeline.context.graph.num_poses == 1


def test_known_camera_stays_online_and_fills_queue():
    metrics = TimingMetrics()
    pipeline = SelfCalPipeline(camera_only_config(), metrics=metrics)
    reports = _run(pipeline, keyframe_stream(num_poses=14))

    cal = pipeline.context.calibration(CAMERA)
    assert cal.state is CalibrationState.ONLINE_ACTIVE
    assert not any(r.change_detected[CAMERA] for r in reports)
    assert len(cal.queue) >= 1
    assert cal.pq_window is not None
    assert pipeline.context.live_rig.intrinsics == pytest.approx(TRUE_PARAMS, rel=1e-4)
    assert metrics.counters.get("windows_analysed", 0) == 14 - 5
    assert reports[-1].ba is not None


def test_unknown_camera_runs_full_lifecycle():
    pipeline = SelfCalPipeline(camera_only_config(unknown_calibration=True))
    cal = pipeline.context.calibration(CAMERA)
    assert cal.state is CalibrationState.BATCH_CONVERGING
    assert pipeline.context.live_rig.intrinsics[0] == pytest.approx(240.0)

    reports = _run(pipeline, keyframe_stream(num_poses=13))

    assert cal.state is CalibrationState.ONLINE_ACTIVE
    assert (CalibrationState.UNKNOWN, CalibrationState.BATCH_CONVERGING) in cal.history
    assert (CalibrationState.BATCH_CONVERGING, CalibrationState.ONLINE_ACTIVE) in cal.history
    assert np.all(np.isfinite(pipeline.context.live_rig.intrinsics))
    assert any(r.ba is not None for r in reports)


def test_motion_guess_fallbacks():
    pipeline = SelfCalPipeline(camera_only_config())
    assert np.allclose(pipeline.motion_guess(0.1), np.eye(4))

    kfs = keyframe_stream(num_poses=2)
    _run(pipeline, kfs)

    # healthy tracking reuses the last relative motion
    guess = pipeline.motion_guess(0.5, num_successful_tracks=50, num_features=60)
    expected = np.linalg.inv(kfs[0].t_wb) @ kfs[1].t_wb
    assert np.allclose(guess, expected)

    # poor tracking falls back to identity, nudged off zero translation
    guess = pipeline.motion_guess(0.5, num_successful_tracks=5, num_features=60)
    assert np.allclose(guess[:3, :3], np.eye(3))
    assert guess[2, 3] == pytest.approx(0.001)


def test_keyframe_without_pose_uses_motion_guess():
    pipeline = SelfCalPipeline(camera_only_config())
    kfs = keyframe_stream(num_poses=3)
    _run(pipeline, kfs[:2])
    kf = kfs[2]
    kf.t_wb = None
    idx, new_ids = pipeline.add_keyframe(kf)
    assert idx == 2
    assert len(new_ids) == len(kf.new_tracks)
    assert np.all(np.isfinite(pipeline.context.graph.poses[idx].t_wb))


def test_lost_tracks_are_marked_untracked():
    pipeline = SelfCalPipeline(camera_only_config())
    kfs = keyframe_stream(num_poses=2)
    pipeline.add_keyframe(kfs[0])
    kfs[1].observations = {}
    pipeline.add_keyframe(kfs[1])
    graph = pipeline.context.graph
    assert all(not graph.tracks[tid].tracked for tid in graph.poses[0].tracks)


def _wait_for(predicate, timeout=2.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


def test_async_result_applied_only_for_current_epoch():
    pipeline = SelfCalPipeline(camera_only_config(runtime={"async_pq": True}))
    pipeline.start()
    try:
        worker = pipeline.workers[CAMERA]
        cal = pipeline.context.calibration(CAMERA)
        shifted = TRUE_PARAMS * 1.01
        windows = [make_window(0, 5, shifted, 0.01 * np.eye(5))]

        assert worker.submit(windows, cal.epoch + 1)
        assert _wait_for(lambda: pipeline.drain_async_results() > 0 or pipeline.stale_async_results > 0)
        assert pipeline.stale_async_results == 1
        assert pipeline.context.live_rig.intrinsics == pytest.approx(TRUE_PARAMS)

        assert worker.submit(windows, cal.epoch)
        assert _wait_for(lambda: pipeline.drain_async_results() > 0)
        assert pipeline.context.live_rig.intrinsics == pytest.approx(shifted)
        assert cal.pq_window is not None
    finally:
        pipeline.stop()


def test_async_result_discarded_after_change():
    pipeline = SelfCalPipeline(camera_only_config(runtime={"async_pq": True}))
    pipeline.start()
    try:
        worker = pipeline.workers[CAMERA]
        machine = pipeline.context.machines[CAMERA]
        epoch = machine.calibration.epoch
        machine.enter_unknown(pipeline.context, 0)
        seeded = pipeline.context.live_rig.intrinsics.copy()

        assert worker.submit([make_window(0, 5, TRUE_PARAMS, 0.01 * np.eye(5))], epoch)
        assert _wait_for(lambda: pipeline.drain_async_results() > 0 or pipeline.stale_async_results > 0)
        assert pipeline.stale_async_results == 1
        assert pipeline.context.live_rig.intrinsics == pytest.approx(seeded)
    finally:
        pipeline.stop()


def test_diagnostics_written_when_enabled(tmp_path):
    out = tmp_path / "diag"
    pipeline = SelfCalPipeline(camera_only_config(runtime={"diagnostics_dir": str(out)}))
    _run(pipeline, keyframe_stream(num_poses=8))

    candidate_lines = (out / "cam_candidate.csv").read_text().strip().splitlines()
    assert candidate_lines[0].startswith("keyframe,start,end")
    assert len(candidate_lines) == 1 + (8 - 5)
    timing_lines = (out / "timings.csv").read_text().strip().splitlines()
    assert len(timing_lines) == 1 + 8
    assert not (out / "imu_candidate.csv").read_text().strip().splitlines()[1:]


def test_rank_deficient_imu_check_breaks_consecutive_run(monkeypatch):
    pipeline = SelfCalPipeline(imu_config())
    machine = pipeline.context.machines[IMU]
    cal = machine.calibration
    for start in (0, 5, 10):
        cal.queue.offer(make_window(start, start + 5, np.zeros(6), 0.01 * np.eye(6)))
    assert cal.queue.is_full

    good = make_window(90, 95, np.zeros(6), 100.0 * np.eye(6))
    bad = make_window(90, 95, np.zeros(6), 100.0 * np.eye(6), rank=5)
    script = [good, good, bad, good, good, good, good]
    monkeypatch.setattr(machine.sensor, "estimate_window", lambda *args, **kwargs: script.pop(0))
    monkeypatch.setattr(cal.detector, "divergence", lambda aggregate, candidate: 0.1)

    counters, changes = [], []
    for _ in range(5):
        _, change = pipeline._analyze_candidate(machine, 100)
        counters.append(cal.detector.num_change_detected)
        changes.append(change)

    assert counters == [1, 2, 0, 1, 2]
    assert not any(changes)
    assert cal.state is CalibrationState.ONLINE_ACTIVE
    assert cal.queue.is_full

    # an unbroken run of four still declares the change
    assert pipeline._analyze_candidate(machine, 100) == (pytest.approx(0.1), False)
    assert pipeline._analyze_candidate(machine, 100) == (pytest.approx(0.1), True)
    assert cal.state is CalibrationState.BATCH_CONVERGING
    assert cal.unknown_start_pose == 100 - 3


def test_reset_outliers_clears_flags_before_next_ba():
    pipeline = SelfCalPipeline(camera_only_config())
    keyframes = keyframe_stream(num_poses=8)
    _run(pipeline, keyframes[:7])
    ctx = pipeline.context
    flagged = [t.id for t in ctx.graph.tracks[:3]]
    for tid in flagged:
        ctx.graph.tracks[tid].is_outlier = True

    pipeline.reset_outliers()
    assert ctx.reset_outliers
    _run(pipeline, keyframes[7:])

    assert not ctx.reset_outliers
    assert not any(ctx.graph.tracks[tid].is_outlier for tid in flagged)
