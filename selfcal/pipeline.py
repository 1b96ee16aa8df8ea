#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Self-Calibration Pipeline
=========================

Graph-owner for online camera/IMU self-calibration. The tracker hands over
keyframes; per keyframe the pipeline runs

1. batch estimation for sensors whose calibration is unknown
2. the tracking BA, widened to cover unknown segments
3. candidate window estimation and change detection per active sensor
4. priority-queue fusion (inline, or on a per-sensor worker) and application
   of the aggregate to the live rig

The AAC loop resizes and re-solves the BA window on its own thread.

Author: VIO project
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from .adaptive_conditioner import AacLoop
from .ba_invoker import BaResult, BundleAdjustmentInvoker
from .camera import FovCamera, Rig
from .change_detector import ChangeDetector
from .config import SelfCalConfig
from .context import SelfCalContext
from .diagnostics import DiagnosticsWriter
from .errors import NonMonotonicTimestampError
from .imu_preintegration import ImuMeasurement, predict_state
from .math_utils import (exp_decoupled, gravity_aligned_rotation, invert_transform,
                         make_transform)
from .metrics import MetricsSink, TimingMetrics
from .pose_graph import Pose
from .priority_queue import AnalysisResult, PriorityQueueWorker, WindowPriorityQueue
from .sensors import (IMU, CameraIntrinsicsSensor, ImuExtrinsicSensor,
                      SensorCalibrator)
from .state_machine import Calibration, CalibrationState, CalibrationStateMachine
from .window_estimator import CalibrationWindowEstimator

MIN_TRACK_RATIO_FOR_MOTION_MODEL = 0.3
MIN_TRACKS_FOR_VISION_POSE = 10


@dataclass
class NewTrack:
    center_px: np.ndarray
    rho: float = 1.0


@dataclass
class KeyframeInput:
    """One keyframe handed over by the tracker."""

    timestamp: float
    t_wb: Optional[np.ndarray] = None
    observations: Dict[int, np.ndarray] = field(default_factory=dict)
    new_tracks: List[NewTrack] = field(default_factory=list)
    num_successful_tracks: int = 0
    num_features: int = 0


@dataclass
class KeyframeReport:
    pose_index: int
    ba: Optional[BaResult] = None
    batch_applied: Dict[str, bool] = field(default_factory=dict)
    divergence: Dict[str, float] = field(default_factory=dict)
    change_detected: Dict[str, bool] = field(default_factory=dict)
    queue_updated: Dict[str, bool] = field(default_factory=dict)
    states: Dict[str, CalibrationState] = field(default_factory=dict)
    timings: Dict[str, float] = field(default_factory=dict)


def rig_from_config(config: SelfCalConfig) -> Rig:
    cam = config.camera.extra
    camera = FovCamera(cam.get("params", [300.0, 300.0, 320.0, 240.0, 0.9]),
                       cam.get("width", 640), cam.get("height", 480))
    t_bc = exp_decoupled(np.asarray(config.imu_calibration.extra.get("t_bc", [0.0] * 6), dtype=float))
    return Rig(camera, t_bc)


class SelfCalPipeline:
    def __init__(self, config: SelfCalConfig, rig: Optional[Rig] = None,
                 metrics: Optional[MetricsSink] = None):
        self.config = config
        self.metrics = metrics if metrics is not None else TimingMetrics()
        self.context = SelfCalContext(rig if rig is not None else rig_from_config(config),
                                      metrics=self.metrics)
        self.diagnostics = DiagnosticsWriter(config.runtime.diagnostics_dir)
        self.estimator = CalibrationWindowEstimator(self.context.graph, self.context.imu_buffer, config)
        self.invoker = BundleAdjustmentInvoker(self.context, config, instance_id=0)

        sensors: List[SensorCalibrator] = [CameraIntrinsicsSensor(config.camera)]
        if config.imu.has_imu:
            sensors.append(ImuExtrinsicSensor(config.imu_calibration, config))
        self.workers: Dict[str, PriorityQueueWorker] = {}
        for sensor in sensors:
            self._register(sensor)

        self.aac: Optional[AacLoop] = None
        if config.conditioner.enabled and config.imu.has_imu:
            self.aac = AacLoop(self.context, config)

        self._last_relative = np.eye(4)
        self.stale_async_results = 0

        with self.context.locked():
            for name, machine in self.context.machines.items():
                if machine.state is CalibrationState.UNKNOWN:
                    machine.enter_unknown(self.context, 0)

    def _register(self, sensor: SensorCalibrator) -> None:
        cfg = sensor.config
        cd = self.config.change_detection
        calibration = Calibration(
            sensor=sensor.name,
            queue=WindowPriorityQueue(cfg.queue_capacity, cfg.margin, cfg.weights,
                                      name=sensor.name, verbose=self.config.runtime.debug),
            detector=ChangeDetector(cd.divergence_threshold, cd.num_change_needed),
            segment_length=cfg.segment_length,
            do_self_cal=cfg.do_self_cal,
            state=CalibrationState.UNKNOWN if cfg.unknown_calibration else CalibrationState.ONLINE_ACTIVE,
        )
        self.context.register(CalibrationStateMachine(calibration, sensor))
        if self.config.runtime.async_pq:
            self.workers[sensor.name] = PriorityQueueWorker(sensor.name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        for worker in self.workers.values():
            worker.start()
        if self.aac is not None:
            self.aac.start()

    def stop(self) -> None:
        if self.aac is not None:
            self.aac.stop()
        for worker in self.workers.values():
            worker.stop()

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------
    def add_imu(self, meas: ImuMeasurement) -> None:
        self.context.imu_buffer.add(meas)

    def reset_outliers(self) -> None:
        """Clear every landmark outlier flag at the start of the next BA."""
        with self.context.graph_lock:
            self.context.reset_outliers = True

    def _imu_known(self) -> bool:
        machines = self.context.machines
        return IMU in machines and not machines[IMU].calibration.unknown_calibration

    def _use_imu_ba(self, num_poses: int) -> bool:
        imu = self.config.imu
        return bool(imu.has_imu and imu.use_imu and num_poses > self.config.solver.min_poses_for_imu
                    and self._imu_known())

    def motion_guess(self, timestamp: float, num_successful_tracks: int = 0,
                     num_features: int = 0) -> np.ndarray:
        """
        Relative body motion T_prev_cur to seed the next pose.

        IMU prediction once the extrinsic is known, else the previous relative
        motion when tracking is healthy, else identity. A zero translation is
        nudged to 1 mm in z so the first BA is not degenerate.
        """
        with self.context.graph_lock:
            graph = self.context.graph
            if graph.num_poses == 0:
                return np.eye(4)
            prev = graph.poses[-1]
            if (self.config.imu.use_imu_for_guess and self._use_imu_ba(graph.num_poses)):
                meas = self.context.imu_buffer.get_range(prev.time, timestamp)
                if len(meas) >= 2:
                    R, p, _ = predict_state(prev.t_wb[:3, :3], prev.t_wb[:3, 3], prev.v_w, prev.b,
                                            meas, self.config.imu.gravity_vector)
                    return invert_transform(prev.t_wb) @ make_transform(R, p)
            ratio = num_successful_tracks / num_features if num_features > 0 else 0.0
            guess = self._last_relative.copy() if ratio > MIN_TRACK_RATIO_FOR_MOTION_MODEL else np.eye(4)
        if np.linalg.norm(guess[:3, 3]) == 0.0:
            guess[2, 3] = 0.001
        return guess

    def add_keyframe(self, kf: KeyframeInput) -> Tuple[int, List[int]]:
        """
        Append one keyframe with its observations and new tracks.

        Returns (pose index, new track ids). A non-increasing timestamp is
        fatal: background threads are stopped and the process exits.
        """
        try:
            with self.context.locked():
                return self._add_keyframe_locked(kf)
        except NonMonotonicTimestampError as exc:
            print(f"[SELFCAL] FATAL: {exc}")
            self.stop()
            raise SystemExit(1) from exc

    def _add_keyframe_locked(self, kf: KeyframeInput) -> Tuple[int, List[int]]:
        ctx = self.context
        graph = ctx.graph
        n = graph.num_poses
        prev = graph.poses[-1] if n else None

        use_guess = kf.t_wb is None or (
            kf.num_successful_tracks < MIN_TRACKS_FOR_VISION_POSE and self._use_imu_ba(n))
        if not use_guess:
            t_wb = np.asarray(kf.t_wb, dtype=float).copy()
        elif prev is None:
            R = np.eye(3)
            if self.config.imu.has_imu and len(ctx.imu_buffer) > 0:
                R = gravity_aligned_rotation(ctx.imu_buffer.first().a)
            t_wb = make_transform(R, np.zeros(3))
        else:
            t_wb = prev.t_wb @ self.motion_guess(kf.timestamp, kf.num_successful_tracks, kf.num_features)

        pose = Pose(
            t_wb=t_wb,
            time=float(kf.timestamp),
            v_w=prev.v_w.copy() if prev is not None else np.zeros(3),
            b=prev.b.copy() if prev is not None else np.zeros(6),
            cam_params=ctx.live_rig.intrinsics.copy(),
        )
        idx = graph.add_pose(pose)

        for tid, px in kf.observations.items():
            graph.add_observation(tid, idx, px)
        for track in graph.tracks:
            if track.tracked and idx not in track.observations:
                track.tracked = False
        new_ids = [graph.add_track(idx, nt.center_px, ctx.live_rig.intrinsics, nt.rho)
                   for nt in kf.new_tracks]
        graph.update_longest_track(idx)
        if prev is not None:
            self._last_relative = invert_transform(prev.t_wb) @ pose.t_wb
        return idx, new_ids

    # ------------------------------------------------------------------
    # Per-keyframe processing
    # ------------------------------------------------------------------
    def process_keyframe(self) -> KeyframeReport:
        ctx = self.context
        n = ctx.graph.num_poses
        report = KeyframeReport(pose_index=n - 1)
        self.drain_async_results()

        t0 = time.time()
        for name, machine in ctx.machines.items():
            report.batch_applied[name] = self._batch_step(machine, n)
        report.timings["batch"] = time.time() - t0
        self.metrics.record_timing("batch", report.timings["batch"])

        t0 = time.time()
        num_active = self.config.solver.num_ba_poses
        for name, machine in ctx.machines.items():
            cal = machine.calibration
            if cal.unknown_calibration and machine.sensor.is_active(ctx):
                num_active = max(num_active, n - cal.unknown_start_pose)
        report.ba = self.invoker.run(ctx.live_rig, num_active, self._use_imu_ba(n))
        report.timings["ba"] = time.time() - t0

        t0 = time.time()
        for name, machine in ctx.machines.items():
            div, change = self._analyze_candidate(machine, n)
            report.divergence[name] = div
            report.change_detected[name] = change
        report.timings["analyze"] = time.time() - t0
        self.metrics.record_timing("analyze", report.timings["analyze"])

        t0 = time.time()
        for name, machine in ctx.machines.items():
            report.queue_updated[name] = self._update_queue(machine, n)
        report.timings["queue"] = time.time() - t0
        self.metrics.record_timing("queue", report.timings["queue"])

        report.states = {name: m.state for name, m in ctx.machines.items()}
        self.diagnostics.log_timings(n - 1, report.timings, num_active)
        return report

    def _batch_step(self, machine: CalibrationStateMachine, n: int) -> bool:
        ctx = self.context
        cal = machine.calibration
        sensor = machine.sensor
        if cal.state is not CalibrationState.BATCH_CONVERGING or not sensor.is_active(ctx):
            return False

        with ctx.locked():
            if not sensor.batch_ready(ctx):
                sensor.initializer.step(ctx, n)
                if not sensor.batch_ready(ctx):
                    return False

            if n - cal.unknown_start_pose <= cal.segment_length:
                return False

            ctx.selfcal_rig.copy_from(ctx.live_rig)
            window = sensor.estimate_window(self.estimator, ctx.selfcal_rig, cal.unknown_start_pose,
                                            n, self.config.batch.num_iterations)
            cal.batch_window = window
            self.diagnostics.log_window(sensor.name, "batch", n - 1, window)

            applied = False
            if window.is_applicable() and window.rank == sensor.dim(ctx.live_rig):
                sensor.apply_result(ctx, window, cal.unknown_start_pose)
                applied = True
                print(f"[SELFCAL] {sensor.name}: batch estimate over [{window.start}, {window.end}) "
                      f"applied, mean={np.round(window.mean, 4)} gv={window.generalized_variance:.4g}")

            if machine.batch_finished(window, n, self.config.batch.score_threshold):
                machine.go_online()
        return applied

    def _analyze_candidate(self, machine: CalibrationStateMachine, n: int) -> Tuple[float, bool]:
        ctx = self.context
        cal = machine.calibration
        sensor = machine.sensor
        if not sensor.is_active(ctx) or n - cal.unknown_start_pose <= cal.segment_length:
            return 0.0, False

        with ctx.locked():
            ctx.selfcal_rig.copy_from(ctx.live_rig)
            candidate = sensor.estimate_window(self.estimator, ctx.selfcal_rig, n - cal.segment_length,
                                               n, self.config.batch.window_iterations,
                                               apply_to_rig=False)
            self.metrics.increment("windows_analysed")
            if sensor.name == IMU and not candidate.is_applicable():
                # a rank-deficient check still breaks the consecutive run
                cal.detector.update(0.0, cal.queue.is_full, cal.unknown_calibration)
                return 0.0, False
            cal.candidate_window = candidate

            divergence = cal.detector.divergence(cal.pq_window, candidate)
            cal.current_window = candidate
            cal.last_divergence = divergence
            if cal.queue.offer(candidate):
                cal.last_added_divergence = divergence
            self.diagnostics.log_window(sensor.name, "candidate", n - 1, candidate, divergence)

            decision = cal.detector.update(divergence, cal.queue.is_full, cal.unknown_calibration)
            if decision.change_detected:
                rollback = sensor.rollback_threshold(n, cal.detector.num_change_needed)
                print(f"[CHANGE] {sensor.name}: calibration change detected "
                      f"(divergence={decision.divergence:.4f}, count={decision.counter}), "
                      f"rolling back to pose {rollback}")
                self.metrics.increment("change_detections")
                machine.enter_unknown(ctx, rollback)
        return divergence, decision.change_detected

    def _update_queue(self, machine: CalibrationStateMachine, n: int) -> bool:
        ctx = self.context
        cal = machine.calibration
        sensor = machine.sensor
        with ctx.calibration_lock:
            ready = (cal.queue.needs_update and not cal.unknown_calibration
                     and sensor.is_active(ctx) and len(cal.queue) > 0)
            if not ready:
                return False
            if sensor.name in self.workers:
                worker = self.workers[sensor.name]
                submitted = worker.submit(cal.queue.snapshot(), cal.epoch, cal.queue.weights)
                if submitted:
                    cal.queue.needs_update = False
                return submitted

        with ctx.locked():
            aggregate = cal.queue.analyze()
            self._apply_aggregate(machine, aggregate, n)
        return True

    def _apply_aggregate(self, machine: CalibrationStateMachine, aggregate, n: int) -> bool:
        """Caller holds the context locks."""
        cal = machine.calibration
        cal.queue.set_distribution(aggregate)
        cal.pq_window = aggregate
        self.diagnostics.log_window(machine.sensor.name, "pq", n - 1, aggregate)
        if aggregate is None or not aggregate.is_applicable():
            return False
        machine.sensor.apply_result(self.context, aggregate, cal.unknown_start_pose)
        if self.config.runtime.debug:
            print(f"[PQ] {machine.sensor.name}: applied aggregate over {len(cal.queue)} windows, "
                  f"mean={np.round(aggregate.mean, 4)}")
        return True

    def drain_async_results(self) -> int:
        """Apply finished async fusions whose sensor is still OnlineActive at the same epoch."""
        applied = 0
        for name, worker in self.workers.items():
            for result in worker.poll():
                if self._apply_async_result(result):
                    applied += 1
        return applied

    def _apply_async_result(self, result: AnalysisResult) -> bool:
        ctx = self.context
        with ctx.locked():
            machine = ctx.machines[result.sensor]
            cal = machine.calibration
            if cal.state is not CalibrationState.ONLINE_ACTIVE or cal.epoch != result.epoch:
                self.stale_async_results += 1
                print(f"[PQ] {result.sensor}: discarded stale async result (epoch {result.epoch}, "
                      f"now {cal.epoch}, state {cal.state.value})")
                return False
            return self._apply_aggregate(machine, result.aggregate, ctx.graph.num_poses)
