#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Windowed bundle adjustment over the shared pose graph.

Builds the tracking BA for the last ``num_active_poses`` keyframes:
- poses before the active window stay in the problem but fixed, and the one
  right before it carries the conditioning edge when IMU factors are used
- landmarks with fewer than 2 observations, outliers, or no observation in
  the active window are left out
- without IMU factors and with every pose active, the longest track is held
  fixed to pin scale

After the solve, poses, velocities, biases and inverse depths are written
back, and outlier flags are recomputed once enough poses exist and the
camera calibration is known.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .bundle_adjuster import BundleAdjuster, SolutionSummary
from .camera import Rig
from .config import SelfCalConfig
from .metrics import MetricsSink
from .sensors import CAMERA
from .window_estimator import solver_options

_BIAS_PRIOR_SIGMA = (0.05, 0.5)


@dataclass
class ConditioningStats:
    cond_inertial_error: float = 0.0
    cond_proj_error: float = 0.0
    num_cond_inertial_residuals: int = 0
    num_cond_proj_residuals: int = 0

    @property
    def total_error(self) -> float:
        return self.cond_inertial_error + self.cond_proj_error


@dataclass
class BaResult:
    start_pose: int
    start_active_pose: int
    end_pose: int
    summary: SolutionSummary
    conditioning: ConditioningStats
    num_outliers: int = 0
    mean_last_frame_error: float = 0.0
    outlier_ids: List[int] = field(default_factory=list)


class BundleAdjustmentInvoker:
    """One BA instance (tracking = 0, AAC = 1) bound to the shared context."""

    def __init__(self, context, config: SelfCalConfig, instance_id: int = 0,
                 metrics: Optional[MetricsSink] = None, timer_name: str = "ba"):
        self.context = context
        self.config = config
        self.instance_id = int(instance_id)
        self.metrics = metrics if metrics is not None else context.metrics
        self.timer_name = timer_name

    def _camera_unknown(self) -> bool:
        machines = self.context.machines
        return CAMERA in machines and machines[CAMERA].calibration.unknown_calibration

    def run(self, rig: Rig, num_active_poses: int, use_imu: bool,
            num_iterations: Optional[int] = None) -> Optional[BaResult]:
        """Solve and write back. Returns None when there is nothing to solve."""
        t0 = time.time()
        with self.context.locked():
            result = self._run_locked(rig, num_active_poses, use_imu, num_iterations)
        self.metrics.record_timing(self.timer_name, time.time() - t0)
        return result

    def _run_locked(self, rig: Rig, num_active_poses: int, use_imu: bool,
                    num_iterations: Optional[int]) -> Optional[BaResult]:
        ctx = self.context
        graph = ctx.graph
        s = self.config.solver
        inst = self.instance_id

        if ctx.reset_outliers:
            graph.reset_outliers()
            ctx.reset_outliers = False

        n = graph.num_poses
        if n < 2:
            return None
        start, start_active = graph.ba_pose_range(num_active_poses)
        if use_imu and start_active == start and start != 0:
            start -= 1
        if start >= n - 1:
            return None
        all_active = start_active == start

        overrides = {}
        if use_imu and n < s.poses_to_init and s.regularize_biases_in_batch:
            overrides["bias_prior_sigma"] = _BIAS_PRIOR_SIGMA
        ba = BundleAdjuster(solver_options(self.config, **overrides),
                            rig.intrinsics, rig.t_bc, use_imu=use_imu)

        for ii in range(start, n):
            pose = graph.poses[ii]
            active = ii != 0 and ii >= start_active
            pose.opt_ids[inst] = ba.add_pose(pose.t_wb, active, pose.time, pose.v_w, pose.b)

        if use_imu:
            for ii in range(max(start_active, start + 1), n):
                p0, p1 = graph.poses[ii - 1], graph.poses[ii]
                meas = ctx.imu_buffer.get_range(p0.time, p1.time)
                ba.add_imu_residual(p0.opt_ids[inst], p1.opt_ids[inst], meas)

        longest = graph.longest_track_id()
        landmarks: List[Tuple[int, int]] = []
        num_proj = 0
        for ii in range(start, n):
            for track in graph.pose_tracks(ii):
                track.opt_ids.pop(inst, None)
                if (track.num_good_tracked_frames <= 1 or track.is_outlier
                        or track.last_pose < start_active):
                    continue
                active = not (track.id == longest and all_active and not use_imu)
                lm = ba.add_landmark(graph.poses[ii].opt_ids[inst], track.center_px, track.ray,
                                     track.rho, active)
                track.opt_ids[inst] = lm
                landmarks.append((track.id, lm))
                for jj, z in track.observations.items():
                    if start <= jj < n and jj != ii:
                        ba.add_projection_residual(z, graph.poses[jj].opt_ids[inst], lm)
                        num_proj += 1

        if num_proj == 0:
            return None

        iterations = s.num_ba_iterations if num_iterations is None else num_iterations
        summary = ba.solve(iterations)

        for ii in range(start_active, n):
            pose = graph.poses[ii]
            est = ba.get_pose(pose.opt_ids[inst])
            if not est.is_active:
                continue
            pose.t_wb = est.t_wb
            if use_imu:
                pose.v_w = est.v_w
                pose.b = est.b
        for tid, lm in landmarks:
            graph.tracks[tid].rho = ba.get_landmark_rho(lm)

        outlier_ids = []
        if s.do_outlier_rejection and not self._camera_unknown() and n > s.poses_to_init:
            ratios = ba.landmark_outlier_ratios()
            late_enough = (n - 1) >= s.min_poses_for_imu - 1 or not use_imu
            for tid, lm in landmarks:
                track = graph.tracks[tid]
                track.is_outlier = bool(ratios.get(lm, 0.0) > s.outlier_ratio
                                        and not track.tracked and late_enough)
                if track.is_outlier:
                    outlier_ids.append(tid)

        cond = ConditioningStats(
            cond_proj_error=summary.cond_proj_error,
            num_cond_proj_residuals=summary.num_cond_proj_residuals,
        )
        if use_imu:
            for rid in ba.conditioning_imu_residual_ids():
                cond.cond_inertial_error += ba.get_imu_residual(rid).mahalanobis_distance
                cond.num_cond_inertial_residuals += 1

        result = BaResult(
            start_pose=start,
            start_active_pose=start_active,
            end_pose=n - 1,
            summary=summary,
            conditioning=cond,
            num_outliers=len(outlier_ids),
            mean_last_frame_error=ba.mean_projection_error(graph.poses[n - 1].opt_ids[inst]),
            outlier_ids=outlier_ids,
        )
        if self.config.runtime.debug:
            print(f"[BA] inst={inst} poses [{start}, {n}) active from {start_active} "
                  f"imu={use_imu} cost {summary.cost_initial:.4e} -> {summary.cost_final:.4e} "
                  f"outliers={len(outlier_ids)} last_err={result.mean_last_frame_error:.3f}px")
        return result
