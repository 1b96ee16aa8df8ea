#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Calibration Window Estimator
============================

Runs a bounded bundle adjustment over one pose range [start, end) with only a
calibration block free, and turns the marginal information of that block
into a CalibrationWindow.

Parameter blocks:
- INTRINSICS: camera [fx, fy, cx, cy, (w)]; poses and landmarks held fixed
- EXTRINSICS: T_bc as [t, rotvec] with IMU factors; poses (except the first)
  and landmark depths are refined jointly unless ``refine_poses`` is off

The solution is written into the rig passed in, which must be a scratch copy.
The shared graph is only read; callers hold the context locks.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence

import numpy as np

from .bundle_adjuster import BundleAdjuster, SolverOptions
from .calibration_window import CalibrationWindow, make_window
from .camera import Rig
from .config import SelfCalConfig
from .imu_preintegration import ImuBuffer
from .pose_graph import PoseGraphStore


class ParameterBlock(Enum):
    INTRINSICS = "intrinsics"
    EXTRINSICS = "extrinsics"


def solver_options(config: SelfCalConfig, **overrides) -> SolverOptions:
    s, imu = config.solver, config.imu
    opts = SolverOptions(
        use_robust_norm_for_proj=s.use_robust_norm_for_proj,
        huber_threshold=s.huber_threshold,
        projection_sigma=s.projection_sigma,
        outlier_threshold=s.outlier_threshold,
        gyro_sigma=imu.gyro_sigma,
        accel_sigma=imu.accel_sigma,
        gyro_bias_sigma=imu.gyro_bias_sigma,
        accel_bias_sigma=imu.accel_bias_sigma,
        gravity=imu.gravity_vector,
        verbose=config.runtime.debug,
    )
    for key, val in overrides.items():
        setattr(opts, key, val)
    return opts


class CalibrationWindowEstimator:
    def __init__(self, graph: PoseGraphStore, imu_buffer: Optional[ImuBuffer],
                 config: SelfCalConfig):
        self.graph = graph
        self.imu_buffer = imu_buffer
        self.config = config

    def estimate(self, rig: Rig, start: int, end: int, block: ParameterBlock,
                 num_iterations: int, weights: Optional[Sequence[float]] = None,
                 refine_poses: bool = True, apply_to_rig: bool = True) -> CalibrationWindow:
        """
        Estimate the calibration block over poses [start, end).

        Returns a window whose ``rank`` may be below its dimension; such a
        window is not applicable and must not reach the live rig.
        """
        start = max(0, int(start))
        end = min(self.graph.num_poses, int(end))
        if end - start < 2:
            return CalibrationWindow(start=start, end=end)

        extrinsic = block is ParameterBlock.EXTRINSICS
        use_imu = extrinsic and self.imu_buffer is not None
        refine = extrinsic and refine_poses
        ba = BundleAdjuster(
            solver_options(self.config, free_intrinsics=not extrinsic,
                           free_extrinsics=extrinsic),
            rig.intrinsics, rig.t_bc, use_imu=use_imu)

        pose_ids = {}
        for ii in range(start, end):
            p = self.graph.poses[ii]
            pose_ids[ii] = ba.add_pose(p.t_wb, is_active=refine and ii != start,
                                       time=p.time, v_w=p.v_w, b=p.b)

        num_proj = 0
        for ii in range(start, end):
            for track in self.graph.pose_tracks(ii):
                if track.is_outlier:
                    continue
                obs = [(jj, z) for jj, z in track.observations.items()
                       if start <= jj < end and jj != ii]
                if not obs:
                    continue
                lm = ba.add_landmark(pose_ids[ii], track.center_px, track.ray, track.rho,
                                     is_active=refine)
                for jj, z in obs:
                    ba.add_projection_residual(z, pose_ids[jj], lm)
                    num_proj += 1

        if use_imu:
            for ii in range(start + 1, end):
                p0, p1 = self.graph.poses[ii - 1], self.graph.poses[ii]
                meas = self.imu_buffer.get_range(p0.time, p1.time)
                ba.add_imu_residual(pose_ids[ii - 1], pose_ids[ii], meas)

        if num_proj == 0:
            return CalibrationWindow(start=start, end=end)

        ba.solve(num_iterations)
        mean, cov, rank = ba.calibration_covariance()

        if apply_to_rig:
            if extrinsic:
                rig.t_bc = ba.get_t_bc()
            else:
                rig.camera.params = ba.get_camera_params()

        window = make_window(start, end, mean, cov, weights=weights, rank=rank)
        if self.config.runtime.debug:
            print(f"[SELFCAL] {block.value} window [{start}, {end}) mean={np.round(mean, 4)} "
                  f"rank={rank}/{mean.size} score={window.score:.4g}")
        return window
