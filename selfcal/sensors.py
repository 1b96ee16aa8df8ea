#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Sensor-specific calibration behaviour.

Each sensor knows which parameter block it estimates, how to seed itself when
its calibration becomes unknown, and how an accepted window is written into
the live rig. The state machine and the pipeline only talk to this interface.

The IMU extrinsic also carries a staged initializer: rotation from gyro vs
vision inter-frame rotations (hand-eye, robust least squares), then a seeded
translation, and only then the joint MLE batch estimate.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import least_squares

from .calibration_window import CalibrationWindow
from .camera import FovCamera
from .config import SelfCalConfig, SensorCalibrationConfig
from .errors import RankDeficientWindowError
from .imu_preintegration import integrate_rotation
from .math_utils import exp_decoupled, invert_transform, make_transform, so3_exp, so3_log
from .window_estimator import CalibrationWindowEstimator, ParameterBlock

CAMERA = "camera"
IMU = "imu"


class SensorCalibrator(ABC):
    name: str = ""
    block: ParameterBlock = ParameterBlock.INTRINSICS

    def __init__(self, config: SensorCalibrationConfig):
        self.config = config

    @property
    def margin(self) -> float:
        return self.config.margin

    @property
    def weights(self) -> List[float]:
        return self.config.weights

    @abstractmethod
    def dim(self, rig) -> int:
        ...

    @abstractmethod
    def is_active(self, context) -> bool:
        ...

    @abstractmethod
    def seed_unknown(self, context, rollback_pose: int) -> None:
        ...

    @abstractmethod
    def write_mean(self, context, mean: np.ndarray, rollback_pose: int) -> None:
        ...

    def batch_ready(self, context) -> bool:
        return True

    def estimate_window(self, estimator: CalibrationWindowEstimator, rig, start: int, end: int,
                        num_iterations: int, apply_to_rig: bool = True) -> CalibrationWindow:
        return estimator.estimate(rig, start, end, self.block, num_iterations,
                                  weights=self.weights, apply_to_rig=apply_to_rig,
                                  refine_poses=bool(self.config.extra.get("refine_poses", True)))

    def rollback_threshold(self, num_poses: int, num_change_needed: int) -> int:
        return max(0, int(num_poses) - int(num_change_needed))

    def apply_result(self, context, window: CalibrationWindow, rollback_pose: int) -> None:
        """Write an applicable window into the live and scratch rigs (caller holds locks)."""
        if window is None or not window.is_applicable():
            raise RankDeficientWindowError(f"{self.name}: refusing to apply {window!r}")
        self.write_mean(context, window.mean, rollback_pose)


class CameraIntrinsicsSensor(SensorCalibrator):
    name = CAMERA
    block = ParameterBlock.INTRINSICS

    def dim(self, rig) -> int:
        return rig.camera.num_params

    def is_active(self, context) -> bool:
        return bool(self.config.do_self_cal)

    def seed_unknown(self, context, rollback_pose: int) -> None:
        live = context.live_rig
        fov = float(self.config.extra.get("seed_fov_deg", 90.0))
        w_seed = self.config.extra.get("seed_distortion", 1.0) if live.camera.num_params > 4 else None
        seed = FovCamera.wide_fov_seed(live.camera.width, live.camera.height, fov, w_seed)
        print(f"[SELFCAL] camera: seeding intrinsics {np.round(seed.params, 3)} from pose {rollback_pose}")
        self.write_mean(context, seed.params, rollback_pose)

    def write_mean(self, context, mean: np.ndarray, rollback_pose: int) -> None:
        params = np.asarray(mean, dtype=float).copy()
        for rig in (context.live_rig, context.selfcal_rig):
            rig.camera.params = params.copy()
        context.graph.rebackproject(rollback_pose, params)


class InitStage(Enum):
    ROTATION = "rotation"
    TRANSLATION = "translation"
    DONE = "done"


class ExtrinsicInitializer:
    """Two-stage T_bc initialization run before the joint batch estimate."""

    def __init__(self, min_constraints: int, translation_prior: np.ndarray,
                 seed_scale: Sequence[float] = (1.05, 0.93, 1.06)):
        self.min_constraints = max(1, int(min_constraints))
        self.translation_prior = np.asarray(translation_prior, dtype=float).reshape(3,)
        self.seed_scale = np.asarray(seed_scale, dtype=float).reshape(3,)
        self.stage = InitStage.ROTATION
        self.constraints: List[Tuple[np.ndarray, np.ndarray]] = []
        self._last_pair: Optional[Tuple[int, int]] = None

    def reset(self) -> None:
        self.stage = InitStage.ROTATION
        self.constraints = []
        self._last_pair = None

    def add_constraint(self, R_imu_rel: np.ndarray, R_cam_rel: np.ndarray) -> None:
        self.constraints.append((np.asarray(R_imu_rel, dtype=float), np.asarray(R_cam_rel, dtype=float)))

    def solve_rotation(self) -> np.ndarray:
        """R_bc minimizing |log(R_c^T R_bc^T R_imu R_bc)| with a Huber loss."""
        def residuals(x):
            R_bc = so3_exp(x)
            return np.concatenate([so3_log(R_c.T @ R_bc.T @ R_i @ R_bc)
                                   for R_i, R_c in self.constraints])

        result = least_squares(residuals, np.zeros(3), loss="huber", f_scale=1.0,
                               method="trf", max_nfev=200)
        return so3_exp(result.x)

    def step(self, context, num_poses: int) -> InitStage:
        """Advance with the newest keyframe pair. Caller holds the context locks."""
        graph = context.graph
        if self.stage is InitStage.ROTATION and num_poses >= 2:
            pair = (num_poses - 2, num_poses - 1)
            if pair != self._last_pair:
                self._last_pair = pair
                p0, p1 = graph.poses[pair[0]], graph.poses[pair[1]]
                meas = context.imu_buffer.get_range(p0.time, p1.time)
                if len(meas) >= 2:
                    R_bc = context.live_rig.t_bc[:3, :3]
                    R_wc0 = p0.t_wb[:3, :3] @ R_bc
                    R_wc1 = p1.t_wb[:3, :3] @ R_bc
                    self.add_constraint(integrate_rotation(meas, p0.b[0:3]), R_wc0.T @ R_wc1)
            if len(self.constraints) >= self.min_constraints:
                R_bc = self.solve_rotation()
                print(f"[SELFCAL] imu: rotation init from {len(self.constraints)} constraints, "
                      f"rpy={np.round(np.rad2deg(so3_log(R_bc)), 2)} deg")
                set_rig_extrinsic(context, make_transform(R_bc, np.zeros(3)))
                self.stage = InitStage.TRANSLATION
        if self.stage is InitStage.TRANSLATION and num_poses > self.min_constraints:
            t_seed = self.translation_prior * self.seed_scale
            R_bc = context.live_rig.t_bc[:3, :3]
            print(f"[SELFCAL] imu: translation seeded at {np.round(t_seed, 4)}")
            set_rig_extrinsic(context, make_transform(R_bc, t_seed))
            self.stage = InitStage.DONE
        return self.stage


def set_rig_extrinsic(context, t_bc_new: np.ndarray) -> None:
    """
    Replace T_bc in the live and scratch rigs, re-expressing body poses so the
    camera trajectory (and every landmark) is unchanged.
    """
    t_bc_old = context.live_rig.t_bc
    correction = t_bc_old @ invert_transform(t_bc_new)
    for pose in context.graph.poses:
        pose.t_wb = pose.t_wb @ correction
    for rig in (context.live_rig, context.selfcal_rig):
        rig.t_bc = np.asarray(t_bc_new, dtype=float).copy()


class ImuExtrinsicSensor(SensorCalibrator):
    name = IMU
    block = ParameterBlock.EXTRINSICS

    def __init__(self, config: SensorCalibrationConfig, full_config: SelfCalConfig):
        super().__init__(config)
        self.full_config = full_config
        prior = np.asarray(config.extra.get("t_bc", [0.0] * 6), dtype=float)[0:3]
        self.initializer = ExtrinsicInitializer(
            full_config.batch.min_poses_for_imu_rotation_init,
            prior,
            config.extra.get("translation_seed_scale", (1.05, 0.93, 1.06)),
        )
        self.initializer.stage = InitStage.DONE

    def dim(self, rig) -> int:
        return 6

    def is_active(self, context) -> bool:
        imu = self.full_config.imu
        return bool(imu.has_imu and imu.use_imu and self.config.do_self_cal
                    and not context.calibration(CAMERA).unknown_calibration)

    def batch_ready(self, context) -> bool:
        return self.initializer.stage is InitStage.DONE

    def seed_unknown(self, context, rollback_pose: int) -> None:
        print(f"[SELFCAL] imu: seeding T_bc to identity from pose {rollback_pose}")
        set_rig_extrinsic(context, np.eye(4))
        self.initializer.reset()

    def write_mean(self, context, mean: np.ndarray, rollback_pose: int) -> None:
        set_rig_extrinsic(context, exp_decoupled(mean))
