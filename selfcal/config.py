#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Self-Calibration Configuration Module
=====================================

Handles YAML configuration loading and holds the defaults for the online
camera/IMU self-calibration pipeline.

Configuration Structure:
------------------------
The YAML config file is a nested mapping; every key is optional and is
deep-merged over DEFAULTS:
- solver: tracking BA budget, robust projection norm, outlier gating
- imu: noise densities, random walks, gravity magnitude
- camera / imu_calibration: per-sensor self-cal switches, segment lengths,
  priority queue capacity, acceptance margin and score weights
- change_detection: divergence threshold and consecutive detections needed
- batch: batch-mode iteration budget and convergence threshold
- conditioner: adaptive BA window sizing (AAC loop)
- runtime: async modes, debug output and diagnostics directory

The per-sensor acceptance margins and detection constants have no derivation
behind them; they are tunables, with only "camera margin < IMU margin" relied
upon.

Author: VIO project
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np
import yaml


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, val in (override or {}).items():
        if isinstance(val, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], val)
        else:
            merged[key] = val
    return merged


DEFAULTS: Dict[str, Any] = {
    "solver": {
        "num_ba_poses": 10,
        "num_ba_iterations": 200,
        "use_robust_norm_for_proj": True,
        "projection_sigma": 2.0,
        "huber_threshold": 1.0,  # in sigma-normalized pixels
        "do_outlier_rejection": True,
        "outlier_threshold": 1.0,  # px, per-observation error counted as outlier
        "outlier_ratio": 0.3,
        "poses_to_init": 30,
        "min_poses_for_imu": 30,
        "regularize_biases_in_batch": True,
    },
    "imu": {
        "has_imu": True,
        "use_imu": True,
        "use_imu_for_guess": True,
        "gyro_sigma": 5.3e-3,
        "accel_sigma": 1.0e-2,
        "gyro_bias_sigma": 1.2e-4,
        "accel_bias_sigma": 1.0e-3,
        "gravity": 9.80665,
    },
    "camera": {
        "do_self_cal": True,
        "unknown_calibration": False,
        "segment_length": 10,
        "queue_capacity": 5,
        "margin": 0.05,
        "weights": [1.0, 1.0, 1.7, 1.7, 320000.0],
        "width": 640,
        "height": 480,
        "params": [300.0, 300.0, 320.0, 240.0, 0.9],
        "seed_fov_deg": 90.0,
        "seed_distortion": 1.0,
    },
    "imu_calibration": {
        "do_self_cal": True,
        "unknown_calibration": False,
        "segment_length": 30,
        "queue_capacity": 10,
        "margin": 0.20,
        "weights": [1.0, 1.7, 4.0, 80.0, 25.0, 112.0],
        # T_bc as [tx, ty, tz, rx, ry, rz] (rotation vector)
        "t_bc": [0.0, 0.0, 0.0, 0.0, 0.0, 0.0],
        "translation_seed_scale": [1.05, 0.93, 1.06],
        "refine_poses": True,
    },
    "change_detection": {
        "divergence_threshold": 0.2,
        "num_change_needed": 3,
    },
    "batch": {
        "num_iterations": 1000,
        "window_iterations": 200,
        "score_threshold": 1e7,
        "min_poses_for_imu_rotation_init": 20,
    },
    "conditioner": {
        "enabled": True,
        "do_adaptive": True,
        "growth_increment": 30,
        "chi2_confidence": 0.99,
        "relative_tolerance": 1e-5,
        "inertial_residual_dim": 15,
        "min_poses": 10,
        "inner_sleep_s": 1e-4,
        "idle_sleep_s": 1e-3,
    },
    "runtime": {
        "async_pq": False,
        "do_async_ba": True,
        "debug": False,
        "diagnostics_dir": None,
    },
}


@dataclass
class SolverConfig:
    num_ba_poses: int
    num_ba_iterations: int
    use_robust_norm_for_proj: bool
    projection_sigma: float
    huber_threshold: float
    do_outlier_rejection: bool
    outlier_threshold: float
    outlier_ratio: float
    poses_to_init: int
    min_poses_for_imu: int
    regularize_biases_in_batch: bool


@dataclass
class ImuConfig:
    has_imu: bool
    use_imu: bool
    use_imu_for_guess: bool
    gyro_sigma: float
    accel_sigma: float
    gyro_bias_sigma: float
    accel_bias_sigma: float
    gravity: float

    @property
    def gravity_vector(self) -> np.ndarray:
        return np.array([0.0, 0.0, -self.gravity], dtype=float)


@dataclass
class SensorCalibrationConfig:
    """Per-sensor self-calibration knobs (camera intrinsics or IMU extrinsic)."""

    do_self_cal: bool
    unknown_calibration: bool
    segment_length: int
    queue_capacity: int
    margin: float
    weights: List[float]
    extra: Dict[str, Any]


@dataclass
class ChangeDetectionConfig:
    divergence_threshold: float
    num_change_needed: int


@dataclass
class BatchConfig:
    num_iterations: int
    window_iterations: int
    score_threshold: float
    min_poses_for_imu_rotation_init: int


@dataclass
class ConditionerConfig:
    enabled: bool
    do_adaptive: bool
    growth_increment: int
    chi2_confidence: float
    relative_tolerance: float
    inertial_residual_dim: int
    min_poses: int
    inner_sleep_s: float
    idle_sleep_s: float


@dataclass
class RuntimeConfig:
    async_pq: bool
    do_async_ba: bool
    debug: bool
    diagnostics_dir: Optional[str]


_SENSOR_KEYS = ("do_self_cal", "unknown_calibration", "segment_length",
                "queue_capacity", "margin", "weights")


def _sensor_config(d: Dict[str, Any]) -> SensorCalibrationConfig:
    return SensorCalibrationConfig(
        do_self_cal=bool(d["do_self_cal"]),
        unknown_calibration=bool(d["unknown_calibration"]),
        segment_length=max(2, int(d["segment_length"])),
        queue_capacity=max(1, int(d["queue_capacity"])),
        margin=max(0.0, float(d["margin"])),
        weights=[float(w) for w in d["weights"]],
        extra={k: v for k, v in d.items() if k not in _SENSOR_KEYS},
    )


@dataclass
class SelfCalConfig:
    solver: SolverConfig
    imu: ImuConfig
    camera: SensorCalibrationConfig
    imu_calibration: SensorCalibrationConfig
    change_detection: ChangeDetectionConfig
    batch: BatchConfig
    conditioner: ConditionerConfig
    runtime: RuntimeConfig
    raw: Dict[str, Any]

    @classmethod
    def from_dict(cls, override: Optional[Dict[str, Any]] = None) -> "SelfCalConfig":
        """Build a config from DEFAULTS deep-merged with ``override``."""
        d = _deep_merge(copy.deepcopy(DEFAULTS), override or {})
        s = d["solver"]
        c = d["conditioner"]
        return cls(
            solver=SolverConfig(
                num_ba_poses=max(2, int(s["num_ba_poses"])),
                num_ba_iterations=max(1, int(s["num_ba_iterations"])),
                use_robust_norm_for_proj=bool(s["use_robust_norm_for_proj"]),
                projection_sigma=max(1e-6, float(s["projection_sigma"])),
                huber_threshold=max(1e-6, float(s["huber_threshold"])),
                do_outlier_rejection=bool(s["do_outlier_rejection"]),
                outlier_threshold=float(s["outlier_threshold"]),
                outlier_ratio=float(s["outlier_ratio"]),
                poses_to_init=int(s["poses_to_init"]),
                min_poses_for_imu=int(s["min_poses_for_imu"]),
                regularize_biases_in_batch=bool(s["regularize_biases_in_batch"]),
            ),
            imu=ImuConfig(**{k: d["imu"][k] for k in ImuConfig.__dataclass_fields__}),
            camera=_sensor_config(d["camera"]),
            imu_calibration=_sensor_config(d["imu_calibration"]),
            change_detection=ChangeDetectionConfig(
                divergence_threshold=float(d["change_detection"]["divergence_threshold"]),
                num_change_needed=max(1, int(d["change_detection"]["num_change_needed"])),
            ),
            batch=BatchConfig(
                num_iterations=max(1, int(d["batch"]["num_iterations"])),
                window_iterations=max(1, int(d["batch"]["window_iterations"])),
                score_threshold=float(d["batch"]["score_threshold"]),
                min_poses_for_imu_rotation_init=max(1, int(d["batch"]["min_poses_for_imu_rotation_init"])),
            ),
            conditioner=ConditionerConfig(
                enabled=bool(c["enabled"]),
                do_adaptive=bool(c["do_adaptive"]),
                growth_increment=max(1, int(c["growth_increment"])),
                chi2_confidence=float(c["chi2_confidence"]),
                relative_tolerance=float(c["relative_tolerance"]),
                inertial_residual_dim=int(c["inertial_residual_dim"]),
                min_poses=int(c["min_poses"]),
                inner_sleep_s=max(0.0, float(c["inner_sleep_s"])),
                idle_sleep_s=max(0.0, float(c["idle_sleep_s"])),
            ),
            runtime=RuntimeConfig(
                async_pq=bool(d["runtime"]["async_pq"]),
                do_async_ba=bool(d["runtime"]["do_async_ba"]),
                debug=bool(d["runtime"]["debug"]),
                diagnostics_dir=d["runtime"]["diagnostics_dir"],
            ),
            raw=d,
        )


def load_config(config_path: str) -> SelfCalConfig:
    """
    Load YAML configuration file and merge it over DEFAULTS.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        SelfCalConfig with every group populated

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is malformed

    Example:
        >>> config = load_config("configs/selfcal_default.yaml")
        >>> print(f"Camera queue margin: {config.camera.margin:.2f}")
    """
    with open(config_path, 'r') as f:
        data = yaml.safe_load(f)

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping, got {type(data).__name__}")

    cfg = SelfCalConfig.from_dict(data)
    if cfg.camera.margin >= cfg.imu_calibration.margin:
        print(f"[CONFIG] camera margin {cfg.camera.margin:.3f} >= IMU margin "
              f"{cfg.imu_calibration.margin:.3f}; IMU queue may thrash")
    return cfg
