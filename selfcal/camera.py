#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Camera Model Helpers Module

Contains the FOV (Devernay-Faugeras) camera model and the Rig that pairs a
camera with its extrinsic pose in the IMU body frame.

The FOV model maps a normalized point x = X/Z with radius r to
    r_d = atan(2 r tan(w/2)) / w
so pixels are u = fx * (r_d/r) * x + cx. With only four parameters the model
reduces to plain pinhole.

Author: VIO project
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np


_W_EPS = 1e-5
_R_EPS = 1e-9


def _fov_distort_factor(r: np.ndarray, w: float) -> np.ndarray:
    if abs(w) < _W_EPS:
        return np.ones_like(r)
    mul2tanwby2 = 2.0 * np.tan(w / 2.0)
    safe_r = np.where(r < _R_EPS, 1.0, r)
    factor = np.arctan(safe_r * mul2tanwby2) / (safe_r * w)
    return np.where(r < _R_EPS, mul2tanwby2 / w, factor)


def _fov_undistort_factor(rd: np.ndarray, w: float) -> np.ndarray:
    if abs(w) < _W_EPS:
        return np.ones_like(rd)
    mul2tanwby2 = 2.0 * np.tan(w / 2.0)
    safe_rd = np.where(rd < _R_EPS, 1.0, rd)
    factor = np.tan(safe_rd * w) / (safe_rd * mul2tanwby2)
    return np.where(rd < _R_EPS, w / mul2tanwby2, factor)


def fov_project(params: np.ndarray, pts_c: np.ndarray) -> np.ndarray:
    """
    Project camera-frame points to pixels.

    Args:
        params: [fx, fy, cx, cy] or [fx, fy, cx, cy, w]
        pts_c: Nx3 points in camera frame (Z forward)

    Returns:
        Nx2 pixel coordinates. Points with Z <= 0 come back as NaN.
    """
    pts_c = np.asarray(pts_c, dtype=float).reshape(-1, 3)
    z = pts_c[:, 2]
    valid = z > 1e-9
    safe_z = np.where(valid, z, 1.0)
    xn = pts_c[:, 0] / safe_z
    yn = pts_c[:, 1] / safe_z
    if len(params) > 4:
        factor = _fov_distort_factor(np.sqrt(xn * xn + yn * yn), float(params[4]))
        xn = xn * factor
        yn = yn * factor
    uv = np.stack([params[0] * xn + params[2], params[1] * yn + params[3]], axis=1)
    uv[~valid] = np.nan
    return uv


def fov_unproject(params: np.ndarray, px: np.ndarray) -> np.ndarray:
    """
    Unproject pixels to rays on the z=1 plane.

    Returns:
        Nx3 array [x, y, 1]
    """
    px = np.asarray(px, dtype=float).reshape(-1, 2)
    mx = (px[:, 0] - params[2]) / params[0]
    my = (px[:, 1] - params[3]) / params[1]
    if len(params) > 4:
        factor = _fov_undistort_factor(np.sqrt(mx * mx + my * my), float(params[4]))
        mx = mx * factor
        my = my * factor
    return np.stack([mx, my, np.ones_like(mx)], axis=1)


def unit_rays(params: np.ndarray, px: np.ndarray) -> np.ndarray:
    rays = fov_unproject(params, px)
    return rays / np.linalg.norm(rays, axis=1, keepdims=True)


class FovCamera:
    """FOV camera with a fixed image size and mutable parameter vector."""

    def __init__(self, params: Sequence[float], width: int, height: int):
        self.params = np.asarray(params, dtype=float).reshape(-1).copy()
        if self.params.size not in (4, 5):
            raise ValueError(f"FOV camera expects 4 or 5 params, got {self.params.size}")
        self.width = int(width)
        self.height = int(height)

    @property
    def num_params(self) -> int:
        return int(self.params.size)

    def copy(self) -> "FovCamera":
        return FovCamera(self.params, self.width, self.height)

    @staticmethod
    def wide_fov_seed(width: int, height: int, fov_deg: float = 90.0,
                      distortion: Optional[float] = 1.0) -> "FovCamera":
        """Known-bad intrinsics guess used when calibration is Unknown."""
        f = 0.5 * height / np.tan(np.deg2rad(fov_deg) / 2.0)
        params = [f, f, width / 2.0, height / 2.0]
        if distortion is not None:
            params.append(float(distortion))
        return FovCamera(params, width, height)


class Rig:
    """
    Camera intrinsics plus T_bc (camera pose in the IMU body frame).

    Three copies exist at runtime: live, self-cal scratch and AAC scratch.
    The live copy is only ever overwritten whole through ``copy_from`` while
    the caller holds the context locks.
    """

    def __init__(self, camera: FovCamera, t_bc: Optional[np.ndarray] = None):
        self.camera = camera
        self.t_bc = np.eye(4) if t_bc is None else np.asarray(t_bc, dtype=float).copy()

    @property
    def intrinsics(self) -> np.ndarray:
        return self.camera.params

    def copy(self) -> "Rig":
        return Rig(self.camera.copy(), self.t_bc)

    def copy_from(self, other: "Rig") -> None:
        self.camera = other.camera.copy()
        self.t_bc = other.t_bc.copy()
