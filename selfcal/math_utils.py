#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Self-Calibration Math Utilities Module
======================================

Rigid-body helpers shared by the bundle adjuster, the window estimator and the
extrinsic initializer.

Transform Convention:
---------------------
A 4x4 homogeneous T_ab maps points expressed in frame b into frame a:
    p_a = T_ab @ p_b

Poses are stored as T_wb (body in world). The camera extrinsic is T_bc
(camera in body). Rotation perturbations are applied on the left:
    R <- Exp(dtheta) @ R

The "decoupled" log of a transform is [t, log(R)] (translation first), used as
the 6-vector mean of the extrinsic calibration block.

Author: VIO project
"""

import numpy as np
from scipy.spatial.transform import Rotation as R_scipy


# =============================================================================
# SO(3)
# =============================================================================

def skew_symmetric(v: np.ndarray) -> np.ndarray:
    """
    Create skew-symmetric matrix from 3D vector.
    [v]× such that [v]× @ u = v × u (cross product)
    """
    return np.array([
        [0,      -v[2],  v[1]],
        [v[2],    0,    -v[0]],
        [-v[1],   v[0],   0   ]
    ], dtype=float)


def so3_exp(phi: np.ndarray) -> np.ndarray:
    """Rotation vector -> rotation matrix."""
    return R_scipy.from_rotvec(np.asarray(phi, dtype=float).reshape(3,)).as_matrix()


def so3_exp_batch(phis: np.ndarray) -> np.ndarray:
    """(N,3) rotation vectors -> (N,3,3) rotation matrices."""
    phis = np.asarray(phis, dtype=float).reshape(-1, 3)
    if phis.shape[0] == 0:
        return np.zeros((0, 3, 3), dtype=float)
    return R_scipy.from_rotvec(phis).as_matrix()


def so3_log(R: np.ndarray) -> np.ndarray:
    """Rotation matrix -> rotation vector."""
    return R_scipy.from_matrix(np.asarray(R, dtype=float)).as_rotvec()


# =============================================================================
# SE(3)
# =============================================================================

def make_transform(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    T = np.eye(4, dtype=float)
    T[:3, :3] = R
    T[:3, 3] = np.asarray(t, dtype=float).reshape(3,)
    return T


def invert_transform(T: np.ndarray) -> np.ndarray:
    R = T[:3, :3]
    t = T[:3, 3]
    return make_transform(R.T, -R.T @ t)


def transform_points(T: np.ndarray, pts: np.ndarray) -> np.ndarray:
    """Apply T to (N,3) points."""
    pts = np.asarray(pts, dtype=float).reshape(-1, 3)
    return pts @ T[:3, :3].T + T[:3, 3]


def log_decoupled(T: np.ndarray) -> np.ndarray:
    """[t, log(R)] 6-vector of a transform."""
    return np.concatenate([T[:3, 3], so3_log(T[:3, :3])])


def exp_decoupled(x: np.ndarray) -> np.ndarray:
    x = np.asarray(x, dtype=float).reshape(6,)
    return make_transform(so3_exp(x[3:6]), x[0:3])


def gravity_aligned_rotation(accel: np.ndarray) -> np.ndarray:
    """
    Rotation R_wb whose body z-axis reading of specific force points up.

    A stationary accelerometer measures +g along world up expressed in the body
    frame; the returned R_wb maps that body vector onto world +z. Yaw is left at
    zero (unobservable from gravity).
    """
    a = np.asarray(accel, dtype=float).reshape(3,)
    norm = np.linalg.norm(a)
    if norm < 1e-9:
        return np.eye(3)
    up_b = a / norm
    z_w = np.array([0.0, 0.0, 1.0])
    axis = np.cross(up_b, z_w)
    s = np.linalg.norm(axis)
    c = float(np.dot(up_b, z_w))
    if s < 1e-12:
        if c > 0:
            return np.eye(3)
        return so3_exp(np.array([np.pi, 0.0, 0.0]))
    return so3_exp(axis / s * np.arctan2(s, c))
