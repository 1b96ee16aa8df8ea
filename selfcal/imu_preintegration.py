#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
IMU Buffer and Preintegration Module
====================================

Buffers raw IMU samples and preintegrates them between keyframes following
Forster et al., TRO 2017: "On-Manifold Preintegration for Real-Time
Visual-Inertial Odometry".

Preintegrated deltas are expressed in the body frame of the first keyframe
and do NOT contain gravity. Gravity is applied in the world frame when the
inertial residual is evaluated:
    R_j = R_i ΔR
    v_j = v_i + g Δt + R_i Δv
    p_j = p_i + v_i Δt + ½ g Δt² + R_i Δp

Bias corrections use the stored first-order Jacobians so a residual can be
re-evaluated at a new bias without re-integrating.

Author: VIO project
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np

from .math_utils import skew_symmetric, so3_exp


@dataclass
class ImuMeasurement:
    """One IMU sample: gyro [rad/s], specific force [m/s²], timestamp [s]."""

    t: float
    w: np.ndarray
    a: np.ndarray


def _interpolate(m0: ImuMeasurement, m1: ImuMeasurement, t: float) -> ImuMeasurement:
    span = m1.t - m0.t
    alpha = 0.0 if span <= 0 else (t - m0.t) / span
    return ImuMeasurement(
        t=float(t),
        w=(1.0 - alpha) * m0.w + alpha * m1.w,
        a=(1.0 - alpha) * m0.a + alpha * m1.a,
    )


class ImuBuffer:
    """Thread-safe, time-ordered store of raw IMU samples."""

    def __init__(self, max_size: int = 200000):
        self.max_size = max(2, int(max_size))
        self._lock = threading.Lock()
        self._data: List[ImuMeasurement] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def add(self, meas: ImuMeasurement) -> None:
        meas = ImuMeasurement(float(meas.t), np.asarray(meas.w, dtype=float).reshape(3,),
                              np.asarray(meas.a, dtype=float).reshape(3,))
        with self._lock:
            if self._data and meas.t <= self._data[-1].t:
                print(f"[PREINT] Out-of-order IMU sample t={meas.t:.6f} dropped")
                return
            self._data.append(meas)
            if len(self._data) > self.max_size:
                del self._data[: len(self._data) - self.max_size]

    def first(self) -> ImuMeasurement:
        with self._lock:
            return self._data[0]

    def get_range(self, t0: float, t1: float) -> List[ImuMeasurement]:
        """
        Samples covering [t0, t1], with both ends interpolated.

        Returns an empty list if the buffer does not span the interval.
        """
        with self._lock:
            data = list(self._data)
        if t1 <= t0 or len(data) < 2 or data[0].t > t0 or data[-1].t < t1:
            return []
        out: List[ImuMeasurement] = []
        for k in range(len(data) - 1):
            m0, m1 = data[k], data[k + 1]
            if m1.t <= t0:
                continue
            if m0.t >= t1:
                break
            if not out:
                out.append(_interpolate(m0, m1, t0) if m0.t < t0 else m0)
            if m1.t < t1:
                out.append(m1)
            else:
                out.append(_interpolate(m0, m1, t1))
                break
        return out


class IMUPreintegration:
    """
    IMU Preintegration on Manifold (Forster et al., TRO 2017).

    Holds ΔR, Δv, Δp, their bias Jacobians and the 9x9 covariance ordered
    [δθ, δv, δp].
    """

    DT_MIN = 1e-6
    DT_MAX = 0.1

    def __init__(self, bg: np.ndarray, ba: np.ndarray,
                 sigma_g: float, sigma_a: float,
                 sigma_bg: float, sigma_ba: float):
        self.bg_lin = np.copy(bg).reshape(3,)
        self.ba_lin = np.copy(ba).reshape(3,)

        self.sigma_g = sigma_g
        self.sigma_a = sigma_a
        self.sigma_bg = sigma_bg
        self.sigma_ba = sigma_ba

        self.delta_R = np.eye(3, dtype=float)
        self.delta_v = np.zeros(3, dtype=float)
        self.delta_p = np.zeros(3, dtype=float)

        self.J_R_bg = np.zeros((3, 3), dtype=float)
        self.J_v_bg = np.zeros((3, 3), dtype=float)
        self.J_v_ba = np.zeros((3, 3), dtype=float)
        self.J_p_bg = np.zeros((3, 3), dtype=float)
        self.J_p_ba = np.zeros((3, 3), dtype=float)

        self.cov = np.zeros((9, 9), dtype=float)
        self.dt_sum = 0.0

    def integrate_measurement(self, w_meas: np.ndarray, a_meas: np.ndarray, dt: float):
        """Integrate one gyro/accel sample over dt seconds."""
        if dt < self.DT_MIN:
            if dt <= 0.0:
                print(f"[PREINT] Invalid dt={dt:.9f}s (≤0), skipping integration")
            return

        if dt > self.DT_MAX:
            num_splits = int(np.ceil(dt / self.DT_MAX))
            dt_split = dt / num_splits
            for _ in range(num_splits):
                self.integrate_measurement(w_meas, a_meas, dt_split)
            return

        w_hat = np.asarray(w_meas, dtype=float) - self.bg_lin
        a_hat = np.asarray(a_meas, dtype=float) - self.ba_lin

        theta_vec = w_hat * dt
        theta = np.linalg.norm(theta_vec)
        delta_R_k1 = self.delta_R @ so3_exp(theta_vec)

        # Right Jacobian of SO(3)
        if theta < 1e-8:
            j_r = np.eye(3) - 0.5 * skew_symmetric(theta_vec)
        else:
            skew_axis = skew_symmetric(theta_vec / theta)
            j_r = np.eye(3) - (1 - np.cos(theta)) / theta * skew_axis + \
                  (theta - np.sin(theta)) / theta * (skew_axis @ skew_axis)

        delta_v_k1 = self.delta_v + self.delta_R @ a_hat * dt
        delta_p_k1 = self.delta_p + self.delta_v * dt + \
                     0.5 * self.delta_R @ a_hat * (dt ** 2)

        a_skew = skew_symmetric(a_hat)
        j_r_bg_k1 = self.J_R_bg - j_r * dt
        j_v_bg_k1 = self.J_v_bg - self.delta_R @ a_skew @ self.J_R_bg * dt
        j_v_ba_k1 = self.J_v_ba - self.delta_R * dt
        j_p_bg_k1 = self.J_p_bg + self.J_v_bg * dt - \
                    0.5 * self.delta_R @ a_skew @ self.J_R_bg * (dt ** 2)
        j_p_ba_k1 = self.J_p_ba + self.J_v_ba * dt - 0.5 * self.delta_R * (dt ** 2)

        A = np.eye(9, dtype=float)
        A[3:6, 0:3] = -self.delta_R @ a_skew * dt
        A[6:9, 0:3] = -0.5 * self.delta_R @ a_skew * (dt ** 2)
        A[6:9, 3:6] = np.eye(3) * dt

        B = np.zeros((9, 6), dtype=float)
        B[0:3, 0:3] = j_r * dt
        B[3:6, 3:6] = self.delta_R * dt
        B[6:9, 3:6] = 0.5 * self.delta_R * (dt ** 2)

        # Discrete noise from continuous densities
        Q = np.diag([self.sigma_g ** 2 / dt] * 3 + [self.sigma_a ** 2 / dt] * 3)

        cov_new = A @ self.cov @ A.T + B @ Q @ B.T
        if not np.all(np.isfinite(cov_new)):
            print(f"[PREINT] Covariance propagation produced inf/nan at dt_sum={self.dt_sum:.6f}s, reverting")
            cov_new = self.cov
        self.cov = (cov_new + cov_new.T) / 2.0

        self.delta_R = delta_R_k1
        self.delta_v = delta_v_k1
        self.delta_p = delta_p_k1

        self.J_R_bg = j_r_bg_k1
        self.J_v_bg = j_v_bg_k1
        self.J_v_ba = j_v_ba_k1
        self.J_p_bg = j_p_bg_k1
        self.J_p_ba = j_p_ba_k1

        self.dt_sum += dt

    def get_deltas_corrected(self, bg_new: np.ndarray,
                             ba_new: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Bias-corrected deltas using the first-order Jacobians.

        Returns:
            delta_R_corr, delta_v_corr, delta_p_corr
        """
        dbg = np.asarray(bg_new, dtype=float) - self.bg_lin
        dba = np.asarray(ba_new, dtype=float) - self.ba_lin
        delta_R_corr = self.delta_R @ so3_exp(self.J_R_bg @ dbg)
        delta_v_corr = self.delta_v + self.J_v_bg @ dbg + self.J_v_ba @ dba
        delta_p_corr = self.delta_p + self.J_p_bg @ dbg + self.J_p_ba @ dba
        return delta_R_corr, delta_v_corr, delta_p_corr

    def get_covariance(self) -> np.ndarray:
        """Preintegration covariance (9x9), ordered [δθ, δv, δp]."""
        return self.cov.copy()

    def bias_covariance(self) -> np.ndarray:
        """Random-walk covariance of [bg, ba] over the integration interval."""
        dt = max(self.dt_sum, self.DT_MIN)
        return np.diag([self.sigma_bg ** 2 * dt] * 3 + [self.sigma_ba ** 2 * dt] * 3)


def preintegrate(measurements: Sequence[ImuMeasurement], bias: np.ndarray,
                 sigma_g: float, sigma_a: float,
                 sigma_bg: float, sigma_ba: float) -> IMUPreintegration:
    """Preintegrate consecutive samples; ``bias`` is [bg, ba]."""
    bias = np.asarray(bias, dtype=float).reshape(6,)
    preint = IMUPreintegration(bias[0:3], bias[3:6], sigma_g, sigma_a, sigma_bg, sigma_ba)
    for m0, m1 in zip(measurements[:-1], measurements[1:]):
        preint.integrate_measurement(0.5 * (m0.w + m1.w), 0.5 * (m0.a + m1.a), m1.t - m0.t)
    return preint


def integrate_rotation(measurements: Sequence[ImuMeasurement],
                       bg: np.ndarray) -> np.ndarray:
    """Gyro-only relative rotation ΔR over the samples."""
    R = np.eye(3)
    bg = np.asarray(bg, dtype=float).reshape(3,)
    for m0, m1 in zip(measurements[:-1], measurements[1:]):
        dt = m1.t - m0.t
        if dt > 0:
            R = R @ so3_exp((0.5 * (m0.w + m1.w) - bg) * dt)
    return R


def predict_state(R_wb: np.ndarray, p_w: np.ndarray, v_w: np.ndarray, bias: np.ndarray,
                  measurements: Sequence[ImuMeasurement],
                  gravity_w: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Propagate (R, p, v) through the samples. Used for motion guesses."""
    preint = preintegrate(measurements, bias, 0.0, 0.0, 0.0, 0.0)
    dR, dv, dp = preint.get_deltas_corrected(bias[0:3], bias[3:6])
    dt = preint.dt_sum
    R_new = R_wb @ dR
    v_new = v_w + gravity_w * dt + R_wb @ dv
    p_new = p_w + v_w * dt + 0.5 * gravity_w * dt * dt + R_wb @ dp
    return R_new, p_new, v_new
