#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Sparse Visual-Inertial Bundle Adjuster
======================================

Nonlinear least-squares over keyframe poses, inverse-depth landmarks, IMU
preintegration factors and (optionally) the camera calibration, solved with
scipy.optimize.least_squares.

Parameter Layout:
-----------------
    x = [calibration | active pose blocks | active landmark inverse depths]

- calibration: camera intrinsics [fx, fy, cx, cy, (w)] and/or the extrinsic
  T_bc as [t, rotvec], only when marked free
- pose block: [δt, δθ] (6) or [δt, δθ, δv, δbg, δba] (15) with IMU factors;
  rotation is perturbed on the left, R = Exp(δθ) R0
- landmark: inverse depth ρ along the unit reference ray

Residuals:
----------
- projection (2): (π(T_bc⁻¹ T_wb⁻¹ X_w) - z) / σ, Huber-reweighted when enabled
- inertial (15): whitened [r_R, r_v, r_p] by the preintegration covariance
  plus bias random walk
- bias prior (optional): pulls active pose biases towards zero

A projection residual is on the conditioning edge when its pose is fixed but
its landmark is free; an inertial residual is the conditioning edge when its
first pose is fixed and its second is free.

Author: VIO project
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import scipy.linalg
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from .camera import fov_project, unit_rays
from .imu_preintegration import IMUPreintegration, ImuMeasurement, preintegrate
from .math_utils import exp_decoupled, log_decoupled, so3_exp_batch, so3_log
from .numerical_checks import assert_finite, covariance_rank


_RHO_MIN = 1e-8
_DENSE_MAX_PARAMS = 60


@dataclass
class SolverOptions:
    use_robust_norm_for_proj: bool = True
    huber_threshold: float = 1.0
    projection_sigma: float = 2.0
    outlier_threshold: float = 1.0
    gyro_sigma: float = 5.3e-3
    accel_sigma: float = 1.0e-2
    gyro_bias_sigma: float = 1.2e-4
    accel_bias_sigma: float = 1.0e-3
    gravity: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, -9.80665]))
    free_intrinsics: bool = False
    free_extrinsics: bool = False
    bias_prior_sigma: Optional[Tuple[float, float]] = None
    param_change_threshold: float = 1e-10
    error_change_threshold: float = 1e-8
    verbose: bool = False


@dataclass
class SolutionSummary:
    num_proj_residuals: int = 0
    proj_error: float = 0.0
    num_cond_proj_residuals: int = 0
    cond_proj_error: float = 0.0
    num_inertial_residuals: int = 0
    inertial_error: float = 0.0
    num_cond_inertial_residuals: int = 0
    cond_inertial_error: float = 0.0
    cost_initial: float = 0.0
    cost_final: float = 0.0
    num_evaluations: int = 0
    converged: bool = False
    message: str = ""


@dataclass
class PoseEstimate:
    t_wb: np.ndarray
    v_w: np.ndarray
    b: np.ndarray
    is_active: bool


@dataclass
class ImuResidualInfo:
    id: int
    pose_a: int
    pose_b: int
    residual: np.ndarray
    mahalanobis_distance: float


@dataclass
class ProjectionResidualInfo:
    id: int
    pose: int
    landmark: int
    z: np.ndarray
    error_px: np.ndarray
    mahalanobis_distance: float
    valid: bool


@dataclass
class _ImuFactor:
    pose_a: int
    pose_b: int
    preint: IMUPreintegration
    sqrt_info: np.ndarray
    bias_sqrt_info: np.ndarray


class BundleAdjuster:
    """
    Problem builder + solver facade.

    Build with add_* calls, call solve(), then read values back by id.
    """

    def __init__(self, options: SolverOptions, camera_params: np.ndarray,
                 t_bc: np.ndarray, use_imu: bool = False):
        self.options = options
        self.use_imu = bool(use_imu)
        self.pose_dim = 15 if self.use_imu else 6
        self._params = np.asarray(camera_params, dtype=float).copy()
        self._t_bc = np.asarray(t_bc, dtype=float).copy()

        self._R: List[np.ndarray] = []
        self._t: List[np.ndarray] = []
        self._v: List[np.ndarray] = []
        self._b: List[np.ndarray] = []
        self._pose_active: List[bool] = []
        self._times: List[float] = []

        self._lm_ref: List[int] = []
        self._lm_px: List[np.ndarray] = []
        self._lm_ray: List[np.ndarray] = []
        self._lm_rho: List[float] = []
        self._lm_active: List[bool] = []

        self._proj_pose: List[int] = []
        self._proj_lm: List[int] = []
        self._proj_z: List[np.ndarray] = []

        self._imu: List[_ImuFactor] = []

        self._solved = False
        self._proj_err_px = np.zeros((0, 2))
        self._proj_valid = np.zeros(0, dtype=bool)
        self._imu_res: List[np.ndarray] = []
        self.covariance_info: Optional[np.ndarray] = None

    # ------------------------------------------------------------------
    # Problem construction
    # ------------------------------------------------------------------
    def add_pose(self, t_wb: np.ndarray, is_active: bool, time: float = 0.0,
                 v_w: Optional[np.ndarray] = None, b: Optional[np.ndarray] = None) -> int:
        self._R.append(np.asarray(t_wb[:3, :3], dtype=float).copy())
        self._t.append(np.asarray(t_wb[:3, 3], dtype=float).copy())
        self._v.append(np.zeros(3) if v_w is None else np.asarray(v_w, dtype=float).copy())
        self._b.append(np.zeros(6) if b is None else np.asarray(b, dtype=float).copy())
        self._pose_active.append(bool(is_active))
        self._times.append(float(time))
        return len(self._R) - 1

    def add_landmark(self, ref_pose: int, center_px: np.ndarray, ray: np.ndarray,
                     rho: float, is_active: bool) -> int:
        self._lm_ref.append(int(ref_pose))
        self._lm_px.append(np.asarray(center_px, dtype=float).reshape(2,).copy())
        self._lm_ray.append(np.asarray(ray, dtype=float).reshape(3,).copy())
        self._lm_rho.append(max(float(rho), 2.0 * _RHO_MIN))
        self._lm_active.append(bool(is_active))
        return len(self._lm_ref) - 1

    def add_projection_residual(self, z: np.ndarray, pose: int, landmark: int) -> int:
        self._proj_pose.append(int(pose))
        self._proj_lm.append(int(landmark))
        self._proj_z.append(np.asarray(z, dtype=float).reshape(2,).copy())
        return len(self._proj_pose) - 1

    def add_imu_residual(self, pose_a: int, pose_b: int,
                         measurements: Sequence[ImuMeasurement]) -> int:
        """Preintegrate once at pose_a's bias. Returns -1 without samples."""
        if len(measurements) < 2:
            return -1
        o = self.options
        preint = preintegrate(measurements, self._b[pose_a], o.gyro_sigma, o.accel_sigma,
                              o.gyro_bias_sigma, o.accel_bias_sigma)
        cov = preint.get_covariance() + np.eye(9) * 1e-12
        info = np.linalg.inv(cov)
        info = 0.5 * (info + info.T)
        sqrt_info = scipy.linalg.cholesky(info, lower=False)
        bias_sqrt_info = 1.0 / np.sqrt(np.diag(preint.bias_covariance()))
        self._imu.append(_ImuFactor(pose_a, pose_b, preint, sqrt_info, bias_sqrt_info))
        return len(self._imu) - 1

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------
    def _layout(self):
        o = self.options
        col = 0
        self._int_cols = slice(0, 0)
        self._ext_cols = slice(0, 0)
        if o.free_intrinsics:
            self._int_cols = slice(col, col + self._params.size)
            col += self._params.size
        if o.free_extrinsics:
            self._ext_cols = slice(col, col + 6)
            col += 6
        self.num_calib_params = col
        self._pose_col = np.full(len(self._R), -1, dtype=int)
        for pid, active in enumerate(self._pose_active):
            if active:
                self._pose_col[pid] = col
                col += self.pose_dim
        self._lm_col = np.full(len(self._lm_ref), -1, dtype=int)
        for lid, active in enumerate(self._lm_active):
            if active:
                self._lm_col[lid] = col
                col += 1
        self.num_params = col

        self._act_pose = np.flatnonzero(self._pose_col >= 0)
        self._act_lm = np.flatnonzero(self._lm_col >= 0)

        self._R0 = np.array(self._R).reshape(-1, 3, 3)
        self._t0 = np.array(self._t).reshape(-1, 3)
        self._v0 = np.array(self._v).reshape(-1, 3)
        self._b0 = np.array(self._b).reshape(-1, 6)
        self._rho0 = np.array(self._lm_rho, dtype=float)
        self._ray0 = np.array(self._lm_ray).reshape(-1, 3)
        self._px0 = np.array(self._lm_px).reshape(-1, 2)
        self._lm_ref_arr = np.array(self._lm_ref, dtype=int)
        self._pp = np.array(self._proj_pose, dtype=int)
        self._pl = np.array(self._proj_lm, dtype=int)
        self._pz = np.array(self._proj_z).reshape(-1, 2)

        pose_active = np.array(self._pose_active, dtype=bool)
        lm_active = np.array(self._lm_active, dtype=bool)
        if self._pp.size:
            lm_free = lm_active[self._pl] | pose_active[self._lm_ref_arr[self._pl]]
            self._proj_cond = (~pose_active[self._pp]) & lm_free
        else:
            self._proj_cond = np.zeros(0, dtype=bool)
        self._imu_cond = np.array(
            [(not self._pose_active[f.pose_a]) and self._pose_active[f.pose_b] for f in self._imu],
            dtype=bool)

    def _initial_x(self) -> np.ndarray:
        x = np.zeros(self.num_params)
        if self.options.free_intrinsics:
            x[self._int_cols] = self._params
        if self.options.free_extrinsics:
            x[self._ext_cols] = log_decoupled(self._t_bc)
        x[self._lm_col[self._act_lm]] = self._rho0[self._act_lm]
        return x

    def _decode(self, x: np.ndarray):
        params = x[self._int_cols] if self.options.free_intrinsics else self._params
        t_bc = exp_decoupled(x[self._ext_cols]) if self.options.free_extrinsics else self._t_bc
        R = self._R0.copy()
        t = self._t0.copy()
        v = self._v0.copy()
        b = self._b0.copy()
        if self._act_pose.size:
            cols = self._pose_col[self._act_pose]
            dx = x[cols[:, None] + np.arange(self.pose_dim)[None, :]]
            t[self._act_pose] += dx[:, 0:3]
            R[self._act_pose] = np.einsum('nij,njk->nik', so3_exp_batch(dx[:, 3:6]), R[self._act_pose])
            if self.use_imu:
                v[self._act_pose] += dx[:, 6:9]
                b[self._act_pose] += dx[:, 9:15]
        rho = self._rho0.copy()
        if self._act_lm.size:
            rho[self._act_lm] = x[self._lm_col[self._act_lm]]
        return params, t_bc, R, t, v, b, rho

    # ------------------------------------------------------------------
    # Residuals
    # ------------------------------------------------------------------
    def _projection_errors(self, params, t_bc, R, t, rho) -> Tuple[np.ndarray, np.ndarray]:
        if self._pp.size == 0:
            return np.zeros((0, 2)), np.zeros(0, dtype=bool)
        rays = unit_rays(params, self._px0) if self.options.free_intrinsics else self._ray0
        R_bc = t_bc[:3, :3]
        p_bc = t_bc[:3, 3]
        p_b_ref = (rays / rho[:, None]) @ R_bc.T + p_bc
        ref = self._lm_ref_arr
        p_w = np.einsum('nij,nj->ni', R[ref], p_b_ref) + t[ref]

        pw = p_w[self._pl]
        p_b = np.einsum('nji,nj->ni', R[self._pp], pw - t[self._pp])
        p_c = (p_b - p_bc) @ R_bc
        uv = fov_project(params, p_c)
        valid = np.isfinite(uv).all(axis=1)
        err = np.where(valid[:, None], uv - self._pz, 0.0)
        return err, valid

    def _weighted_projection(self, err: np.ndarray) -> np.ndarray:
        r = err / self.options.projection_sigma
        if self.options.use_robust_norm_for_proj and r.size:
            k = self.options.huber_threshold
            norm = np.linalg.norm(r, axis=1)
            w = np.where(norm > k, np.sqrt(k / np.maximum(norm, 1e-12)), 1.0)
            r = r * w[:, None]
        return r

    def _imu_residual(self, f: _ImuFactor, R, t, v, b) -> np.ndarray:
        a, c = f.pose_a, f.pose_b
        g = self.options.gravity
        dt = f.preint.dt_sum
        dR, dv, dp = f.preint.get_deltas_corrected(b[a][0:3], b[a][3:6])
        Ra_T = R[a].T
        r_R = so3_log(dR.T @ Ra_T @ R[c])
        r_v = Ra_T @ (v[c] - v[a] - g * dt) - dv
        r_p = Ra_T @ (t[c] - t[a] - v[a] * dt - 0.5 * g * dt * dt) - dp
        r9 = f.sqrt_info @ np.concatenate([r_R, r_v, r_p])
        r_b = f.bias_sqrt_info * (b[c] - b[a])
        return np.concatenate([r9, r_b])

    def _prior_residuals(self, b) -> List[np.ndarray]:
        out = []
        if self.options.bias_prior_sigma is not None and self.use_imu:
            sg, sa = self.options.bias_prior_sigma
            scale = np.array([1.0 / sg] * 3 + [1.0 / sa] * 3)
            for pid in self._act_pose:
                out.append(scale * b[pid])
        return out

    def _residuals(self, x: np.ndarray) -> np.ndarray:
        params, t_bc, R, t, v, b, rho = self._decode(x)
        err, _ = self._projection_errors(params, t_bc, R, t, rho)
        parts = [self._weighted_projection(err).ravel()]
        for f in self._imu:
            parts.append(self._imu_residual(f, R, t, v, b))
        parts.extend(self._prior_residuals(b))
        return np.concatenate(parts) if parts else np.zeros(0)

    def _sparsity(self, num_residuals: int) -> lil_matrix:
        S = lil_matrix((num_residuals, self.num_params), dtype=int)
        calib = list(range(self.num_calib_params))
        pd = self.pose_dim
        row = 0
        for k in range(self._pp.size):
            cols = list(calib)
            for pid in (self._pp[k], self._lm_ref_arr[self._pl[k]]):
                c = self._pose_col[pid]
                if c >= 0:
                    cols.extend(range(c, c + pd))
            if self._lm_col[self._pl[k]] >= 0:
                cols.append(self._lm_col[self._pl[k]])
            if cols:
                for r in (row, row + 1):
                    S[r, cols] = 1
            row += 2
        for f in self._imu:
            cols = []
            for pid in (f.pose_a, f.pose_b):
                c = self._pose_col[pid]
                if c >= 0:
                    cols.extend(range(c, c + pd))
            for r in range(row, row + 15):
                if cols:
                    S[r, cols] = 1
            row += 15
        if self.options.bias_prior_sigma is not None and self.use_imu:
            for pid in self._act_pose:
                c = self._pose_col[pid]
                for j in range(6):
                    S[row + j, c + 9 + j] = 1
                row += 6
        return S

    # ------------------------------------------------------------------
    # Solve
    # ------------------------------------------------------------------
    def solve(self, max_iterations: int) -> SolutionSummary:
        """
        Run at most ``max_iterations`` evaluations. Non-convergence is not an
        error: the best iterate is kept.
        """
        self._layout()
        x0 = self._initial_x()
        r0 = self._residuals(x0)
        summary = SolutionSummary(cost_initial=0.5 * float(r0 @ r0))
        x = x0
        jac = None

        if self.num_params > 0 and r0.size > 0:
            lb = np.full(self.num_params, -np.inf)
            lb[self._lm_col[self._act_lm]] = _RHO_MIN
            kwargs = dict(
                method='trf',
                x_scale='jac',
                ftol=self.options.error_change_threshold,
                xtol=self.options.param_change_threshold,
                gtol=1e-12,
                max_nfev=max(1, int(max_iterations)),
                bounds=(lb, np.full(self.num_params, np.inf)),
                verbose=0,
            )
            if self.num_params > _DENSE_MAX_PARAMS:
                kwargs["jac_sparsity"] = self._sparsity(r0.size)
                kwargs["tr_solver"] = 'lsmr'
            else:
                kwargs["tr_solver"] = 'exact'
            result = least_squares(self._residuals, x0, **kwargs)
            x = result.x
            jac = result.jac
            summary.num_evaluations = int(result.nfev)
            summary.converged = bool(result.status > 0)
            summary.message = str(result.message)
            if self.options.verbose:
                print(f"[BA] params={self.num_params} residuals={r0.size} "
                      f"cost {summary.cost_initial:.4e} -> {result.cost:.4e} "
                      f"nfev={result.nfev} status={result.status}")

        self._x = x
        self._jac = jac
        self._store_solution(x, summary)
        self._solved = True
        return summary

    def _store_solution(self, x: np.ndarray, summary: SolutionSummary) -> None:
        params, t_bc, R, t, v, b, rho = self._decode(x)
        self._sol = (params, t_bc, R, t, v, b, rho)
        err, valid = self._projection_errors(params, t_bc, R, t, rho)
        self._proj_err_px = err
        self._proj_valid = valid
        r = self._weighted_projection(err)
        per_proj = np.sum(r * r, axis=1) if r.size else np.zeros(0)
        self._proj_md = per_proj

        summary.num_proj_residuals = int(per_proj.size)
        summary.proj_error = float(np.sum(per_proj))
        summary.num_cond_proj_residuals = int(np.count_nonzero(self._proj_cond))
        summary.cond_proj_error = float(np.sum(per_proj[self._proj_cond])) if per_proj.size else 0.0

        self._imu_res = [self._imu_residual(f, R, t, v, b) for f in self._imu]
        md = np.array([float(res @ res) for res in self._imu_res])
        summary.num_inertial_residuals = len(self._imu)
        summary.inertial_error = float(np.sum(md)) if md.size else 0.0
        summary.num_cond_inertial_residuals = int(np.count_nonzero(self._imu_cond))
        summary.cond_inertial_error = float(np.sum(md[self._imu_cond])) if md.size else 0.0

        full = self._residuals(x)
        summary.cost_final = 0.5 * float(full @ full)

    # ------------------------------------------------------------------
    # Readback
    # ------------------------------------------------------------------
    def get_pose(self, pose: int) -> PoseEstimate:
        _, _, R, t, v, b, _ = self._sol
        T = np.eye(4)
        T[:3, :3] = R[pose]
        T[:3, 3] = t[pose]
        return PoseEstimate(T, v[pose].copy(), b[pose].copy(), self._pose_active[pose])

    def get_landmark_rho(self, landmark: int) -> float:
        return float(self._sol[6][landmark])

    def get_camera_params(self) -> np.ndarray:
        return np.asarray(self._sol[0], dtype=float).copy()

    def get_t_bc(self) -> np.ndarray:
        return self._sol[1].copy()

    def get_imu_residual(self, res_id: int) -> ImuResidualInfo:
        f = self._imu[res_id]
        r = self._imu_res[res_id]
        return ImuResidualInfo(res_id, f.pose_a, f.pose_b, r.copy(), float(r @ r))

    def get_projection_residual(self, res_id: int) -> ProjectionResidualInfo:
        return ProjectionResidualInfo(
            id=res_id,
            pose=int(self._pp[res_id]),
            landmark=int(self._pl[res_id]),
            z=self._pz[res_id].copy(),
            error_px=self._proj_err_px[res_id].copy(),
            mahalanobis_distance=float(self._proj_md[res_id]),
            valid=bool(self._proj_valid[res_id]),
        )

    def conditioning_imu_residual_ids(self) -> List[int]:
        return [int(i) for i in np.flatnonzero(self._imu_cond)]

    def landmark_outlier_ratios(self) -> Dict[int, float]:
        """Fraction of each landmark's observations with error/σ above threshold."""
        if self._pp.size == 0:
            return {}
        norm = np.linalg.norm(self._proj_err_px, axis=1) / self.options.projection_sigma
        bad = (norm > self.options.outlier_threshold) | (~self._proj_valid)
        num = np.bincount(self._pl, minlength=len(self._lm_ref))
        num_bad = np.bincount(self._pl, weights=bad.astype(float), minlength=len(self._lm_ref))
        return {int(l): float(num_bad[l] / num[l]) for l in np.flatnonzero(num)}

    def mean_projection_error(self, pose: int) -> float:
        mask = (self._pp == pose) & self._proj_valid
        if not np.any(mask):
            return 0.0
        return float(np.mean(np.linalg.norm(self._proj_err_px[mask], axis=1)))

    def calibration_covariance(self) -> Tuple[np.ndarray, np.ndarray, int]:
        """
        Mean, covariance and rank of the free calibration block.

        The covariance is the inverse of the Schur complement of J^T J onto
        the calibration columns (marginalizing poses and landmarks).
        """
        n_c = self.num_calib_params
        mean = np.concatenate([
            self.get_camera_params() if self.options.free_intrinsics else np.zeros(0),
            log_decoupled(self.get_t_bc()) if self.options.free_extrinsics else np.zeros(0),
        ])
        if n_c == 0:
            return mean, np.zeros((0, 0)), 0
        if self._jac is None:
            return mean, np.full((n_c, n_c), np.nan), 0
        J = self._jac.toarray() if hasattr(self._jac, "toarray") else np.asarray(self._jac)
        H = J.T @ J
        H_cc = H[:n_c, :n_c]
        if self.num_params > n_c:
            H_co = H[:n_c, n_c:]
            H_oo = H[n_c:, n_c:]
            damp = 1e-9 * max(1.0, float(np.max(np.abs(np.diag(H_oo)))))
            try:
                X = scipy.linalg.solve(H_oo + damp * np.eye(H_oo.shape[0]), H_co.T, assume_a='pos')
            except (np.linalg.LinAlgError, ValueError):
                X = np.linalg.lstsq(H_oo, H_co.T, rcond=None)[0]
            info = H_cc - H_co @ X
        else:
            info = H_cc
        info = 0.5 * (info + info.T)
        self.covariance_info = info
        if not assert_finite("calibration information", info):
            return mean, np.full((n_c, n_c), np.nan), 0
        rank = covariance_rank(info)
        if rank == n_c:
            cov = np.linalg.inv(info)
        else:
            cov = np.linalg.pinv(info)
        return mean, 0.5 * (cov + cov.T), rank
