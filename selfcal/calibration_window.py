#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Calibration windows: scoring, fusion and the two-sample divergence test.

A window is the calibration estimate (mean + covariance) from one pose range.
Its score is the inverse geometric-mean variance of the weighted covariance,
    score = det(D C D)^(-1/n),   D = diag(sqrt(weights))
so lower uncertainty gives a higher score. The weights put parameters with
very different units (focal length vs distortion) on a common footing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np
from scipy import stats

from .numerical_checks import covariance_rank, finite_or_zero


@dataclass
class CalibrationWindow:
    start: int
    end: int
    mean: np.ndarray = field(default_factory=lambda: np.zeros(0))
    covariance: np.ndarray = field(default_factory=lambda: np.zeros((0, 0)))
    score: float = 0.0
    rank: int = 0
    generalized_variance: float = 0.0
    num_measurements: int = 0

    @property
    def dim(self) -> int:
        return int(np.asarray(self.mean).size)

    @property
    def num_poses(self) -> int:
        return max(0, self.end - self.start)

    def is_applicable(self) -> bool:
        """Full-rank, finite window; only these may reach the live rig."""
        return (self.dim > 0
                and self.rank == self.dim
                and np.all(np.isfinite(self.mean))
                and np.all(np.isfinite(self.covariance))
                and np.isfinite(self.score)
                and self.score > 0.0)

    def overlaps(self, other: "CalibrationWindow") -> bool:
        return self.start < other.end and other.start < self.end

    def __repr__(self) -> str:
        return (f"CalibrationWindow([{self.start}, {self.end}) dim={self.dim} rank={self.rank} "
                f"score={self.score:.4g})")


def _weight_scale(weights: Optional[Sequence[float]], dim: int) -> np.ndarray:
    w = np.ones(dim)
    if weights is not None:
        k = min(dim, len(weights))
        w[:k] = np.asarray(weights[:k], dtype=float)
    return np.sqrt(np.abs(w))


def weighted_log_det(cov: np.ndarray, weights: Optional[Sequence[float]]) -> float:
    cov = np.asarray(cov, dtype=float)
    if cov.size == 0 or not np.all(np.isfinite(cov)):
        return np.nan
    d = _weight_scale(weights, cov.shape[0])
    sign, logdet = np.linalg.slogdet(cov * d[:, None] * d[None, :])
    return float(logdet) if sign > 0 else np.nan


def generalized_variance(cov: np.ndarray, weights: Optional[Sequence[float]] = None) -> float:
    """det(D C D); 0.0 when singular or non-finite."""
    logdet = weighted_log_det(cov, weights)
    if not np.isfinite(logdet):
        return 0.0
    with np.errstate(over='ignore'):
        return finite_or_zero(np.exp(logdet))


def window_score(cov: np.ndarray, weights: Optional[Sequence[float]] = None) -> float:
    logdet = weighted_log_det(cov, weights)
    if not np.isfinite(logdet):
        return 0.0
    with np.errstate(over='ignore'):
        return finite_or_zero(np.exp(-logdet / cov.shape[0]))


def make_window(start: int, end: int, mean: np.ndarray, covariance: np.ndarray,
                weights: Optional[Sequence[float]] = None, rank: Optional[int] = None,
                num_measurements: Optional[int] = None) -> CalibrationWindow:
    mean = np.asarray(mean, dtype=float).reshape(-1).copy()
    covariance = np.asarray(covariance, dtype=float).reshape(mean.size, mean.size).copy()
    if rank is None:
        rank = covariance_rank(covariance)
    return CalibrationWindow(
        start=int(start),
        end=int(end),
        mean=mean,
        covariance=covariance,
        score=window_score(covariance, weights),
        rank=int(rank),
        generalized_variance=generalized_variance(covariance, weights),
        num_measurements=int(end - start) if num_measurements is None else int(num_measurements),
    )


def fuse_windows(windows: Sequence[CalibrationWindow],
                 weights: Optional[Sequence[float]] = None) -> Optional[CalibrationWindow]:
    """
    Information-weighted fusion: summed precisions, precision-weighted mean.
    """
    windows = [w for w in windows if w.is_applicable()]
    if not windows:
        return None
    dim = windows[0].dim
    info = np.zeros((dim, dim))
    info_mean = np.zeros(dim)
    for w in windows:
        P = np.linalg.inv(w.covariance)
        P = 0.5 * (P + P.T)
        info += P
        info_mean += P @ w.mean
    cov = np.linalg.inv(info)
    cov = 0.5 * (cov + cov.T)
    return make_window(
        start=min(w.start for w in windows),
        end=max(w.end for w in windows),
        mean=cov @ info_mean,
        covariance=cov,
        weights=weights,
        num_measurements=sum(w.num_measurements for w in windows),
    )


def yao_1965(mean1: np.ndarray, cov1: np.ndarray, n1: int,
             mean2: np.ndarray, cov2: np.ndarray, n2: int) -> float:
    """
    Yao (1965) test for equal means under unequal covariances.

    cov1/cov2 are covariances of the mean estimates, n1/n2 the sample sizes.
    Returns the p-value: small values mean the two distributions differ.
    NaN when the statistic is undefined.
    """
    m1 = np.asarray(mean1, dtype=float).reshape(-1)
    m2 = np.asarray(mean2, dtype=float).reshape(-1)
    p = m1.size
    d = m1 - m2
    try:
        V_inv = np.linalg.inv(np.asarray(cov1) + np.asarray(cov2))
    except np.linalg.LinAlgError:
        return np.nan
    t2 = float(d @ V_inv @ d)
    if not np.isfinite(t2) or t2 < 0:
        return np.nan
    if t2 == 0.0:
        return 1.0

    inv_f = 0.0
    for V_i, n_i in ((cov1, n1), (cov2, n2)):
        if n_i <= 1:
            return np.nan
        q = float(d @ V_inv @ np.asarray(V_i) @ V_inv @ d) / t2
        inv_f += q * q / (n_i - 1)
    if inv_f <= 0:
        return np.nan
    f = 1.0 / inv_f
    dof2 = f - p + 1.0
    if dof2 <= 0:
        return np.nan
    F = t2 * dof2 / (p * f)
    return float(stats.f.sf(F, p, dof2))


def window_divergence(reference: Optional[CalibrationWindow],
                      candidate: Optional[CalibrationWindow]) -> float:
    """
    Yao p-value between the aggregate and the newest candidate window.

    A candidate one rank short is compared on the leading (dim-1) block.
    Anything undefined maps to 0.0 (no detection).
    """
    if reference is None or candidate is None:
        return 0.0
    if reference.dim == 0 or reference.dim != candidate.dim:
        return 0.0
    m1, c1 = reference.mean, reference.covariance
    m2, c2 = candidate.mean, candidate.covariance
    if candidate.rank == candidate.dim - 1 and candidate.dim > 1:
        k = candidate.dim - 1
        m1, c1 = m1[:k], c1[:k, :k]
        m2, c2 = m2[:k], c2[:k, :k]
    elif candidate.rank < candidate.dim - 1:
        return 0.0
    return finite_or_zero(yao_1965(m1, c1, reference.num_measurements,
                                   m2, c2, candidate.num_measurements))
