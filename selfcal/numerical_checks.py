#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Numerical Validation and Tripwire Module
=========================================

Catches NaN/inf at the point where windows, covariances and divergence values
are produced, and measures the numerical rank of information matrices.
"""

import numpy as np


def assert_finite(name, M, t=None, extra_info=None, raise_on_fail=False):
    """
    Tripwire: Check matrix/vector for inf/nan and dump diagnostics if found.

    Parameters:
    -----------
    name : str
        Descriptive name of the quantity being checked
    M : np.ndarray
        Matrix or vector to validate
    t : float, optional
        Timestamp (for logging context)
    extra_info : dict, optional
        Additional diagnostic information to dump
    raise_on_fail : bool
        If True, raises ValueError on failure. If False, only prints warning.

    Returns:
    --------
    bool : True if finite, False if inf/nan detected
    """
    if M is None:
        print(f"[TRIPWIRE] {name}: is None!")
        return False

    M = np.asarray(M, dtype=float)
    if np.all(np.isfinite(M)):
        return True

    where = f" at t={t:.6f}" if t is not None else ""
    print(f"[TRIPWIRE] NaN/inf detected in {name}{where}: shape={M.shape} "
          f"nan={int(np.count_nonzero(np.isnan(M)))} inf={int(np.count_nonzero(np.isinf(M)))}")
    if M.size <= 36:
        print(f"  {name} =\n{M}")
    if extra_info:
        for key, val in extra_info.items():
            print(f"  {key}: {val}")

    if raise_on_fail:
        raise ValueError(f"Numerical failure in {name}")
    return False


def finite_or_zero(value) -> float:
    """NaN/inf become 0.0 (a neutral 'no information' value)."""
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.0
    return v if np.isfinite(v) else 0.0


def covariance_rank(A, rel_tol=1e-10):
    """
    Numerical rank of a symmetric information/covariance matrix.

    The matrix is first scaled to unit diagonal so parameters with very
    different units (focal length vs distortion) are compared fairly. A zero
    diagonal entry counts as an unobservable direction.
    """
    A = np.asarray(A, dtype=float)
    if A.size == 0 or not np.all(np.isfinite(A)):
        return 0
    d = np.abs(np.diag(A))
    scale = np.where(d > 0, 1.0 / np.sqrt(np.where(d > 0, d, 1.0)), 0.0)
    An = A * scale[:, None] * scale[None, :]
    eig = np.linalg.eigvalsh(0.5 * (An + An.T))
    if eig.size == 0 or eig.max() <= 0:
        return 0
    return int(np.count_nonzero(eig > rel_tol * eig.max()))
