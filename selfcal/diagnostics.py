#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Diagnostic CSV Output Module

Append-only records of calibration windows and timings, one line per event.
These files are a side channel for offline analysis; nothing reads them back.

Author: VIO project
"""

from __future__ import annotations

import os
from typing import Dict, Optional

import numpy as np

from .calibration_window import CalibrationWindow


_WINDOW_FILES = {
    ("camera", "pq"): "cam_pq.csv",
    ("camera", "batch"): "cam_batch.csv",
    ("camera", "candidate"): "cam_candidate.csv",
    ("imu", "pq"): "imu_pq.csv",
    ("imu", "batch"): "imu_batch.csv",
    ("imu", "candidate"): "imu_candidate.csv",
}


class DiagnosticsWriter:
    """
    Manages the self-calibration diagnostic CSV files.

    Creates and manages:
    - per-sensor priority-queue aggregate log
    - per-sensor batch estimate log
    - per-sensor candidate window log
    - per-keyframe timing log
    """

    def __init__(self, output_dir: Optional[str]):
        self.output_dir = output_dir
        self.enabled = output_dir is not None
        self.paths: Dict[str, str] = {}
        if self.enabled:
            self._init_files()

    def _init_files(self):
        os.makedirs(self.output_dir, exist_ok=True)
        for fname in _WINDOW_FILES.values():
            path = os.path.join(self.output_dir, fname)
            with open(path, "w", newline="") as f:
                f.write("keyframe,start,end,rank,score,generalized_variance,divergence,mean,cov_diag\n")
            self.paths[fname] = path
        path = os.path.join(self.output_dir, "timings.csv")
        with open(path, "w", newline="") as f:
            f.write("keyframe,batch_s,ba_s,analyze_s,queue_s,num_ba_poses\n")
        self.paths["timings.csv"] = path

    def _append(self, fname: str, line: str) -> None:
        try:
            with open(self.paths[fname], "a", newline="") as f:
                f.write(line)
        except OSError as exc:
            print(f"[DIAG] write to {fname} failed: {exc}")

    def log_window(self, sensor: str, kind: str, keyframe: int,
                   window: Optional[CalibrationWindow], divergence: float = 0.0) -> None:
        if not self.enabled or window is None or window.dim == 0:
            return
        mean = " ".join(f"{v:.9g}" for v in window.mean)
        diag = " ".join(f"{v:.6e}" for v in np.diag(window.covariance))
        self._append(_WINDOW_FILES[(sensor, kind)],
                     f"{keyframe},{window.start},{window.end},{window.rank},"
                     f"{window.score:.6e},{window.generalized_variance:.6e},{divergence:.6f},"
                     f"{mean},{diag}\n")

    def log_timings(self, keyframe: int, timings: Dict[str, float], num_ba_poses: int) -> None:
        if not self.enabled:
            return
        self._append("timings.csv",
                     f"{keyframe},{timings.get('batch', 0.0):.6f},{timings.get('ba', 0.0):.6f},"
                     f"{timings.get('analyze', 0.0):.6f},{timings.get('queue', 0.0):.6f},"
                     f"{num_ba_poses}\n")
