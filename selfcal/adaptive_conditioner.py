#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Adaptive conditioning (AAC) of the active BA window.

After each BA on the active window, the error on the conditioning edge (the
residuals tying the first free pose to the fixed pose before it) is compared
with chi-squared critical values for the inertial and visual dimensions. The
window grows by a fixed increment while either ratio exceeds 1 and the total
conditioning error keeps dropping by more than a relative tolerance;
otherwise it snaps back to the baseline.

The background loop copies the live rig into the AAC scratch rig, runs BA
with the current size, and repeats until the size returns to baseline or
covers the whole graph, then idles before the next cycle.
"""

from __future__ import annotations

import sys
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from scipy.stats import chi2

from .ba_invoker import BundleAdjustmentInvoker, ConditioningStats
from .config import SelfCalConfig
from .sensors import IMU


@dataclass
class ConditioningDecision:
    window_size: int
    grew: bool
    inertial_ratio: float
    visual_ratio: float
    total_error: float
    reason: str = ""


class AdaptiveConditioner:
    """Window-size controller; ``step`` is pure given the previous error."""

    def __init__(self, baseline_size: int, growth_increment: int = 30,
                 confidence: float = 0.99, relative_tolerance: float = 1e-5,
                 inertial_dim: int = 15):
        self.baseline_size = max(1, int(baseline_size))
        self.growth_increment = max(1, int(growth_increment))
        self.confidence = float(confidence)
        self.relative_tolerance = float(relative_tolerance)
        self.inertial_dim = int(inertial_dim)
        self.window_size = self.baseline_size
        self.prev_cond_error: Optional[float] = None
        self._inertial_chi2 = float(chi2.ppf(self.confidence, self.inertial_dim))

    def reset_cycle(self) -> None:
        self.prev_cond_error = None

    def step(self, stats: ConditioningStats, total_poses: int) -> ConditioningDecision:
        total_poses = int(total_poses)
        if self.window_size > total_poses:
            self.window_size = self.baseline_size

        cond_dims = (stats.num_cond_inertial_residuals * self.inertial_dim
                     + stats.num_cond_proj_residuals * 2)
        cond_error = stats.total_error
        if cond_error == 0.0 or cond_dims == 0:
            return ConditioningDecision(self.window_size, False, 0.0, 0.0, cond_error,
                                        reason="no conditioning residuals")

        prev = sys.float_info.max if self.prev_cond_error is None else self.prev_cond_error
        v_chi2 = float(chi2.ppf(self.confidence, max(1, stats.num_cond_proj_residuals * 2)))
        i_ratio = stats.cond_inertial_error / self._inertial_chi2
        v_ratio = stats.cond_proj_error / v_chi2 if stats.num_cond_proj_residuals else 0.0

        decreasing = cond_error <= prev and (prev - cond_error) / prev > self.relative_tolerance
        grew = (i_ratio > 1.0 or v_ratio > 1.0) and decreasing
        if grew:
            self.window_size = self.window_size + self.growth_increment
            reason = "boundary under-constrained"
        else:
            self.window_size = self.baseline_size
            reason = "boundary consistent" if decreasing else "no improvement"
        self.window_size = max(self.baseline_size, min(self.window_size, max(total_poses, self.baseline_size)))
        self.prev_cond_error = cond_error
        return ConditioningDecision(self.window_size, grew, i_ratio, v_ratio, cond_error, reason)


class AacLoop:
    """Background thread driving the AdaptiveConditioner against the shared graph."""

    def __init__(self, context, config: SelfCalConfig,
                 conditioner: Optional[AdaptiveConditioner] = None):
        c = config.conditioner
        self.context = context
        self.config = config
        self.conditioner = conditioner or AdaptiveConditioner(
            config.solver.num_ba_poses, c.growth_increment, c.chi2_confidence,
            c.relative_tolerance, c.inertial_residual_dim)
        self.invoker = BundleAdjustmentInvoker(context, config, instance_id=1,
                                               timer_name="aac")
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self.last_decision: Optional[ConditioningDecision] = None
        self.stats: Dict[str, Any] = {"cycles": 0, "iterations": 0, "max_window": 0}

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._worker_loop, daemon=True, name="aac")
        self._thread.start()

    def stop(self) -> None:
        self._running = False
        t = self._thread
        if t is not None:
            t.join(timeout=5.0)
        self._thread = None

    def _should_run(self) -> bool:
        ctx = self.context
        imu = self.config.imu
        imu_known = IMU in ctx.machines and not ctx.calibration(IMU).unknown_calibration
        return bool(imu.has_imu and imu.use_imu and self.config.runtime.do_async_ba
                    and ctx.graph.num_poses > self.config.conditioner.min_poses and imu_known)

    def _worker_loop(self) -> None:
        c = self.config.conditioner
        while self._running:
            if self._should_run():
                self.run_cycle()
            time.sleep(c.idle_sleep_s)

    def run_cycle(self) -> int:
        """One outer AAC cycle; returns the number of BA iterations run."""
        c = self.config.conditioner
        cond = self.conditioner
        iterations = 0
        while self._running or self._thread is None:
            n = self.context.graph.num_poses
            if n <= self.config.solver.min_poses_for_imu:
                break
            self.context.snapshot_rig(self.context.aac_rig)
            result = self.invoker.run(self.context.aac_rig, cond.window_size, use_imu=True)
            iterations += 1
            if result is None:
                break
            decision = cond.step(result.conditioning, n)
            self.last_decision = decision
            self.stats["max_window"] = max(self.stats["max_window"], decision.window_size)
            if self.config.runtime.debug:
                print(f"[AAC] window={decision.window_size} grew={decision.grew} "
                      f"i_ratio={decision.inertial_ratio:.3f} v_ratio={decision.visual_ratio:.3f} "
                      f"err={decision.total_error:.4e}")
            if (decision.window_size == cond.baseline_size or decision.window_size >= n
                    or not c.do_adaptive):
                break
            time.sleep(c.inner_sleep_s)
        cond.reset_cycle()
        self.stats["cycles"] += 1
        self.stats["iterations"] += iterations
        return iterations
