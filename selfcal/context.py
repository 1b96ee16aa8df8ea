#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Shared self-calibration context.

One object owns the pose graph, the IMU buffer, the three rig copies and the
per-sensor calibration state, and carries the two locks that serialize access
to them:

- graph lock: poses, tracks, rigs and any BA over them
- calibration lock: states, queues and windows

``locked()`` always takes them in that order, so any extract-solve-readback
sequence is atomic with respect to the other threads. Both are re-entrant so
helpers may re-acquire them while the caller already holds them.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Optional

from .camera import Rig
from .imu_preintegration import ImuBuffer
from .metrics import MetricsSink
from .pose_graph import PoseGraphStore
from .state_machine import Calibration, CalibrationStateMachine


class SelfCalContext:
    def __init__(self, live_rig: Rig, imu_buffer: Optional[ImuBuffer] = None,
                 metrics: Optional[MetricsSink] = None):
        self.graph = PoseGraphStore()
        self.imu_buffer = imu_buffer if imu_buffer is not None else ImuBuffer()
        self.live_rig = live_rig
        self.selfcal_rig = live_rig.copy()
        self.aac_rig = live_rig.copy()
        self.metrics = metrics if metrics is not None else MetricsSink()
        self.machines: Dict[str, CalibrationStateMachine] = {}
        self.graph_lock = threading.RLock()
        self.calibration_lock = threading.RLock()
        self.reset_outliers = False

    @contextmanager
    def locked(self):
        with self.graph_lock:
            with self.calibration_lock:
                yield self

    def register(self, machine: CalibrationStateMachine) -> None:
        self.machines[machine.calibration.sensor] = machine

    def calibration(self, sensor: str) -> Calibration:
        return self.machines[sensor].calibration

    def self_cal_active(self, sensor: str) -> bool:
        return sensor in self.machines and self.machines[sensor].sensor.is_active(self)

    def snapshot_rig(self, target: Rig) -> None:
        """Copy the live rig into a scratch rig under the graph lock."""
        with self.graph_lock:
            target.copy_from(self.live_rig)
