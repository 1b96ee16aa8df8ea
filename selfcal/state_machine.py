#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Per-sensor calibration lifecycle.

    Unknown -> BatchConverging -> OnlineActive -> (change detected) -> Unknown

Unknown is transient: entering it seeds the sensor's parameters with a
known-bad guess and immediately moves on to BatchConverging.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np

from .calibration_window import CalibrationWindow
from .change_detector import ChangeDetector
from .errors import IllegalTransitionError
from .priority_queue import WindowPriorityQueue


class CalibrationState(Enum):
    UNKNOWN = "Unknown"
    BATCH_CONVERGING = "BatchConverging"
    ONLINE_ACTIVE = "OnlineActive"


_LEGAL_TRANSITIONS = {
    CalibrationState.UNKNOWN: {CalibrationState.BATCH_CONVERGING},
    CalibrationState.BATCH_CONVERGING: {CalibrationState.ONLINE_ACTIVE},
    CalibrationState.ONLINE_ACTIVE: {CalibrationState.UNKNOWN},
}


@dataclass
class Calibration:
    """Bookkeeping for one sensor; guarded by the calibration lock."""

    sensor: str
    queue: WindowPriorityQueue
    detector: ChangeDetector
    segment_length: int
    do_self_cal: bool = True
    state: CalibrationState = CalibrationState.ONLINE_ACTIVE
    unknown_start_pose: int = 0
    pq_window: Optional[CalibrationWindow] = None
    candidate_window: Optional[CalibrationWindow] = None
    current_window: Optional[CalibrationWindow] = None
    batch_window: Optional[CalibrationWindow] = None
    epoch: int = 0
    last_divergence: float = 0.0
    last_added_divergence: float = 0.0
    history: list = field(default_factory=list)

    @property
    def unknown_calibration(self) -> bool:
        return self.state is not CalibrationState.ONLINE_ACTIVE

    @property
    def num_change_detected(self) -> int:
        return self.detector.num_change_detected


class CalibrationStateMachine:
    """Owns the transitions of one Calibration and the sensor behind it."""

    def __init__(self, calibration: Calibration, sensor, verbose: bool = True):
        self.calibration = calibration
        self.sensor = sensor
        self.verbose = verbose

    @property
    def state(self) -> CalibrationState:
        return self.calibration.state

    def _transition(self, new_state: CalibrationState) -> None:
        cal = self.calibration
        if new_state not in _LEGAL_TRANSITIONS[cal.state]:
            raise IllegalTransitionError(
                f"{cal.sensor}: {cal.state.value} -> {new_state.value} is not a legal transition")
        if self.verbose:
            print(f"[SELFCAL] {cal.sensor}: {cal.state.value} -> {new_state.value}")
        cal.history.append((cal.state, new_state))
        cal.state = new_state
        cal.epoch += 1

    def enter_unknown(self, context, rollback_pose: int) -> None:
        """
        Mark the calibration unknown from ``rollback_pose`` onward, seed the
        sensor with its bad prior, drop the queue and start batch mode.
        Caller holds the context locks.
        """
        cal = self.calibration
        if cal.state is CalibrationState.ONLINE_ACTIVE:
            self._transition(CalibrationState.UNKNOWN)
        elif cal.state is not CalibrationState.UNKNOWN:
            raise IllegalTransitionError(
                f"{cal.sensor}: cannot enter Unknown from {cal.state.value}")
        cal.unknown_start_pose = max(0, int(rollback_pose))
        cal.queue.clear()
        cal.detector.reset()
        cal.pq_window = None
        cal.candidate_window = None
        cal.current_window = None
        cal.batch_window = None
        self.sensor.seed_unknown(context, cal.unknown_start_pose)
        self._transition(CalibrationState.BATCH_CONVERGING)

    def batch_finished(self, window: Optional[CalibrationWindow], num_poses: int,
                       score_threshold: float) -> bool:
        """
        Batch convergence test: generalized variance below threshold, non-zero
        and finite, or the segment has grown past twice the segment length.
        """
        cal = self.calibration
        if cal.state is not CalibrationState.BATCH_CONVERGING:
            return False
        segment = num_poses - cal.unknown_start_pose
        gv = window.generalized_variance if window is not None else 0.0
        converged = bool(np.isfinite(gv) and gv != 0.0 and gv < score_threshold)
        return converged or segment > 2 * cal.segment_length

    def go_online(self) -> None:
        self._transition(CalibrationState.ONLINE_ACTIVE)
