#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Calibration change detection by consecutive low-divergence evaluations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .calibration_window import CalibrationWindow, window_divergence
from .numerical_checks import finite_or_zero


@dataclass
class ChangeDecision:
    divergence: float
    qualifying: bool
    counter: int
    change_detected: bool


class ChangeDetector:
    """
    Declares a change once more than ``num_change_needed`` evaluations in a
    row qualify. An evaluation qualifies when the queue is full, the sensor
    is not Unknown and 0 < divergence < threshold. Anything else resets the
    counter.
    """

    def __init__(self, threshold: float = 0.2, num_change_needed: int = 3):
        self.threshold = float(threshold)
        self.num_change_needed = max(1, int(num_change_needed))
        self.num_change_detected = 0

    def divergence(self, aggregate: Optional[CalibrationWindow],
                   candidate: Optional[CalibrationWindow]) -> float:
        return window_divergence(aggregate, candidate)

    def update(self, divergence: float, queue_full: bool, unknown: bool) -> ChangeDecision:
        div = finite_or_zero(divergence)
        qualifying = (div < self.threshold and div != 0.0 and queue_full and not unknown)
        change = False
        if qualifying:
            self.num_change_detected += 1
            if self.num_change_detected > self.num_change_needed:
                change = True
        else:
            self.num_change_detected = 0
        decision = ChangeDecision(div, qualifying, self.num_change_detected, change)
        if change:
            self.num_change_detected = 0
        return decision

    def reset(self) -> None:
        self.num_change_detected = 0
