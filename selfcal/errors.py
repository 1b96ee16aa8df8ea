#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Exception types raised by the self-calibration pipeline."""


class SelfCalError(RuntimeError):
    """Base class for self-calibration failures."""


class NonMonotonicTimestampError(SelfCalError):
    """A keyframe timestamp did not strictly increase.

    The upstream data source is inconsistent; there is no recovery.
    """

    def __init__(self, previous: float, current: float):
        self.previous = float(previous)
        self.current = float(current)
        super().__init__(
            f"keyframe timestamp {self.current:.9f} is not greater than previous {self.previous:.9f}"
        )


class IllegalTransitionError(SelfCalError):
    """Calibration state machine was asked to take an edge it does not have."""


class RankDeficientWindowError(SelfCalError):
    """A window with rank < dimension reached an apply path."""
