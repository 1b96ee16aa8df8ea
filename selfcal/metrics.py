#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Metrics sinks injected into the pipeline, the BA invoker and the AAC loop."""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Dict


class MetricsSink:
    """No-op sink; subclasses record what they care about."""

    def record_timing(self, name: str, seconds: float) -> None:
        pass

    def increment(self, name: str, n: int = 1) -> None:
        pass

    @contextmanager
    def timed(self, name: str):
        t0 = time.time()
        try:
            yield
        finally:
            self.record_timing(name, time.time() - t0)


class TimingMetrics(MetricsSink):
    """Accumulates total seconds and call counts per timer, plus counters."""

    def __init__(self):
        self._lock = threading.Lock()
        self.times: Dict[str, float] = {}
        self.calls: Dict[str, int] = {}
        self.counters: Dict[str, int] = {}

    def record_timing(self, name: str, seconds: float) -> None:
        with self._lock:
            self.times[name] = self.times.get(name, 0.0) + float(seconds)
            self.calls[name] = self.calls.get(name, 0) + 1

    def increment(self, name: str, n: int = 1) -> None:
        with self._lock:
            self.counters[name] = self.counters.get(name, 0) + int(n)

    def average(self, name: str) -> float:
        with self._lock:
            calls = self.calls.get(name, 0)
            return self.times.get(name, 0.0) / calls if calls else 0.0

    def summary(self) -> Dict[str, float]:
        with self._lock:
            out = {f"{k}_time": v for k, v in self.times.items()}
            out.update({f"{k}_calls": float(v) for k, v in self.calls.items()})
            out.update({k: float(v) for k, v in self.counters.items()})
        return out
