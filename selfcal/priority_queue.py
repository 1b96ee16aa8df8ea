#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Bounded per-sensor store of the best non-overlapping calibration windows.

The aggregate estimate is the information-weighted fusion of all members. It
is only recomputed when membership changed (``needs_update``).

Async mode runs the fusion on a worker thread fed through a work channel;
results come back on a result channel and are applied by the graph owner.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from .calibration_window import CalibrationWindow, fuse_windows


class WindowPriorityQueue:
    """Up to ``capacity`` non-overlapping windows, replaced only by a margin."""

    def __init__(self, capacity: int, margin: float,
                 weights: Optional[Sequence[float]] = None, name: str = "pq",
                 verbose: bool = False):
        self.capacity = max(1, int(capacity))
        self.margin = max(0.0, float(margin))
        self.weights = list(weights) if weights is not None else None
        self.name = name
        self.verbose = verbose
        self.windows: List[CalibrationWindow] = []
        self.needs_update = False
        self.aggregate: Optional[CalibrationWindow] = None

    def __len__(self) -> int:
        return len(self.windows)

    @property
    def is_full(self) -> bool:
        return len(self.windows) >= self.capacity

    def _beats(self, candidate: CalibrationWindow, incumbent_score: float) -> bool:
        return candidate.score > incumbent_score * (1.0 + self.margin)

    def offer(self, candidate: CalibrationWindow) -> bool:
        """
        Try to admit ``candidate``. Returns True on a membership change.

        Overlapping incumbents are displaced only if the candidate beats the
        best of them by the margin. Otherwise, a full queue displaces its
        weakest member under the same margin rule.
        """
        if candidate is None or not candidate.is_applicable():
            if self.verbose:
                print(f"[PQ] {self.name}: rejected non-applicable {candidate!r}")
            return False

        overlapping = [w for w in self.windows if w.overlaps(candidate)]
        if overlapping:
            best = max(w.score for w in overlapping)
            if not self._beats(candidate, best):
                return False
            self.windows = [w for w in self.windows if not w.overlaps(candidate)]
            self.windows.append(candidate)
        elif not self.is_full:
            self.windows.append(candidate)
        else:
            weakest = min(range(len(self.windows)), key=lambda i: self.windows[i].score)
            if not self._beats(candidate, self.windows[weakest].score):
                return False
            self.windows[weakest] = candidate

        self.windows.sort(key=lambda w: w.start)
        self.needs_update = True
        if self.verbose:
            print(f"[PQ] {self.name}: accepted {candidate!r}, size={len(self.windows)}/{self.capacity}")
        return True

    def clear(self) -> None:
        self.windows = []
        self.aggregate = None
        self.needs_update = False

    def analyze(self) -> Optional[CalibrationWindow]:
        """Fuse members; clears ``needs_update``."""
        self.needs_update = False
        return fuse_windows(self.windows, self.weights)

    def set_distribution(self, aggregate: Optional[CalibrationWindow]) -> None:
        self.aggregate = aggregate

    def snapshot(self) -> List[CalibrationWindow]:
        return list(self.windows)

    def aggregate_score(self) -> float:
        fused = fuse_windows(self.windows, self.weights)
        return 0.0 if fused is None else float(fused.score)


@dataclass
class AnalysisRequest:
    sensor: str
    epoch: int
    windows: List[CalibrationWindow]
    weights: Optional[List[float]]


@dataclass
class AnalysisResult:
    sensor: str
    epoch: int
    aggregate: Optional[CalibrationWindow]
    elapsed_s: float


class PriorityQueueWorker:
    """Background fusion of one sensor's queue.

    ``submit`` is a no-op while a request is in flight, so the graph owner
    cannot pile up redundant work for the same sensor.
    """

    def __init__(self, sensor: str):
        self.sensor = sensor
        self._requests: "queue.Queue[Optional[AnalysisRequest]]" = queue.Queue()
        self._results: "queue.Queue[AnalysisResult]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._busy = threading.Event()
        self.stats = {"requests": 0, "results": 0, "errors": 0, "skipped_busy": 0}

    @property
    def running(self) -> bool:
        return self._busy.is_set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._worker_loop, daemon=True,
                                        name=f"pq-{self.sensor}")
        self._thread.start()

    def stop(self) -> None:
        t = self._thread
        if t is not None:
            self._requests.put(None)
            t.join(timeout=1.5)
        self._thread = None

    def submit(self, windows: List[CalibrationWindow], epoch: int,
               weights: Optional[Sequence[float]] = None) -> bool:
        if self._busy.is_set():
            self.stats["skipped_busy"] += 1
            return False
        self._busy.set()
        self.stats["requests"] += 1
        self._requests.put(AnalysisRequest(self.sensor, int(epoch), list(windows),
                                           list(weights) if weights is not None else None))
        return True

    def poll(self) -> List[AnalysisResult]:
        out = []
        while True:
            try:
                out.append(self._results.get_nowait())
            except queue.Empty:
                return out

    def _worker_loop(self) -> None:
        while True:
            req = self._requests.get()
            if req is None:
                return
            t0 = time.time()
            result = None
            try:
                try:
                    aggregate = fuse_windows(req.windows, req.weights)
                except np.linalg.LinAlgError as exc:
                    print(f"[PQ] {self.sensor}: async fusion failed: {exc}")
                    aggregate = None
                result = AnalysisResult(req.sensor, req.epoch, aggregate, time.time() - t0)
                self.stats["results"] += 1
            except Exception as e:
                self.stats["errors"] += 1
                print(f"[PQ] {self.sensor}: async worker error (epoch {req.epoch}): "
                      f"{type(e).__name__}: {e}")
            finally:
                self._busy.clear()
            if result is not None:
                self._results.put(result)
