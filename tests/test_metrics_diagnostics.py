import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from selfcal.calibration_window import make_window
from selfcal.diagnostics import DiagnosticsWriter
from selfcal.metrics import MetricsSink, TimingMetrics


def test_timing_metrics_accumulate():
    m = TimingMetrics()
    m.record_timing("ba", 0.2)
    m.record_timing("ba", 0.4)
    m.increment("change_detections")
    with m.timed("aac"):
        pass
    assert m.average("ba") == pytest.approx(0.3)
    assert m.average("missing") == 0.0
    s = m.summary()
    assert s["ba_calls"] == 2.0
    assert s["change_detections"] == 1.0
    assert "aac_time" in s


def test_null_sink_accepts_everything():
    sink = MetricsSink()
    sink.record_timing("x", 1.0)
    sink.increment("y")
    with sink.timed("z"):
        pass


def test_diagnostics_disabled_writes_nothing(tmp_path):
    writer = DiagnosticsWriter(None)
    writer.log_window("camera", "pq", 3, make_window(0, 5, np.ones(5), np.eye(5)))
    writer.log_timings(3, {"ba": 0.1}, 10)
    assert list(tmp_path.iterdir()) == []


def test_diagnostics_rows(tmp_path):
    writer = DiagnosticsWriter(str(tmp_path))
    window = make_window(2, 7, np.arange(6, dtype=float), 0.5 * np.eye(6))
    writer.log_window("imu", "batch", 7, window, divergence=0.05)
    writer.log_window("imu", "batch", 8, None)
    writer.log_timings(7, {"batch": 0.01, "ba": 0.02}, 12)

    rows = (tmp_path / "imu_batch.csv").read_text().strip().splitlines()
    assert len(rows) == 2
    fields = rows[1].split(",")
    assert fields[:4] == ["7", "2", "7", "6"]
    assert float(fields[6]) == pytest.approx(0.05)

    timing = (tmp_path / "timings.csv").read_text().strip().splitlines()
    assert timing[1].endswith(",12")
