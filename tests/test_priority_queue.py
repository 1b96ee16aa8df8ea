import sys
import time
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from selfcal.calibration_window import make_window
from selfcal.priority_queue import PriorityQueueWorker, WindowPriorityQueue


def _win(start: int, score: float, length: int = 5, dim: int = 5):
    # cov = I / score gives window_score == score with unit weights
    return make_window(start, start + length, np.full(dim, float(start)), np.eye(dim) / score)


def _full_queue(margin: float = 0.05):
    pq = WindowPriorityQueue(capacity=3, margin=margin)
    for start, score in ((0, 1.0), (5, 2.0), (10, 3.0)):
        assert pq.offer(_win(start, score))
    assert pq.is_full
    return pq


def test_camera_margin_rejects_four_percent_accepts_six():
    pq = _full_queue(margin=0.05)
    assert not pq.offer(_win(15, 1.04))
    assert [w.start for w in pq.windows] == [0, 5, 10]

    assert pq.offer(_win(15, 1.06))
    assert [w.start for w in pq.windows] == [5, 10, 15]


def test_imu_margin_is_wider():
    pq = _full_queue(margin=0.20)
    assert not pq.offer(_win(15, 1.15))
    assert pq.offer(_win(15, 1.25))


def test_overlap_must_beat_best_overlapping_incumbent():
    pq = _full_queue()
    # overlaps [0,5) and [5,10): best overlapping score is 2.0
    assert not pq.offer(_win(3, 2.05))
    assert pq.offer(_win(3, 2.2))
    starts = [w.start for w in pq.windows]
    assert starts == [3, 10]
    assert all(not a.overlaps(b) for i, a in enumerate(pq.windows) for b in pq.windows[i + 1:])


def test_rank_deficient_candidate_never_admitted():
    pq = WindowPriorityQueue(capacity=3, margin=0.05)
    bad = make_window(0, 5, np.zeros(4), np.diag([1.0, 1.0, 1.0, 0.0]))
    assert not pq.offer(bad)
    assert len(pq) == 0
    assert not pq.needs_update


def test_repeated_candidate_never_lowers_aggregate_score():
    pq = _full_queue()
    cand = _win(15, 5.0)
    scores = []
    for _ in range(5):
        pq.offer(cand)
        scores.append(pq.aggregate_score())
    assert all(b >= a for a, b in zip(scores, scores[1:]))
    assert len(pq) == 3


def test_needs_update_gates_fusion():
    pq = WindowPriorityQueue(capacity=2, margin=0.05)
    assert not pq.needs_update
    pq.offer(_win(0, 1.0))
    assert pq.needs_update
    agg = pq.analyze()
    assert not pq.needs_update
    assert np.allclose(agg.mean, 0.0)
    assert not pq.offer(_win(0, 1.0))
    assert not pq.needs_update


def test_worker_fuses_off_thread_and_reports_busy():
    worker = PriorityQueueWorker("camera")
    worker.start()
    try:
        windows = [_win(0, 1.0), _win(5, 1.0)]
        assert worker.submit(windows, epoch=7)
        deadline = time.time() + 2.0
        results = []
        while time.time() < deadline and not results:
            results = worker.poll()
            time.sleep(0.005)
        assert len(results) == 1
        assert results[0].epoch == 7
        assert np.allclose(results[0].aggregate.mean, 2.5)
        assert not worker.running
    finally:
        worker.stop()


def test_worker_skips_submit_while_busy():
    worker = PriorityQueueWorker("imu")
    # not started: the first request stays in flight
    assert worker.submit([_win(0, 1.0)], epoch=0)
    assert not worker.submit([_win(0, 1.0)], epoch=0)
    assert worker.stats["skipped_busy"] == 1


def test_worker_recovers_after_fusion_error(monkeypatch):
    import selfcal.priority_queue as pq_module

    calls = {"n": 0}
    real_fuse = pq_module.fuse_windows

    def flaky_fuse(windows, weights=None):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("boom")
        return real_fuse(windows, weights)

    monkeypatch.setattr(pq_module, "fuse_windows", flaky_fuse)
    worker = PriorityQueueWorker("camera")
    worker.start()
    try:
        assert worker.submit([_win(0, 1.0)], epoch=1)
        deadline = time.time() + 2.0
        while time.time() < deadline and (worker.stats["errors"] == 0 or worker.running):
            time.sleep(0.005)
        assert worker.stats["errors"] == 1
        assert worker.poll() == []
        assert not worker.running

        assert worker.submit([_win(0, 1.0), _win(5, 1.0)], epoch=2)
        deadline = time.time() + 2.0
        results = []
        while time.time() < deadline and not results:
            results = worker.poll()
            time.sleep(0.005)
        assert len(results) == 1
        assert results[0].epoch == 2
    finally:
        worker.stop()
