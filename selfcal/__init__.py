"""
SelfCal Package

Online camera/IMU self-calibration running beside a sliding-window bundle
adjustment: per-sensor calibration windows, priority-queue fusion, change
detection, and an adaptive BA window controller.

Version: 0.3.0

Submodules:
- config: YAML loading and DEFAULTS
- math_utils: SO(3)/SE(3) helpers
- camera: FOV camera model and the calibration rig
- imu_preintegration: IMU buffer and on-manifold preintegration
- pose_graph: append-only keyframe poses and tracks
- bundle_adjuster: scipy least-squares BA problem
- calibration_window: window scoring, fusion and divergence
- window_estimator: calibration window estimation over a pose range
- priority_queue: per-sensor window store and async fusion worker
- change_detector: consecutive-detection change logic
- state_machine: Unknown / BatchConverging / OnlineActive lifecycle
- sensors: camera-intrinsics and IMU-extrinsic behaviour
- ba_invoker: tracking BA over the shared graph
- adaptive_conditioner: AAC window sizing loop
- pipeline: graph-owner that ties everything together
- metrics, diagnostics: timing counters and CSV side channel

Author: VIO project

Usage:
    from selfcal.config import load_config
    from selfcal.pipeline import SelfCalPipeline, KeyframeInput

    pipeline = SelfCalPipeline(load_config("configs/selfcal_default.yaml"))
    pipeline.start()
    ...
    pipeline.stop()
"""

__version__ = "0.3.0"

# Lazy module imports - access as selfcal.config, selfcal.pipeline, etc.
import importlib

_SUBMODULES = {
    "config", "errors", "math_utils", "numerical_checks", "camera",
    "imu_preintegration", "pose_graph", "bundle_adjuster", "calibration_window",
    "window_estimator", "priority_queue", "change_detector", "state_machine",
    "sensors", "context", "ba_invoker", "adaptive_conditioner", "pipeline",
    "metrics", "diagnostics",
}


def __getattr__(name):
    """Lazy module loading to avoid importing scipy until needed."""
    if name in _SUBMODULES:
        module = importlib.import_module(f".{name}", __name__)
        globals()[name] = module
        return module
    raise AttributeError(f"module 'selfcal' has no attribute '{name}'")


def __dir__():
    return list(_SUBMODULES)
