import numpy as np
import pytest

from synthetic import build_graph, make_rig

from selfcal.config import SelfCalConfig
from selfcal.context import SelfCalContext
from selfcal.math_utils import exp_decoupled, make_transform, so3_exp, so3_log
from selfcal.sensors import (ExtrinsicInitializer, ImuExtrinsicSensor, InitStage,
                             set_rig_extrinsic)


def _hand_eye_constraints(R_bc, count=25, seed=3):
    rng = np.random.default_rng(seed)
    pairs = []
    for _ in range(count):
        R_c = so3_exp(rng.normal(scale=0.2, size=3))
        pairs.append((R_bc @ R_c @ R_bc.T, R_c))
    return pairs


def test_rotation_solve_recovers_hand_eye_rotation():
    R_bc = so3_exp(np.array([0.1, -0.25, 0.3]))
    init = ExtrinsicInitializer(min_constraints=20, translation_prior=np.zeros(3))
    for R_i, R_c in _hand_eye_constraints(R_bc):
        init.add_constraint(R_i, R_c)
    R_est = init.solve_rotation()
    assert np.linalg.norm(so3_log(R_est.T @ R_bc)) < 1e-5


def test_set_rig_extrinsic_keeps_camera_trajectory():
    ctx = SelfCalContext(make_rig(t_bc=exp_decoupled(np.array([0.05, 0.0, 0.02, 0.0, 0.1, 0.0]))))
    ctx.graph = build_graph(num_poses=5, t_bc=ctx.live_rig.t_bc)
    cams_before = [p.t_wb @ ctx.live_rig.t_bc for p in ctx.graph.poses]

    new_t_bc = make_transform(so3_exp(np.array([0.0, 0.0, 0.3])), np.array([0.1, 0.2, 0.0]))
    set_rig_extrinsic(ctx, new_t_bc)

    assert np.allclose(ctx.live_rig.t_bc, new_t_bc)
    assert np.allclose(ctx.selfcal_rig.t_bc, new_t_bc)
    for before, pose in zip(cams_before, ctx.graph.poses):
        assert np.allclose(pose.t_wb @ new_t_bc, before, atol=1e-12)


def test_translation_seed_follows_rotation_stage():
    cfg = SelfCalConfig.from_dict({
        "batch": {"min_poses_for_imu_rotation_init": 2},
        "imu_calibration": {"t_bc": [0.1, -0.2, 0.05, 0.0, 0.0, 0.0]},
    })
    ctx = SelfCalContext(make_rig())
    ctx.graph = build_graph(num_poses=6)
    sensor = ImuExtrinsicSensor(cfg.imu_calibration, cfg)
    assert sensor.batch_ready(ctx)

    sensor.seed_unknown(ctx, 0)
    assert not sensor.batch_ready(ctx)
    assert np.allclose(ctx.live_rig.t_bc, np.eye(4))

    R_bc = so3_exp(np.array([0.05, 0.0, 0.0]))
    for R_i, R_c in _hand_eye_constraints(R_bc, count=2):
        sensor.initializer.add_constraint(R_i, R_c)
    assert sensor.initializer.step(ctx, 2) is InitStage.TRANSLATION
    assert sensor.initializer.step(ctx, 6) is InitStage.DONE
    assert ctx.live_rig.t_bc[:3, 3] == pytest.approx([0.105, -0.186, 0.053])
    assert sensor.batch_ready(ctx)


def test_rotation_and_translation_seed_in_one_step_with_enough_poses():
    cfg = SelfCalConfig.from_dict({
        "batch": {"min_poses_for_imu_rotation_init": 2},
        "imu_calibration": {"t_bc": [0.1, -0.2, 0.05, 0.0, 0.0, 0.0]},
    })
    ctx = SelfCalContext(make_rig())
    ctx.graph = build_graph(num_poses=6)
    sensor = ImuExtrinsicSensor(cfg.imu_calibration, cfg)
    sensor.seed_unknown(ctx, 0)

    R_bc = so3_exp(np.array([0.0, 0.05, 0.0]))
    for R_i, R_c in _hand_eye_constraints(R_bc, count=2):
        sensor.initializer.add_constraint(R_i, R_c)
    assert sensor.initializer.step(ctx, 6) is InitStage.DONE
    assert np.linalg.norm(so3_log(ctx.live_rig.t_bc[:3, :3].T @ R_bc)) < 1e-5
    assert ctx.live_rig.t_bc[:3, 3] == pytest.approx([0.105, -0.186, 0.053])
