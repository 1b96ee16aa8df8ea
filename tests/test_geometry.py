import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from selfcal.camera import FovCamera, Rig, fov_project, fov_unproject
from selfcal.imu_preintegration import ImuBuffer, ImuMeasurement, integrate_rotation
from selfcal.math_utils import (exp_decoupled, gravity_aligned_rotation, log_decoupled,
                                make_transform, so3_exp, so3_log)


PARAMS = np.array([300.0, 300.0, 320.0, 240.0, 0.9])


def test_fov_unproject_inverts_project():
    pts = np.array([[0.3, -0.2, 2.0], [-1.0, 0.5, 4.0], [0.0, 0.0, 1.0]])
    uv = fov_project(PARAMS, pts)
    rays = fov_unproject(PARAMS, uv)
    assert np.allclose(rays[:, :2], pts[:, :2] / pts[:, 2:3], atol=1e-9)


def test_fov_project_behind_camera_is_nan():
    uv = fov_project(PARAMS, np.array([[0.1, 0.1, -1.0]]))
    assert np.all(np.isnan(uv))


def test_pinhole_params_skip_distortion():
    uv = fov_project(PARAMS[:4], np.array([[1.0, 0.5, 2.0]]))
    assert np.allclose(uv, [[320.0 + 150.0, 240.0 + 75.0]])


def test_wide_fov_seed_and_rig_copy_are_independent():
    seed = FovCamera.wide_fov_seed(640, 480, 90.0, 1.0)
    assert seed.params[0] == pytest.approx(240.0)
    assert seed.params[4] == pytest.approx(1.0)

    rig = Rig(FovCamera(PARAMS, 640, 480), exp_decoupled(np.array([0.1, 0, 0, 0, 0, 0.2])))
    scratch = rig.copy()
    scratch.camera.params[0] = 1.0
    scratch.t_bc[0, 3] = 5.0
    assert rig.intrinsics[0] == pytest.approx(300.0)
    assert rig.t_bc[0, 3] == pytest.approx(0.1)


def test_decoupled_log_exp():
    x = np.array([0.1, -0.2, 0.05, 0.01, 0.3, -0.1])
    assert np.allclose(log_decoupled(exp_decoupled(x)), x)


def test_gravity_alignment_maps_specific_force_up():
    R_true = so3_exp(np.array([0.2, -0.1, 0.0]))
    accel_b = R_true.T @ np.array([0.0, 0.0, 9.81])
    R = gravity_aligned_rotation(accel_b)
    assert np.allclose(R @ accel_b, [0.0, 0.0, 9.81], atol=1e-9)


def test_imu_buffer_range_interpolates_and_drops_out_of_order(capsys):
    buf = ImuBuffer()
    for k in range(11):
        buf.add(ImuMeasurement(0.1 * k, np.array([0.0, 0.0, float(k)]), np.zeros(3)))
    buf.add(ImuMeasurement(0.5, np.ones(3), np.ones(3)))
    assert "Out-of-order" in capsys.readouterr().out
    assert len(buf) == 11

    meas = buf.get_range(0.15, 0.45)
    assert meas[0].t == pytest.approx(0.15)
    assert meas[-1].t == pytest.approx(0.45)
    assert meas[0].w[2] == pytest.approx(1.5)
    assert buf.get_range(0.5, 2.0) == []


def test_integrate_rotation_constant_rate():
    meas = [ImuMeasurement(0.01 * k, np.array([0.0, 0.0, 0.5]), np.zeros(3)) for k in range(101)]
    R = integrate_rotation(meas, np.zeros(3))
    assert np.allclose(so3_log(R), [0.0, 0.0, 0.5], atol=1e-9)

    biased = integrate_rotation(meas, np.array([0.0, 0.0, 0.5]))
    assert np.allclose(biased, np.eye(3), atol=1e-9)


def test_make_transform_layout():
    T = make_transform(np.eye(3), np.array([1.0, 2.0, 3.0]))
    assert T.shape == (4, 4)
    assert np.allclose(T[:3, 3], [1.0, 2.0, 3.0])
    assert T[3, 3] == 1.0
