import math

import numpy as np
import pytest

from posekit.epnp import EPnP, EPnPError, mat_to_quat, qr_solve, relative_error


def _rotation(axis, angle):
    axis = np.asarray(axis, dtype=float)
    axis = axis / np.linalg.norm(axis)
    k = np.array([
        [0, -axis[2], axis[1]],
        [axis[2], 0, -axis[0]],
        [-axis[1], axis[0], 0],
    ])
    return np.eye(3) + math.sin(angle) * k + (1 - math.cos(angle)) * (k @ k)


FU, FV, UC, VC = 500.0, 510.0, 320.0, 240.0


def _scene(n=20, seed=3):
    rng = np.random.default_rng(seed)
    R = _rotation([0.3, -0.5, 0.8], 0.4)
    t = np.array([0.1, -0.2, 6.0])
    pws = rng.uniform(-1.5, 1.5, size=(n, 3))
    pcs = pws @ R.T + t
    us = np.column_stack([
        UC + FU * pcs[:, 0] / pcs[:, 2],
        VC + FV * pcs[:, 1] / pcs[:, 2],
    ])
    return R, t, pws, us


def _solver(pws, us):
    solver = EPnP(FU, FV, UC, VC)
    for pw, u in zip(pws, us):
        solver.add_correspondence(pw, u)
    return solver


def test_compute_pose_recovers_true_pose():
    R, t, pws, us = _scene()
    rotation, translation, error = _solver(pws, us).compute_pose()
    assert np.allclose(rotation, R, atol=1e-6)
    assert np.allclose(translation, t, atol=1e-6)
    assert error < 1e-5


def test_estimated_rotation_is_proper():
    _, _, pws, us = _scene(seed=11)
    rotation, _, _ = _solver(pws, us).compute_pose()
    assert np.allclose(rotation @ rotation.T, np.eye(3), atol=1e-9)
    assert np.linalg.det(rotation) == pytest.approx(1.0)


def test_reprojection_error_zero_for_true_pose_and_positive_otherwise():
    R, t, pws, us = _scene()
    solver = _solver(pws, us)
    assert solver.reprojection_error(R, t) == pytest.approx(0.0, abs=1e-9)
    assert solver.reprojection_error(R, t + np.array([0.05, 0.0, 0.0])) > 1.0


def test_reset_forgets_correspondences():
    _, _, pws, us = _scene()
    solver = _solver(pws, us)
    assert len(solver) == len(pws)
    solver.reset()
    assert len(solver) == 0
    with pytest.raises(EPnPError):
        solver.compute_pose()


def test_reprojection_error_without_points_raises():
    with pytest.raises(EPnPError):
        EPnP(FU, FV, UC, VC).reprojection_error(np.eye(3), np.zeros(3))


def test_qr_solve_square_system():
    a = np.array([[4.0, 1.0, 2.0], [1.0, 3.0, 0.5], [2.0, 0.5, 5.0]])
    x = np.array([1.0, -2.0, 0.5])
    assert np.allclose(qr_solve(a, a @ x), x)


def test_qr_solve_overdetermined_matches_least_squares():
    rng = np.random.default_rng(0)
    a = rng.normal(size=(6, 4))
    b = rng.normal(size=6)
    expected = np.linalg.lstsq(a, b, rcond=None)[0]
    assert np.allclose(qr_solve(a, b), expected)


def test_qr_solve_does_not_modify_inputs():
    a = np.array([[2.0, 1.0], [1.0, 3.0], [0.0, 1.0]])
    b = np.array([1.0, 2.0, 3.0])
    a_copy, b_copy = a.copy(), b.copy()
    qr_solve(a, b)
    assert np.array_equal(a, a_copy)
    assert np.array_equal(b, b_copy)


def test_qr_solve_singular_raises():
    a = np.zeros((6, 4))
    with pytest.raises(EPnPError):
        qr_solve(a, np.ones(6))


def test_mat_to_quat_identity():
    assert np.allclose(mat_to_quat(np.eye(3)), [0.0, 0.0, 0.0, 1.0])


@pytest.mark.parametrize(
    "axis,angle",
    [([1, 0, 0], 0.3), ([0, 1, 0], 2.9), ([0, 0, 1], 3.1), ([1, 1, 1], 2.5)],
)
def test_mat_to_quat_is_unit(axis, angle):
    q = mat_to_quat(_rotation(axis, angle))
    assert np.linalg.norm(q) == pytest.approx(1.0)


def test_relative_error_of_identical_poses_is_zero():
    R = _rotation([0.2, 0.4, -0.1], 1.2)
    t = np.array([1.0, 2.0, 3.0])
    rot_err, transl_err = relative_error(R, t, R, t)
    assert rot_err == pytest.approx(0.0, abs=1e-12)
    assert transl_err == pytest.approx(0.0, abs=1e-12)


def test_relative_error_grows_with_difference():
    R = _rotation([0.2, 0.4, -0.1], 1.2)
    t = np.array([1.0, 2.0, 3.0])
    small = relative_error(R, t, _rotation([0.2, 0.4, -0.1], 1.25), t * 1.01)
    large = relative_error(R, t, _rotation([0.2, 0.4, -0.1], 1.6), t * 1.2)
    assert 0 < small[0] < large[0]
    assert 0 < small[1] < large[1]
    assert small[1] == pytest.approx(0.01)