import math

import numpy as np
import pytest

from posekit.pnp_ransac import PnPResult, PnPSolver

FX = FY = 500.0
CX, CY = 320.0, 240.0


def _rotation(ax, ay, az):
    cx, sx = math.cos(ax), math.sin(ax)
    cy, sy = math.cos(ay), math.sin(ay)
    cz, sz = math.cos(az), math.sin(az)
    rx = np.array([[1, 0, 0], [0, cx, -sx], [0, sx, cx]])
    ry = np.array([[cy, 0, sy], [0, 1, 0], [-sy, 0, cy]])
    rz = np.array([[cz, -sz, 0], [sz, cz, 0], [0, 0, 1]])
    return rz @ ry @ rx


def _scene(n=30, seed=1):
    rng = np.random.default_rng(seed)
    rotation = _rotation(0.1, -0.2, 0.05)
    translation = np.array([0.1, -0.2, 5.0])
    points = rng.uniform(-1.0, 1.0, size=(n, 3))
    camera = points @ rotation.T + translation
    pixels = np.column_stack([
        FX * camera[:, 0] / camera[:, 2] + CX,
        FY * camera[:, 1] / camera[:, 2] + CY,
    ])
    return points, pixels, rotation, translation


def _solver(points, pixels, **kwargs):
    return PnPSolver(points, pixels, [1.0] * len(points), FX, FY, CX, CY, **kwargs)


def test_find_recovers_exact_pose():
    points, pixels, rotation, translation = _scene()
    result = _solver(points, pixels, seed=3).find()
    assert result.found
    assert result.pose.shape == (4, 4)
    assert np.allclose(result.pose[:3, :3], rotation, atol=1e-3)
    assert np.allclose(result.pose[:3, 3], translation, atol=1e-3)
    assert np.allclose(result.pose[3], [0, 0, 0, 1])
    assert result.n_inliers == len(points)
    assert all(result.inliers)


def test_outliers_are_rejected():
    points, pixels, rotation, translation = _scene(n=30)
    pixels = pixels.copy()
    outliers = [2, 7, 11, 19, 25]
    pixels[outliers] += 60.0
    result = _solver(points, pixels, seed=5).find()
    assert result.found
    assert np.allclose(result.pose[:3, :3], rotation, atol=1e-3)
    assert np.allclose(result.pose[:3, 3], translation, atol=1e-3)
    assert result.n_inliers == len(points) - len(outliers)
    for i in range(len(points)):
        assert result.inliers[i] == (i not in outliers)


def test_inliers_reported_in_match_space():
    points, pixels, _, _ = _scene(n=20)
    indices = [2 * i + 1 for i in range(20)]
    result = _solver(points, pixels, keypoint_indices=indices, n_matches=45, seed=2).find()
    assert result.found
    assert len(result.inliers) == 45
    assert [i for i, f in enumerate(result.inliers) if f] == indices
    assert sum(result.inliers) == result.n_inliers


def test_too_few_correspondences():
    points, pixels, _, _ = _scene(n=5)
    solver = _solver(points, pixels)
    assert solver.min_inliers > len(points)
    result = solver.find()
    assert isinstance(result, PnPResult)
    assert result.pose is None
    assert result.no_more
    assert result.inliers == []
    assert result.n_inliers == 0


def test_min_inliers_equal_to_n_gives_single_iteration():
    points, pixels, _, _ = _scene(n=12)
    solver = _solver(points, pixels)
    solver.set_ransac_parameters(min_inliers=12)
    assert solver.min_inliers == 12
    assert solver.max_iterations == 1


def test_parameters_adjusted_by_correspondence_count():
    points, pixels, _, _ = _scene(n=40)
    solver = _solver(points, pixels)
    solver.set_ransac_parameters(min_inliers=4, max_iterations=50, epsilon=0.5)
    assert solver.min_inliers == 20
    assert solver.epsilon >= solver.min_inliers / len(points)
    assert 1 <= solver.max_iterations <= 50
    assert np.allclose(solver.max_errors, 5.991)


def test_max_iterations_clamped():
    points, pixels, _, _ = _scene(n=40)
    solver = _solver(points, pixels)
    solver.set_ransac_parameters(max_iterations=3, epsilon=0.1)
    assert solver.max_iterations == 3


def test_seeded_runs_are_reproducible():
    points, pixels, _, _ = _scene(n=25)
    pixels = pixels.copy()
    pixels[[0, 4, 9]] += 40.0
    first = _solver(points, pixels, seed=11).find()
    second = _solver(points, pixels, seed=11).find()
    assert first.found and second.found
    assert np.array_equal(first.pose, second.pose)
    assert first.inliers == second.inliers


def test_mismatched_lengths_rejected():
    points, pixels, _, _ = _scene(n=10)
    with pytest.raises(ValueError):
        PnPSolver(points, pixels[:9], [1.0] * 10, FX, FY, CX, CY)
    with pytest.raises(ValueError):
        PnPSolver(points, pixels, [1.0] * 9, FX, FY, CX, CY)


def test_keypoint_index_out_of_range_rejected():
    points, pixels, _, _ = _scene(n=10)
    with pytest.raises(ValueError):
        _solver(points, pixels, keypoint_indices=list(range(10)), n_matches=5)


def test_no_pose_when_all_observations_wrong():
    points, pixels, _, _ = _scene(n=20)
    rng = np.random.default_rng(7)
    noise = rng.uniform(-200.0, 200.0, size=pixels.shape)
    solver = _solver(points, pixels + noise, seed=1)
    solver.set_ransac_parameters(min_inliers=18, max_iterations=20)
    result = solver.find()
    assert result.pose is None
    assert result.no_more