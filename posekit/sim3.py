"""Similarity transform between two camera frames, estimated robustly with RANSAC."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

_CHI2_95_2DOF = 9.210
_SAMPLE_SIZE = 3


@dataclass(frozen=True)
class Sim3Estimate:
    """A similarity transform mapping frame-2 points into frame 1.

    ``t12`` is the 4x4 matrix [sR t; 0 1] and ``t21`` its inverse.
    """

    rotation: np.ndarray
    translation: np.ndarray
    scale: float
    t12: np.ndarray
    t21: np.ndarray


@dataclass
class Sim3Result:
    """Outcome of a RANSAC run.

    ``transform`` is the accepted 4x4 T12 or None. ``inliers`` holds one flag
    per original match. ``no_more`` is True once the iteration budget is spent
    or when there are too few correspondences to try.
    """

    transform: Optional[np.ndarray]
    inliers: list[bool] = field(default_factory=list)
    n_inliers: int = 0
    no_more: bool = False
    estimate: Optional[Sim3Estimate] = None

    @property
    def found(self) -> bool:
        return self.transform is not None


def _as_points(points, name: str) -> np.ndarray:
    arr = np.asarray(points, dtype=float)
    if arr.size == 0:
        return np.zeros((0, 3))
    arr = arr.reshape(-1, 3) if arr.ndim == 1 else arr
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"{name} must be an array of 3D points, got shape {arr.shape}")
    return arr


def _quaternion_to_matrix(q: np.ndarray) -> np.ndarray:
    w, x, y, z = q / np.linalg.norm(q)
    return np.array([
        [1 - 2 * (y * y + z * z), 2 * (x * y - w * z), 2 * (x * z + w * y)],
        [2 * (x * y + w * z), 1 - 2 * (x * x + z * z), 2 * (y * z - w * x)],
        [2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x * x + y * y)],
    ])


def compute_sim3(points1, points2, fix_scale: bool = False) -> Sim3Estimate:
    """Closed-form similarity aligning points2 onto points1 (Horn's quaternion method).

    Both arguments hold one 3D point per row, in corresponding order.
    """
    p1 = _as_points(points1, "points1")
    p2 = _as_points(points2, "points2")
    if p1.shape != p2.shape:
        raise ValueError("points1 and points2 must have the same shape")
    if len(p1) == 0:
        raise ValueError("at least one correspondence is needed")

    o1 = p1.mean(axis=0)
    o2 = p2.mean(axis=0)
    r1 = p1 - o1
    r2 = p2 - o2

    m = r2.T @ r1
    n11 = m[0, 0] + m[1, 1] + m[2, 2]
    n12 = m[1, 2] - m[2, 1]
    n13 = m[2, 0] - m[0, 2]
    n14 = m[0, 1] - m[1, 0]
    n22 = m[0, 0] - m[1, 1] - m[2, 2]
    n23 = m[0, 1] + m[1, 0]
    n24 = m[2, 0] + m[0, 2]
    n33 = -m[0, 0] + m[1, 1] - m[2, 2]
    n34 = m[1, 2] + m[2, 1]
    n44 = -m[0, 0] - m[1, 1] + m[2, 2]
    n = np.array([
        [n11, n12, n13, n14],
        [n12, n22, n23, n24],
        [n13, n23, n33, n34],
        [n14, n24, n34, n44],
    ])

    _, vectors = np.linalg.eigh(n)
    rotation = _quaternion_to_matrix(vectors[:, -1])

    rotated = r2 @ rotation.T
    if fix_scale:
        scale = 1.0
    else:
        den = float(np.sum(rotated * rotated))
        nom = float(np.sum(r1 * rotated))
        scale = nom / den if den != 0 else math.nan

    translation = o1 - scale * (rotation @ o2)

    t12 = np.eye(4)
    t12[:3, :3] = scale * rotation
    t12[:3, 3] = translation

    t21 = np.eye(4)
    with np.errstate(divide="ignore", invalid="ignore"):
        s_rinv = (1.0 / scale) * rotation.T if scale != 0 else np.full((3, 3), math.inf)
        t21[:3, :3] = s_rinv
        t21[:3, 3] = -s_rinv @ translation

    return Sim3Estimate(rotation, translation, scale, t12, t21)


def _intrinsics(k) -> tuple[float, float, float, float]:
    mat = np.asarray(k, dtype=float)
    if mat.shape != (3, 3):
        raise ValueError("calibration matrix must be 3x3")
    return mat[0, 0], mat[1, 1], mat[0, 2], mat[1, 2]


def camera_to_image(points, k) -> np.ndarray:
    """Pixel coordinates of camera-frame points, one (u, v) row per point."""
    pts = _as_points(points, "points")
    fx, fy, cx, cy = _intrinsics(k)
    with np.errstate(divide="ignore", invalid="ignore"):
        inv_z = 1.0 / pts[:, 2]
        u = fx * pts[:, 0] * inv_z + cx
        v = fy * pts[:, 1] * inv_z + cy
    return np.column_stack([u, v])


def project(points, transform, k) -> np.ndarray:
    """Transform points by a 4x4 matrix, then project them into the image."""
    pts = _as_points(points, "points")
    tcw = np.asarray(transform, dtype=float)
    if tcw.shape != (4, 4):
        raise ValueError("transform must be 4x4")
    moved = pts @ tcw[:3, :3].T + tcw[:3, 3]
    return camera_to_image(moved, k)


class Sim3Solver:
    """Robust similarity between two keyframes from matched camera-frame points.

    ``points1`` and ``points2`` are the matched points in the coordinates of
    camera 1 and camera 2. ``sigma2_1`` and ``sigma2_2`` are the squared
    scale-level sigmas of the observations. ``match_indices`` gives each
    correspondence's position among ``n_matches`` original matches.
    """

    def __init__(
        self,
        points1,
        points2,
        sigma2_1: Sequence[float],
        sigma2_2: Sequence[float],
        k1,
        k2,
        match_indices: Optional[Sequence[int]] = None,
        n_matches: Optional[int] = None,
        fix_scale: bool = True,
        seed: Optional[int] = None,
    ):
        p1 = _as_points(points1, "points1")
        p2 = _as_points(points2, "points2")
        if p1.shape != p2.shape:
            raise ValueError("points1 and points2 must have the same length")
        s1 = np.asarray(list(sigma2_1), dtype=float)
        s2 = np.asarray(list(sigma2_2), dtype=float)
        if len(s1) != len(p1) or len(s2) != len(p1):
            raise ValueError("sigma2 values must have one entry per correspondence")

        if match_indices is None:
            indices = list(range(len(p1)))
        else:
            indices = [int(i) for i in match_indices]
            if len(indices) != len(p1):
                raise ValueError("match_indices must have one entry per correspondence")
        if n_matches is None:
            n_matches = max(indices) + 1 if indices else 0
        n_matches = int(n_matches)
        if any(not 0 <= i < n_matches for i in indices):
            raise ValueError("match index out of range of n_matches")

        self._k1 = np.asarray(k1, dtype=float)
        self._k2 = np.asarray(k2, dtype=float)
        self._points1 = p1
        self._points2 = p2
        self._image1 = camera_to_image(p1, self._k1)
        self._image2 = camera_to_image(p2, self._k2)
        self._max_error1 = _CHI2_95_2DOF * s1
        self._max_error2 = _CHI2_95_2DOF * s2
        self._indices = indices
        self.n_matches = n_matches
        self.fix_scale = bool(fix_scale)
        self._rng = random.Random(seed)

        self._best_count = 0
        self._best_inliers: list[bool] = []
        self.best: Optional[Sim3Estimate] = None

        self.set_ransac_parameters()

    def __len__(self) -> int:
        return len(self._points1)

    def set_ransac_parameters(
        self,
        probability: float = 0.99,
        min_inliers: int = 6,
        max_iterations: int = 300,
    ) -> None:
        """Set RANSAC parameters and restart the iteration count."""
        n = len(self)
        self.probability = float(probability)
        self.min_inliers = int(min_inliers)

        if n == 0 or self.min_inliers >= n:
            iterations = 1
        else:
            epsilon = self.min_inliers / n
            denominator = math.log(1.0 - epsilon**3)
            with np.errstate(divide="ignore"):
                numerator = float(np.log(1.0 - self.probability))
            if denominator == 0 or math.isinf(numerator):
                iterations = int(max_iterations)
            else:
                iterations = math.ceil(numerator / denominator)

        self.max_iterations = max(1, min(iterations, int(max_iterations)))
        self._iterations = 0

    def find(self) -> Sim3Result:
        """Run RANSAC until a transform is accepted or the budget is spent."""
        return self.iterate(self.max_iterations)

    def iterate(self, n_iterations: int) -> Sim3Result:
        """Run up to ``n_iterations`` more RANSAC iterations."""
        n = len(self)
        no_inliers = [False] * self.n_matches
        if n < self.min_inliers or n < _SAMPLE_SIZE:
            return Sim3Result(transform=None, inliers=no_inliers, no_more=True)

        current = 0
        while self._iterations < self.max_iterations and current < n_iterations:
            current += 1
            self._iterations += 1

            sample = self._rng.sample(range(n), _SAMPLE_SIZE)
            with np.errstate(all="ignore"):
                estimate = compute_sim3(
                    self._points1[sample], self._points2[sample], self.fix_scale
                )
            inliers, count = self._check_inliers(estimate)

            if count >= self._best_count:
                self._best_inliers = inliers
                self._best_count = count
                self.best = estimate

                if count > self.min_inliers:
                    return Sim3Result(
                        transform=estimate.t12.copy(),
                        inliers=self._expand(inliers),
                        n_inliers=count,
                        no_more=False,
                        estimate=estimate,
                    )

        return Sim3Result(
            transform=None,
            inliers=no_inliers,
            no_more=self._iterations >= self.max_iterations,
        )

    def _check_inliers(self, estimate: Sim3Estimate) -> tuple[list[bool], int]:
        with np.errstate(all="ignore"):
            p2_in_1 = project(self._points2, estimate.t12, self._k1)
            p1_in_2 = project(self._points1, estimate.t21, self._k2)
            err1 = np.sum((self._image1 - p2_in_1) ** 2, axis=1)
            err2 = np.sum((p1_in_2 - self._image2) ** 2, axis=1)
            flags = (err1 < self._max_error1) & (err2 < self._max_error2)
        inliers = [bool(f) for f in flags]
        return inliers, sum(inliers)

    def _expand(self, flags: Sequence[bool]) -> list[bool]:
        result = [False] * self.n_matches
        for flag, index in zip(flags, self._indices):
            if flag:
                result[index] = True
        return result