"""RANSAC camera pose estimation over 3D-2D correspondences using EPnP."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from posekit.epnp import EPnP, EPnPError


@dataclass
class PnPResult:
    """Outcome of a RANSAC run.

    ``pose`` is the 4x4 world-to-camera transform, or None when no pose was
    accepted. ``inliers`` has one flag per original match and is empty when no
    pose was accepted. ``no_more`` is True once the iteration budget is spent
    or when there are too few correspondences to try.
    """

    pose: Optional[np.ndarray]
    inliers: list[bool] = field(default_factory=list)
    n_inliers: int = 0
    no_more: bool = False

    @property
    def found(self) -> bool:
        return self.pose is not None


def _pose_matrix(rotation: np.ndarray, translation: np.ndarray) -> np.ndarray:
    pose = np.eye(4, dtype=np.float32)
    pose[:3, :3] = np.asarray(rotation, dtype=np.float32)
    pose[:3, 3] = np.asarray(translation, dtype=np.float32).reshape(3)
    return pose


class PnPSolver:
    """Robust camera pose from world points and the pixels they are seen at.

    ``points_3d`` and ``points_2d`` hold one correspondence per row and
    ``sigma2`` the squared scale-level sigma of each observation.
    ``keypoint_indices`` gives, for every correspondence, its position among
    ``n_matches`` original matches; inlier flags are reported in that space.
    """

    def __init__(
        self,
        points_3d,
        points_2d,
        sigma2: Sequence[float],
        fx: float,
        fy: float,
        cx: float,
        cy: float,
        keypoint_indices: Optional[Sequence[int]] = None,
        n_matches: Optional[int] = None,
        seed: Optional[int] = None,
    ):
        p3 = np.asarray(points_3d, dtype=float).reshape(-1, 3) if len(points_3d) else np.zeros((0, 3))
        p2 = np.asarray(points_2d, dtype=float).reshape(-1, 2) if len(points_2d) else np.zeros((0, 2))
        if len(p3) != len(p2):
            raise ValueError("points_3d and points_2d must have the same length")
        s2 = np.asarray(list(sigma2), dtype=float)
        if len(s2) != len(p3):
            raise ValueError("sigma2 must have one entry per correspondence")

        if keypoint_indices is None:
            indices = list(range(len(p3)))
        else:
            indices = [int(i) for i in keypoint_indices]
            if len(indices) != len(p3):
                raise ValueError("keypoint_indices must have one entry per correspondence")
        if n_matches is None:
            n_matches = max(indices) + 1 if indices else 0
        n_matches = int(n_matches)
        if any(not 0 <= i < n_matches for i in indices):
            raise ValueError("keypoint index out of range of n_matches")

        self._points_3d = p3
        self._points_2d = p2
        self._sigma2 = s2
        self._indices = indices
        self.n_matches = n_matches
        self._epnp = EPnP(fx, fy, cx, cy)
        self._rng = random.Random(seed)

        self._iterations = 0
        self._best_inliers: list[bool] = []
        self._best_count = 0
        self._best_pose: Optional[np.ndarray] = None

        self.set_ransac_parameters()

    def __len__(self) -> int:
        return len(self._points_3d)

    def set_ransac_parameters(
        self,
        probability: float = 0.99,
        min_inliers: int = 8,
        max_iterations: int = 300,
        min_set: int = 4,
        epsilon: float = 0.4,
        th2: float = 5.991,
    ) -> None:
        """Set RANSAC parameters, adjusted to the number of correspondences."""
        n = len(self)
        self.probability = float(probability)
        self.min_set = int(min_set)

        required = max(int(n * epsilon), int(min_inliers), self.min_set)
        self.min_inliers = required

        if n > 0:
            epsilon = max(float(epsilon), required / n)
        self.epsilon = float(epsilon)

        if required == n or n == 0 or self.epsilon >= 1.0:
            iterations = 1
        else:
            denominator = math.log(1.0 - self.epsilon**3)
            with np.errstate(divide="ignore"):
                numerator = float(np.log(1.0 - self.probability))
            ratio = numerator / denominator
            iterations = int(max_iterations) if math.isinf(ratio) else math.ceil(ratio)

        self.max_iterations = max(1, min(iterations, int(max_iterations)))
        self.max_errors = self._sigma2 * float(th2)

    def find(self) -> PnPResult:
        """Run RANSAC until the iteration budget is spent or a pose is refined."""
        return self.iterate(self.max_iterations)

    def iterate(self, n_iterations: int) -> PnPResult:
        """Run at least ``n_iterations`` more RANSAC iterations."""
        n = len(self)
        if n < self.min_inliers:
            return PnPResult(pose=None, no_more=True)

        current = 0
        while self._iterations < self.max_iterations or current < n_iterations:
            current += 1
            self._iterations += 1

            sample = self._rng.sample(range(n), self.min_set)
            estimate = self._estimate(sample)
            if estimate is None:
                continue
            rotation, translation = estimate
            inliers, count = self._check_inliers(rotation, translation)

            if count < self.min_inliers:
                continue
            if count > self._best_count:
                self._best_inliers = inliers
                self._best_count = count
                self._best_pose = _pose_matrix(rotation, translation)

            refined = self._refine()
            if refined is not None:
                pose, refined_inliers, refined_count = refined
                return PnPResult(
                    pose=pose,
                    inliers=self._expand(refined_inliers),
                    n_inliers=refined_count,
                    no_more=False,
                )

        if self._iterations >= self.max_iterations:
            if self._best_count >= self.min_inliers and self._best_pose is not None:
                return PnPResult(
                    pose=self._best_pose.copy(),
                    inliers=self._expand(self._best_inliers),
                    n_inliers=self._best_count,
                    no_more=True,
                )
            return PnPResult(pose=None, no_more=True)
        return PnPResult(pose=None)

    # -- internals ----------------------------------------------------------

    def _estimate(self, selection: Sequence[int]):
        self._epnp.reset()
        for index in selection:
            self._epnp.add_correspondence(self._points_3d[index], self._points_2d[index])
        try:
            rotation, translation, _ = self._epnp.compute_pose()
        except (EPnPError, np.linalg.LinAlgError):
            return None
        return rotation, translation

    def _refine(self):
        selection = [i for i, flag in enumerate(self._best_inliers) if flag]
        if not selection:
            return None
        estimate = self._estimate(selection)
        if estimate is None:
            return None
        rotation, translation = estimate
        inliers, count = self._check_inliers(rotation, translation)
        if count > self.min_inliers:
            return _pose_matrix(rotation, translation), inliers, count
        return None

    def _check_inliers(self, rotation, translation) -> tuple[list[bool], int]:
        camera = self._points_3d @ np.asarray(rotation).T + np.asarray(translation).reshape(3)
        with np.errstate(divide="ignore", invalid="ignore"):
            inv_z = 1.0 / camera[:, 2]
            ue = self._epnp.uc + self._epnp.fu * camera[:, 0] * inv_z
            ve = self._epnp.vc + self._epnp.fv * camera[:, 1] * inv_z
            error2 = (self._points_2d[:, 0] - ue) ** 2 + (self._points_2d[:, 1] - ve) ** 2
            flags = error2 < self.max_errors
        inliers = [bool(f) for f in flags]
        return inliers, sum(inliers)

    def _expand(self, flags: Sequence[bool]) -> list[bool]:
        result = [False] * self.n_matches
        for flag, index in zip(flags, self._indices):
            if flag:
                result[index] = True
        return result