"""Efficient Perspective-n-Point pose estimation from 3D-2D correspondences."""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np

_PAIRS = ((0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3))
_GAUSS_NEWTON_ITERATIONS = 5


class EPnPError(ValueError):
    """Raised when a pose or a linear system cannot be solved."""


def qr_solve(a, b) -> np.ndarray:
    """Least-squares solution of ``a @ x = b`` by Householder QR.

    Raises EPnPError when a column of ``a`` is found to be zero.
    """
    A = np.array(a, dtype=float, copy=True)
    rhs = np.array(b, dtype=float, copy=True).reshape(-1)
    if A.ndim != 2:
        raise EPnPError("matrix must be two-dimensional")
    nr, nc = A.shape
    if nr < nc or nc == 0:
        raise EPnPError(f"cannot solve a {nr}x{nc} system by QR")
    if rhs.size != nr:
        raise EPnPError("right-hand side must have one entry per row")

    a1 = np.zeros(nc)
    a2 = np.zeros(nc)
    for k in range(nc):
        # The pivot scale looks at rows k .. nr-2, as the reference algorithm does.
        stop = max(k + 1, nr - 1)
        eta = float(np.abs(A[k:stop, k]).max())
        if eta == 0:
            raise EPnPError("matrix is singular")
        A[k:, k] /= eta
        sigma = math.sqrt(float(np.dot(A[k:, k], A[k:, k])))
        if A[k, k] < 0:
            sigma = -sigma
        A[k, k] += sigma
        a1[k] = sigma * A[k, k]
        a2[k] = -eta * sigma
        for j in range(k + 1, nc):
            tau = float(np.dot(A[k:, k], A[k:, j])) / a1[k]
            A[k:, j] -= tau * A[k:, k]

    for j in range(nc):
        tau = float(np.dot(A[j:, j], rhs[j:])) / a1[j]
        rhs[j:] -= tau * A[j:, j]

    x = np.zeros(nc)
    x[nc - 1] = rhs[nc - 1] / a2[nc - 1]
    for i in range(nc - 2, -1, -1):
        x[i] = (rhs[i] - float(np.dot(A[i, i + 1:], x[i + 1:]))) / a2[i]
    return x


def mat_to_quat(rotation) -> np.ndarray:
    """Unit quaternion of a rotation matrix, with the scalar part last."""
    R = np.asarray(rotation, dtype=float)
    tr = R[0, 0] + R[1, 1] + R[2, 2]
    if tr > 0.0:
        q = [R[1, 2] - R[2, 1], R[2, 0] - R[0, 2], R[0, 1] - R[1, 0], tr + 1.0]
        n4 = q[3]
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        q = [
            1.0 + R[0, 0] - R[1, 1] - R[2, 2],
            R[1, 0] + R[0, 1],
            R[2, 0] + R[0, 2],
            R[1, 2] - R[2, 1],
        ]
        n4 = q[0]
    elif R[1, 1] > R[2, 2]:
        q = [
            R[1, 0] + R[0, 1],
            1.0 + R[1, 1] - R[0, 0] - R[2, 2],
            R[2, 1] + R[1, 2],
            R[2, 0] - R[0, 2],
        ]
        n4 = q[1]
    else:
        q = [
            R[2, 0] + R[0, 2],
            R[2, 1] + R[1, 2],
            1.0 + R[2, 2] - R[0, 0] - R[1, 1],
            R[0, 1] - R[1, 0],
        ]
        n4 = q[2]
    return np.array(q) * (0.5 / math.sqrt(n4))


def relative_error(
    rotation_true, translation_true, rotation_est, translation_est
) -> tuple[float, float]:
    """Relative rotation (quaternion) and translation errors between two poses."""
    q_true = mat_to_quat(rotation_true)
    q_est = mat_to_quat(rotation_est)
    norm_q = float(np.linalg.norm(q_true))
    rot_err = min(
        float(np.linalg.norm(q_true - q_est)) / norm_q,
        float(np.linalg.norm(q_true + q_est)) / norm_q,
    )
    t_true = np.asarray(translation_true, dtype=float).reshape(3)
    t_est = np.asarray(translation_est, dtype=float).reshape(3)
    transl_err = float(np.linalg.norm(t_true - t_est)) / float(np.linalg.norm(t_true))
    return rot_err, transl_err


class EPnP:
    """Pose of a calibrated pinhole camera from world points and their images."""

    def __init__(self, fu: float, fv: float, uc: float, vc: float):
        self.fu = float(fu)
        self.fv = float(fv)
        self.uc = float(uc)
        self.vc = float(vc)
        self._pws: list[tuple[float, float, float]] = []
        self._us: list[tuple[float, float]] = []

    def __len__(self) -> int:
        return len(self._pws)

    def reset(self) -> None:
        """Forget all correspondences."""
        self._pws.clear()
        self._us.clear()

    def add_correspondence(self, point3d: Sequence[float], point2d: Sequence[float]) -> None:
        """Add a world point and the pixel it is observed at."""
        x, y, z = (float(v) for v in point3d)
        u, v = (float(c) for c in point2d)
        self._pws.append((x, y, z))
        self._us.append((u, v))

    # -- pose ---------------------------------------------------------------

    def compute_pose(self) -> tuple[np.ndarray, np.ndarray, float]:
        """Estimate (rotation, translation, mean reprojection error)."""
        if not self._pws:
            raise EPnPError("no correspondences to compute a pose from")
        pws = np.array(self._pws, dtype=float)
        us = np.array(self._us, dtype=float)

        cws = self._choose_control_points(pws)
        alphas = self._barycentric_coordinates(pws, cws)

        M = np.zeros((2 * len(pws), 12))
        for i, (a, (u, v)) in enumerate(zip(alphas, us)):
            M[2 * i, 0::3] = a * self.fu
            M[2 * i, 2::3] = a * (self.uc - u)
            M[2 * i + 1, 1::3] = a * self.fv
            M[2 * i + 1, 2::3] = a * (self.vc - v)

        U, _, _ = np.linalg.svd(M.T @ M)
        ut = U.T

        l_6x10 = self._compute_l_6x10(ut)
        rho = np.array([float(np.sum((cws[a] - cws[b]) ** 2)) for a, b in _PAIRS])

        candidates = []
        for approx in (self._betas_approx_1, self._betas_approx_2, self._betas_approx_3):
            with np.errstate(all="ignore"):
                betas = approx(l_6x10, rho)
            if not np.all(np.isfinite(betas)):
                continue
            betas = self._gauss_newton(l_6x10, rho, betas)
            try:
                candidates.append(self._compute_r_and_t(ut, betas, alphas, pws, us))
            except (np.linalg.LinAlgError, EPnPError):
                continue

        if not candidates:
            raise EPnPError("pose could not be estimated from the correspondences")

        best = candidates[0]
        for candidate in candidates[1:]:
            if candidate[2] < best[2]:
                best = candidate
        return best

    def reprojection_error(self, rotation, translation) -> float:
        """Mean pixel distance between observations and reprojected points."""
        if not self._pws:
            raise EPnPError("no correspondences to measure")
        return self._reprojection_error(
            np.asarray(rotation, dtype=float),
            np.asarray(translation, dtype=float).reshape(3),
            np.array(self._pws, dtype=float),
            np.array(self._us, dtype=float),
        )

    # -- internals ----------------------------------------------------------

    def _reprojection_error(self, R, t, pws, us) -> float:
        total = 0.0
        for pw, (u, v) in zip(pws, us):
            xc = float(R[0] @ pw) + t[0]
            yc = float(R[1] @ pw) + t[1]
            inv_zc = 1.0 / (float(R[2] @ pw) + t[2])
            ue = self.uc + self.fu * xc * inv_zc
            ve = self.vc + self.fv * yc * inv_zc
            total += math.sqrt((u - ue) ** 2 + (v - ve) ** 2)
        return total / len(pws)

    @staticmethod
    def _choose_control_points(pws: np.ndarray) -> np.ndarray:
        n = len(pws)
        cws = np.zeros((4, 3))
        cws[0] = pws.mean(axis=0)
        pw0 = pws - cws[0]
        U, dc, _ = np.linalg.svd(pw0.T @ pw0)
        for i in range(1, 4):
            k = math.sqrt(dc[i - 1] / n)
            cws[i] = cws[0] + k * U[:, i - 1]
        return cws

    @staticmethod
    def _barycentric_coordinates(pws: np.ndarray, cws: np.ndarray) -> np.ndarray:
        cc = (cws[1:] - cws[0]).T
        cc_inv = np.linalg.pinv(cc)
        rest = (pws - cws[0]) @ cc_inv.T
        alphas = np.empty((len(pws), 4))
        alphas[:, 1:] = rest
        alphas[:, 0] = 1.0 - rest.sum(axis=1)
        return alphas

    @staticmethod
    def _compute_l_6x10(ut: np.ndarray) -> np.ndarray:
        v = [ut[11 - i].reshape(4, 3) for i in range(4)]
        dv = [[vi[a] - vi[b] for a, b in _PAIRS] for vi in v]
        rows = []
        for j in range(6):
            d = [dv[i][j] for i in range(4)]
            rows.append([
                d[0] @ d[0],
                2.0 * (d[0] @ d[1]),
                d[1] @ d[1],
                2.0 * (d[0] @ d[2]),
                2.0 * (d[1] @ d[2]),
                d[2] @ d[2],
                2.0 * (d[0] @ d[3]),
                2.0 * (d[1] @ d[3]),
                2.0 * (d[2] @ d[3]),
                d[3] @ d[3],
            ])
        return np.array(rows, dtype=float)

    @staticmethod
    def _betas_approx_1(l_6x10, rho) -> np.ndarray:
        b4 = np.linalg.lstsq(l_6x10[:, [0, 1, 3, 6]], rho, rcond=None)[0]
        if b4[0] < 0:
            b0 = np.sqrt(-b4[0])
            return np.array([b0, -b4[1] / b0, -b4[2] / b0, -b4[3] / b0])
        b0 = np.sqrt(b4[0])
        return np.array([b0, b4[1] / b0, b4[2] / b0, b4[3] / b0])

    @staticmethod
    def _betas_approx_2(l_6x10, rho) -> np.ndarray:
        b3 = np.linalg.lstsq(l_6x10[:, :3], rho, rcond=None)[0]
        if b3[0] < 0:
            b0 = np.sqrt(-b3[0])
            b1 = np.sqrt(-b3[2]) if b3[2] < 0 else 0.0
        else:
            b0 = np.sqrt(b3[0])
            b1 = np.sqrt(b3[2]) if b3[2] > 0 else 0.0
        if b3[1] < 0:
            b0 = -b0
        return np.array([b0, b1, 0.0, 0.0], dtype=float)

    @staticmethod
    def _betas_approx_3(l_6x10, rho) -> np.ndarray:
        b5 = np.linalg.lstsq(l_6x10[:, :5], rho, rcond=None)[0]
        if b5[0] < 0:
            b0 = np.sqrt(-b5[0])
            b1 = np.sqrt(-b5[2]) if b5[2] < 0 else 0.0
        else:
            b0 = np.sqrt(b5[0])
            b1 = np.sqrt(b5[2]) if b5[2] > 0 else 0.0
        if b5[1] < 0:
            b0 = -b0
        return np.array([b0, b1, np.float64(b5[3]) / b0, 0.0], dtype=float)

    @staticmethod
    def _gauss_newton(l_6x10, rho, betas) -> np.ndarray:
        betas = np.array(betas, dtype=float)
        for _ in range(_GAUSS_NEWTON_ITERATIONS):
            b0, b1, b2, b3 = betas
            L = l_6x10
            A = np.column_stack([
                2 * L[:, 0] * b0 + L[:, 1] * b1 + L[:, 3] * b2 + L[:, 6] * b3,
                L[:, 1] * b0 + 2 * L[:, 2] * b1 + L[:, 4] * b2 + L[:, 7] * b3,
                L[:, 3] * b0 + L[:, 4] * b1 + 2 * L[:, 5] * b2 + L[:, 8] * b3,
                L[:, 6] * b0 + L[:, 7] * b1 + L[:, 8] * b2 + 2 * L[:, 9] * b3,
            ])
            products = np.array([
                b0 * b0, b0 * b1, b1 * b1, b0 * b2, b1 * b2,
                b2 * b2, b0 * b3, b1 * b3, b2 * b3, b3 * b3,
            ])
            b = rho - L @ products
            try:
                betas = betas + qr_solve(A, b)
            except EPnPError:
                break
        return betas

    def _compute_r_and_t(self, ut, betas, alphas, pws, us):
        ccs = sum(betas[i] * ut[11 - i].reshape(4, 3) for i in range(4))
        pcs = alphas @ ccs
        if pcs[0, 2] < 0.0:
            pcs = -pcs

        pc0 = pcs.mean(axis=0)
        pw0 = pws.mean(axis=0)
        abt = (pcs - pc0).T @ (pws - pw0)
        U, _, Vt = np.linalg.svd(abt)
        R = U @ Vt
        if np.linalg.det(R) < 0:
            R[2] = -R[2]
        t = pc0 - R @ pw0
        return R, t, self._reprojection_error(R, t, pws, us)