"""Efficient Perspective-n-Point (EPnP) camera pose estimation."""

from __future__ import annotations

import math

import numpy as np

# Control point pairs, in the order used for the distance constraints.
_PAIRS = ((0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3))

# Columns of the 6x10 constraint matrix: (beta index p, beta index q, factor),
# so that column c multiplies beta_p * beta_q.
_TERMS = (
    (0, 0, 1.0),
    (0, 1, 2.0),
    (1, 1, 1.0),
    (0, 2, 2.0),
    (1, 2, 2.0),
    (2, 2, 1.0),
    (0, 3, 2.0),
    (1, 3, 2.0),
    (2, 3, 2.0),
    (3, 3, 1.0),
)

_GAUSS_NEWTON_ITERATIONS = 5


def qr_solve(a, b):
    """Solve ``a @ x = b`` in the least-squares sense with Householder QR.

    Raises ``numpy.linalg.LinAlgError`` when a column of ``a`` is all zero.
    """
    a = np.array(a, dtype=float, copy=True)
    b = np.array(b, dtype=float, copy=True).ravel()
    if a.ndim != 2:
        raise ValueError("a must be a two-dimensional matrix")
    nr, nc = a.shape
    if b.shape[0] != nr:
        raise ValueError("b must have one entry per row of a")
    if nc == 0 or nr < nc:
        raise ValueError("a must have at least as many rows as columns")

    a1 = np.zeros(nc)
    a2 = np.zeros(nc)
    for k in range(nc):
        eta = float(np.max(np.abs(a[k:, k])))
        if eta == 0.0:
            raise np.linalg.LinAlgError("matrix is singular")
        a[k:, k] /= eta
        sigma = math.sqrt(float(a[k:, k] @ a[k:, k]))
        if a[k, k] < 0:
            sigma = -sigma
        a[k, k] += sigma
        a1[k] = sigma * a[k, k]
        a2[k] = -eta * sigma
        for j in range(k + 1, nc):
            tau = float(a[k:, k] @ a[k:, j]) / a1[k]
            a[k:, j] -= tau * a[k:, k]

    # b <- Q^T b
    for j in range(nc):
        tau = float(a[j:, j] @ b[j:]) / a1[j]
        b[j:] -= tau * a[j:, j]

    # x = R^-1 b
    x = np.zeros(nc)
    x[nc - 1] = b[nc - 1] / a2[nc - 1]
    for i in range(nc - 2, -1, -1):
        x[i] = (b[i] - float(a[i, i + 1:] @ x[i + 1:])) / a2[i]
    return x


def mat_to_quat(rotation):
    """Convert a 3x3 rotation matrix to a quaternion ``(x, y, z, w)``."""
    r = np.asarray(rotation, dtype=float)
    if r.shape != (3, 3):
        raise ValueError("rotation must be a 3x3 matrix")
    tr = r[0, 0] + r[1, 1] + r[2, 2]
    if tr > 0.0:
        q = np.array([r[1, 2] - r[2, 1], r[2, 0] - r[0, 2], r[0, 1] - r[1, 0], tr + 1.0])
        n4 = q[3]
    elif r[0, 0] > r[1, 1] and r[0, 0] > r[2, 2]:
        q = np.array([
            1.0 + r[0, 0] - r[1, 1] - r[2, 2],
            r[1, 0] + r[0, 1],
            r[2, 0] + r[0, 2],
            r[1, 2] - r[2, 1],
        ])
        n4 = q[0]
    elif r[1, 1] > r[2, 2]:
        q = np.array([
            r[1, 0] + r[0, 1],
            1.0 + r[1, 1] - r[0, 0] - r[2, 2],
            r[2, 1] + r[1, 2],
            r[2, 0] - r[0, 2],
        ])
        n4 = q[1]
    else:
        q = np.array([
            r[2, 0] + r[0, 2],
            r[2, 1] + r[1, 2],
            1.0 + r[2, 2] - r[0, 0] - r[1, 1],
            r[0, 1] - r[1, 0],
        ])
        n4 = q[2]
    return q * (0.5 / math.sqrt(n4))


def relative_error(rotation_true, translation_true, rotation_est, translation_est):
    """Return ``(rotation_error, translation_error)`` between two poses."""
    q_true = mat_to_quat(rotation_true)
    q_est = mat_to_quat(rotation_est)
    q_norm = float(np.linalg.norm(q_true))
    rot_err = min(
        float(np.linalg.norm(q_true - q_est)) / q_norm,
        float(np.linalg.norm(q_true + q_est)) / q_norm,
    )
    t_true = np.asarray(translation_true, dtype=float).ravel()
    t_est = np.asarray(translation_est, dtype=float).ravel()
    transl_err = float(np.linalg.norm(t_true - t_est)) / float(np.linalg.norm(t_true))
    return rot_err, transl_err


def _as_points(points3d, points2d):
    pws = np.asarray(points3d, dtype=float)
    us = np.asarray(points2d, dtype=float)
    if pws.ndim != 2 or pws.shape[1] != 3:
        raise ValueError("points3d must have shape (n, 3)")
    if us.ndim != 2 or us.shape[1] != 2:
        raise ValueError("points2d must have shape (n, 2)")
    if pws.shape[0] != us.shape[0]:
        raise ValueError("points3d and points2d must have the same length")
    if pws.shape[0] == 0:
        raise ValueError("at least one correspondence is required")
    return pws, us


class EPnP:
    """Pose of a pinhole camera from 3D-2D correspondences."""

    def __init__(self, fu, fv, uc, vc):
        self.fu = float(fu)
        self.fv = float(fv)
        self.uc = float(uc)
        self.vc = float(vc)

    def compute_pose(self, points3d, points2d):
        """Estimate the pose; return ``(rotation, translation, error)``.

        ``rotation`` is 3x3, ``translation`` has three entries and ``error``
        is the mean reprojection error in pixels.
        """
        pws, us = _as_points(points3d, points2d)
        with np.errstate(divide="ignore", invalid="ignore"):
            cws = self._choose_control_points(pws)
            alphas = self._barycentric_coordinates(pws, cws)
            m = self._fill_m(alphas, us)
            mtm = m.T @ m
            u, _, _ = np.linalg.svd(mtm)
            ut = u.T

            l_6x10 = self._compute_l_6x10(ut)
            rho = np.array([np.sum((cws[i] - cws[j]) ** 2) for i, j in _PAIRS])

            candidates = []
            for approx in (self._betas_approx_1, self._betas_approx_2, self._betas_approx_3):
                betas = approx(l_6x10, rho)
                betas = self._gauss_newton(l_6x10, rho, betas)
                candidates.append(self._compute_r_and_t(ut, betas, alphas, pws, us))

        best = 0
        if candidates[1][2] < candidates[0][2]:
            best = 1
        if candidates[2][2] < candidates[best][2]:
            best = 2
        return candidates[best]

    def reprojection_error(self, rotation, translation, points3d, points2d):
        """Mean pixel distance between observed and reprojected points."""
        pws, us = _as_points(points3d, points2d)
        r = np.asarray(rotation, dtype=float)
        t = np.asarray(translation, dtype=float).ravel()
        pc = pws @ r.T + t
        inv_z = 1.0 / pc[:, 2]
        ue = self.uc + self.fu * pc[:, 0] * inv_z
        ve = self.vc + self.fv * pc[:, 1] * inv_z
        dist = np.sqrt((us[:, 0] - ue) ** 2 + (us[:, 1] - ve) ** 2)
        return float(np.sum(dist) / len(pws))

    @staticmethod
    def _choose_control_points(pws):
        n = len(pws)
        c0 = pws.sum(axis=0) / n
        pw0 = pws - c0
        u, dc, _ = np.linalg.svd(pw0.T @ pw0)
        uct = u.T
        cws = np.empty((4, 3))
        cws[0] = c0
        for i in range(1, 4):
            k = math.sqrt(dc[i - 1] / n)
            cws[i] = c0 + k * uct[i - 1]
        return cws

    @staticmethod
    def _barycentric_coordinates(pws, cws):
        cc = (cws[1:] - cws[0]).T
        cc_inv = np.linalg.pinv(cc)
        alphas = np.empty((len(pws), 4))
        alphas[:, 1:] = (pws - cws[0]) @ cc_inv.T
        alphas[:, 0] = 1.0 - alphas[:, 1:].sum(axis=1)
        return alphas

    def _fill_m(self, alphas, us):
        n = len(alphas)
        m = np.zeros((n, 2, 4, 3))
        m[:, 0, :, 0] = alphas * self.fu
        m[:, 0, :, 2] = alphas * (self.uc - us[:, 0])[:, None]
        m[:, 1, :, 1] = alphas * self.fv
        m[:, 1, :, 2] = alphas * (self.vc - us[:, 1])[:, None]
        return m.reshape(2 * n, 12)

    @staticmethod
    def _compute_l_6x10(ut):
        v = ut[[11, 10, 9, 8]].reshape(4, 4, 3)
        dv = np.stack([np.stack([v[i, a] - v[i, b] for a, b in _PAIRS]) for i in range(4)])
        l_6x10 = np.empty((6, 10))
        for col, (p, q, factor) in enumerate(_TERMS):
            l_6x10[:, col] = factor * np.sum(dv[p] * dv[q], axis=1)
        return l_6x10

    @staticmethod
    def _betas_approx_1(l_6x10, rho):
        b4 = np.linalg.lstsq(l_6x10[:, [0, 1, 3, 6]], rho, rcond=None)[0]
        if b4[0] < 0:
            b0 = np.sqrt(-b4[0])
            return np.array([b0, -b4[1] / b0, -b4[2] / b0, -b4[3] / b0])
        b0 = np.sqrt(b4[0])
        return np.array([b0, b4[1] / b0, b4[2] / b0, b4[3] / b0])

    @staticmethod
    def _betas_approx_2(l_6x10, rho):
        b3 = np.linalg.lstsq(l_6x10[:, [0, 1, 2]], rho, rcond=None)[0]
        if b3[0] < 0:
            b0 = np.sqrt(-b3[0])
            b1 = np.sqrt(-b3[2]) if b3[2] < 0 else 0.0
        else:
            b0 = np.sqrt(b3[0])
            b1 = np.sqrt(b3[2]) if b3[2] > 0 else 0.0
        if b3[1] < 0:
            b0 = -b0
        return np.array([b0, b1, 0.0, 0.0])

    @staticmethod
    def _betas_approx_3(l_6x10, rho):
        b5 = np.linalg.lstsq(l_6x10[:, [0, 1, 2, 3, 4]], rho, rcond=None)[0]
        if b5[0] < 0:
            b0 = np.sqrt(-b5[0])
            b1 = np.sqrt(-b5[2]) if b5[2] < 0 else 0.0
        else:
            b0 = np.sqrt(b5[0])
            b1 = np.sqrt(b5[2]) if b5[2] > 0 else 0.0
        if b5[1] < 0:
            b0 = -b0
        return np.array([b0, b1, b5[3] / b0, 0.0])

    @staticmethod
    def _gauss_newton(l_6x10, rho, betas):
        betas = np.array(betas, dtype=float)
        for _ in range(_GAUSS_NEWTON_ITERATIONS):
            a = np.zeros((6, 4))
            predicted = np.zeros(6)
            for col, (p, q, _) in enumerate(_TERMS):
                lc = l_6x10[:, col]
                predicted += lc * betas[p] * betas[q]
                if p == q:
                    a[:, p] += 2.0 * lc * betas[p]
                else:
                    a[:, p] += lc * betas[q]
                    a[:, q] += lc * betas[p]
            try:
                step = qr_solve(a, rho - predicted)
            except np.linalg.LinAlgError:
                break
            betas += step
        return betas

    def _compute_r_and_t(self, ut, betas, alphas, pws, us):
        ccs = np.zeros((4, 3))
        for i in range(4):
            ccs += betas[i] * ut[11 - i].reshape(4, 3)
        pcs = alphas @ ccs
        if pcs[0, 2] < 0.0:
            ccs = -ccs
            pcs = -pcs
        rotation, translation = self._estimate_r_and_t(pcs, pws)
        error = self.reprojection_error(rotation, translation, pws, us)
        return rotation, translation, error

    @staticmethod
    def _estimate_r_and_t(pcs, pws):
        n = len(pws)
        pc0 = pcs.sum(axis=0) / n
        pw0 = pws.sum(axis=0) / n
        abt = (pcs - pc0).T @ (pws - pw0)
        u, _, vt = np.linalg.svd(abt)
        rotation = u @ vt
        if np.linalg.det(rotation) < 0:
            rotation[2] = -rotation[2]
        translation = pc0 - rotation @ pw0
        return rotation, translation