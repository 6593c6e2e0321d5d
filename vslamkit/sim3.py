"""RANSAC estimation of the similarity transform between two camera views."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

# Chi-square value (2 degrees of freedom, 99%) used for the reprojection gate.
_CHI2_THRESHOLD = 9.210
_SAMPLE_SIZE = 3


@dataclass(frozen=True)
class Sim3Match:
    """A map point seen by both keyframes.

    ``point1`` and ``point2`` are the point's coordinates in the frames of
    camera 1 and camera 2; ``sigma2_1`` and ``sigma2_2`` are the squared
    scale sigmas of the keypoints observing it. ``index`` is the match's
    position in the list of candidate matches.
    """

    index: int
    point1: tuple[float, float, float]
    point2: tuple[float, float, float]
    sigma2_1: float = 1.0
    sigma2_2: float = 1.0


@dataclass(frozen=True, eq=False)
class Sim3Estimate:
    """A similarity transform mapping camera-2 coordinates to camera 1.

    ``t12`` is the 4x4 matrix ``[s*R | t]`` and ``t21`` its inverse.
    """

    rotation: np.ndarray
    translation: np.ndarray
    scale: float
    t12: np.ndarray
    t21: np.ndarray


@dataclass
class Sim3Result:
    """Outcome of a RANSAC run.

    ``transform`` is the 4x4 ``T12`` or ``None``; ``inliers`` holds one flag
    per candidate match; ``no_more`` is true once the iteration budget is
    spent or the problem cannot be solved.
    """

    transform: Optional[np.ndarray]
    inliers: list[bool] = field(default_factory=list)
    n_inliers: int = 0
    no_more: bool = False

    @property
    def found(self) -> bool:
        return self.transform is not None


def _rodrigues(rotvec: np.ndarray) -> np.ndarray:
    theta = float(np.linalg.norm(rotvec))
    if theta == 0.0 or not math.isfinite(theta):
        return np.eye(3)
    k = rotvec / theta
    kx = np.array([[0.0, -k[2], k[1]], [k[2], 0.0, -k[0]], [-k[1], k[0], 0.0]])
    c, s = math.cos(theta), math.sin(theta)
    return c * np.eye(3) + (1.0 - c) * np.outer(k, k) + s * kx


def _as_points(points, name) -> np.ndarray:
    arr = np.asarray(points, dtype=float)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"{name} must have shape (n, 3)")
    return arr


def compute_sim3(p1, p2, fix_scale=False) -> Sim3Estimate:
    """Closed-form similarity transform with ``p1 ~ s * R @ p2 + t``.

    ``p1`` and ``p2`` hold one point per row. Uses Horn's unit-quaternion
    method; with ``fix_scale`` the scale is held at 1.
    """
    p1 = _as_points(p1, "p1")
    p2 = _as_points(p2, "p2")
    if p1.shape != p2.shape or len(p1) == 0:
        raise ValueError("p1 and p2 must hold the same, non-zero number of points")

    o1 = p1.mean(axis=0)
    o2 = p2.mean(axis=0)
    pr1 = p1 - o1
    pr2 = p2 - o2

    m = pr2.T @ pr1
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

    _, eigvecs = np.linalg.eigh(n)
    quat = eigvecs[:, -1]
    vec = quat[1:]
    vec_norm = float(np.linalg.norm(vec))
    angle = math.atan2(vec_norm, float(quat[0]))
    rotvec = 2.0 * angle * vec / vec_norm if vec_norm > 0.0 else np.zeros(3)
    rotation = _rodrigues(rotvec)

    p3 = pr2 @ rotation.T
    if fix_scale:
        scale = 1.0
    else:
        with np.errstate(divide="ignore", invalid="ignore"):
            scale = float(np.sum(pr1 * p3) / np.sum(p3 * p3))

    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        translation = o1 - scale * (rotation @ o2)
        t12 = np.eye(4)
        t12[:3, :3] = scale * rotation
        t12[:3, 3] = translation
        s_r_inv = (1.0 / scale) * rotation.T
        t21 = np.eye(4)
        t21[:3, :3] = s_r_inv
        t21[:3, 3] = -s_r_inv @ translation

    return Sim3Estimate(rotation, translation, scale, t12, t21)


def camera_to_image(points, k) -> np.ndarray:
    """Project camera-frame points (one per row) with intrinsics ``k``."""
    pts = _as_points(points, "points")
    k = np.asarray(k, dtype=float)
    fx, fy, cx, cy = k[0, 0], k[1, 1], k[0, 2], k[1, 2]
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        inv_z = 1.0 / pts[:, 2]
        u = fx * pts[:, 0] * inv_z + cx
        v = fy * pts[:, 1] * inv_z + cy
    return np.column_stack([u, v])


def project(points, transform, k) -> np.ndarray:
    """Transform points by the 4x4 ``transform`` and project them with ``k``."""
    pts = _as_points(points, "points")
    t = np.asarray(transform, dtype=float)
    with np.errstate(invalid="ignore", over="ignore"):
        pc = pts @ t[:3, :3].T + t[:3, 3]
    return camera_to_image(pc, k)


class Sim3Solver:
    """Robust Sim(3) between two keyframes from matched map points."""

    def __init__(self, matches: Sequence[Sim3Match], n_matches, k1, k2, fix_scale=False, rng=None):
        self._matches = list(matches)
        self.n_matches = int(n_matches)
        for match in self._matches:
            if not 0 <= match.index < self.n_matches:
                raise ValueError(f"match index {match.index} outside 0..{self.n_matches - 1}")

        count = len(self._matches)
        self._points1 = np.array([m.point1 for m in self._matches], dtype=float).reshape(count, 3)
        self._points2 = np.array([m.point2 for m in self._matches], dtype=float).reshape(count, 3)
        self._max_error1 = _CHI2_THRESHOLD * np.array([m.sigma2_1 for m in self._matches], dtype=float)
        self._max_error2 = _CHI2_THRESHOLD * np.array([m.sigma2_2 for m in self._matches], dtype=float)
        self._indices = [m.index for m in self._matches]

        self.k1 = np.asarray(k1, dtype=float)
        self.k2 = np.asarray(k2, dtype=float)
        self.fix_scale = bool(fix_scale)
        self._rng = rng if rng is not None else random.Random()

        self._p1_im1 = camera_to_image(self._points1, self.k1)
        self._p2_im2 = camera_to_image(self._points2, self.k2)

        self._n_best_inliers = 0
        self._best: Optional[Sim3Estimate] = None
        self._best_inliers = np.zeros(count, dtype=bool)
        self._iterations = 0

        self.set_ransac_parameters()

    def __len__(self) -> int:
        return len(self._matches)

    def set_ransac_parameters(self, probability=0.99, min_inliers=6, max_iterations=300):
        """Set RANSAC parameters and reset the iteration count."""
        n = len(self._matches)
        self.probability = probability
        self.min_inliers = int(min_inliers)

        if self.min_inliers == n:
            n_iterations = 1
        else:
            n_iterations = self._iterations_needed(probability, n, int(max_iterations))
        self.max_iterations = max(1, min(n_iterations, int(max_iterations)))
        self._iterations = 0

    def _iterations_needed(self, probability, n, fallback):
        if n == 0:
            return 1
        epsilon = self.min_inliers / n
        outlier_free = 1.0 - epsilon ** 3
        if outlier_free <= 0.0:
            return 1
        if outlier_free >= 1.0 or probability >= 1.0:
            return fallback
        return math.ceil(math.log(1.0 - probability) / math.log(outlier_free))

    def find(self) -> Sim3Result:
        """Run RANSAC up to the configured maximum number of iterations."""
        return self.iterate(self.max_iterations)

    def iterate(self, n_iterations) -> Sim3Result:
        """Run at most ``n_iterations`` iterations within the overall budget.

        Returns as soon as a hypothesis has more inliers than the minimum.
        """
        flags = [False] * self.n_matches
        n = len(self._matches)
        if n < self.min_inliers or n < _SAMPLE_SIZE:
            return Sim3Result(None, flags, 0, True)

        current = 0
        while self._iterations < self.max_iterations and current < n_iterations:
            current += 1
            self._iterations += 1

            sample = self._draw_sample(n)
            estimate = compute_sim3(self._points1[sample], self._points2[sample], self.fix_scale)
            mask = self._check_inliers(estimate)
            n_inliers = int(mask.sum())

            if n_inliers >= self._n_best_inliers:
                self._best_inliers = mask
                self._n_best_inliers = n_inliers
                self._best = estimate

                if n_inliers > self.min_inliers:
                    for k in np.flatnonzero(mask):
                        flags[self._indices[k]] = True
                    return Sim3Result(estimate.t12.copy(), flags, n_inliers, False)

        no_more = self._iterations >= self.max_iterations
        return Sim3Result(None, flags, 0, no_more)

    def _draw_sample(self, n):
        available = list(range(n))
        chosen = []
        for _ in range(_SAMPLE_SIZE):
            pick = self._rng.randint(0, len(available) - 1)
            chosen.append(available[pick])
            available[pick] = available[-1]
            available.pop()
        return chosen

    def _check_inliers(self, estimate: Sim3Estimate) -> np.ndarray:
        p2_im1 = project(self._points2, estimate.t12, self.k1)
        p1_im2 = project(self._points1, estimate.t21, self.k2)
        with np.errstate(invalid="ignore", over="ignore"):
            err1 = np.sum((self._p1_im1 - p2_im1) ** 2, axis=1)
            err2 = np.sum((p1_im2 - self._p2_im2) ** 2, axis=1)
            return (err1 < self._max_error1) & (err2 < self._max_error2)

    def _require_best(self) -> Sim3Estimate:
        if self._best is None:
            raise RuntimeError("no transform has been estimated yet")
        return self._best

    def estimated_rotation(self) -> np.ndarray:
        """Rotation of the best hypothesis so far."""
        return self._require_best().rotation.copy()

    def estimated_translation(self) -> np.ndarray:
        """Offset vector t of the best hypothesis so far."""
        return self._require_best().translation.copy()

    def estimated_scale(self) -> float:
        """Scale of the best hypothesis so far."""
        return self._require_best().scale