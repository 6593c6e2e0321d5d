"""RANSAC camera pose estimation from 3D-2D matches, built on EPnP."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from vslamkit.epnp import EPnP


@dataclass(frozen=True)
class Correspondence:
    """A 3D world point matched to a 2D keypoint.

    ``index`` is the keypoint's position in the frame's match list and
    ``sigma2`` the squared scale sigma of the keypoint's pyramid level.
    """

    index: int
    point3d: tuple[float, float, float]
    point2d: tuple[float, float]
    sigma2: float = 1.0


@dataclass
class PnPResult:
    """Outcome of a RANSAC run.

    ``pose`` is a 4x4 float32 world-to-camera transform, or ``None`` when no
    pose was found. ``inliers`` has one flag per original match (empty when
    no pose was found). ``no_more`` is true once the iteration budget is
    spent or the problem cannot be solved.
    """

    pose: Optional[np.ndarray]
    inliers: list[bool] = field(default_factory=list)
    n_inliers: int = 0
    no_more: bool = False

    @property
    def found(self) -> bool:
        return self.pose is not None


def _pose_matrix(rotation, translation) -> np.ndarray:
    pose = np.eye(4, dtype=np.float32)
    pose[:3, :3] = np.asarray(rotation, dtype=np.float32)
    pose[:3, 3] = np.asarray(translation, dtype=np.float32).ravel()
    return pose


class PnPSolver:
    """Robust camera pose from 3D-2D correspondences with P4P RANSAC."""

    def __init__(self, correspondences: Sequence[Correspondence], n_matches, fx, fy, cx, cy, rng=None):
        self._correspondences = list(correspondences)
        self.n_matches = int(n_matches)
        for corr in self._correspondences:
            if not 0 <= corr.index < self.n_matches:
                raise ValueError(f"correspondence index {corr.index} outside 0..{self.n_matches - 1}")

        count = len(self._correspondences)
        self._points3d = np.array([c.point3d for c in self._correspondences], dtype=float).reshape(count, 3)
        self._points2d = np.array([c.point2d for c in self._correspondences], dtype=float).reshape(count, 2)
        self._sigma2 = np.array([c.sigma2 for c in self._correspondences], dtype=float)
        self._indices = [c.index for c in self._correspondences]

        self._epnp = EPnP(fx, fy, cx, cy)
        self._rng = rng if rng is not None else random.Random()

        self._iterations = 0
        self._best_inliers = np.zeros(count, dtype=bool)
        self._n_best_inliers = 0
        self._best_pose: Optional[np.ndarray] = None

        self.set_ransac_parameters()

    def __len__(self) -> int:
        return len(self._correspondences)

    def set_ransac_parameters(self, probability=0.99, min_inliers=8, max_iterations=300, min_set=4,
                              epsilon=0.4, th2=5.991):
        """Set RANSAC parameters, adjusted to the number of correspondences."""
        n = len(self._correspondences)
        self.probability = probability
        self.min_set = int(min_set)

        n_min_inliers = max(int(n * epsilon), int(min_inliers), self.min_set)
        self.min_inliers = n_min_inliers

        if n and epsilon < n_min_inliers / n:
            epsilon = n_min_inliers / n
        self.epsilon = epsilon

        if n_min_inliers == n:
            n_iterations = 1
        else:
            n_iterations = self._iterations_needed(probability, epsilon, int(max_iterations))
        self.max_iterations = max(1, min(n_iterations, int(max_iterations)))

        self.max_errors = self._sigma2 * th2

    @staticmethod
    def _iterations_needed(probability, epsilon, fallback):
        outlier_free = 1.0 - epsilon ** 3
        if outlier_free <= 0.0:
            return 1
        if outlier_free >= 1.0 or probability >= 1.0:
            return fallback
        return math.ceil(math.log(1.0 - probability) / math.log(outlier_free))

    def find(self) -> PnPResult:
        """Run RANSAC up to the configured maximum number of iterations."""
        return self.iterate(self.max_iterations)

    def iterate(self, n_iterations) -> PnPResult:
        """Run RANSAC iterations and return the first refined pose found.

        Iterations continue while the total count is below the maximum or
        fewer than ``n_iterations`` have run in this call.
        """
        n = len(self._correspondences)
        if n < self.min_inliers:
            return PnPResult(None, [], 0, True)

        current = 0
        while self._iterations < self.max_iterations or current < n_iterations:
            current += 1
            self._iterations += 1

            sample = self._draw_sample(n)
            estimate = self._estimate(sample)
            if estimate is None:
                continue
            rotation, translation, mask = estimate
            n_inliers = int(mask.sum())

            if n_inliers >= self.min_inliers:
                if n_inliers > self._n_best_inliers:
                    self._best_inliers = mask
                    self._n_best_inliers = n_inliers
                    self._best_pose = _pose_matrix(rotation, translation)

                refined = self._refine()
                if refined is not None:
                    pose, refined_mask = refined
                    return PnPResult(pose, self._map_inliers(refined_mask), int(refined_mask.sum()), False)

        no_more = False
        if self._iterations >= self.max_iterations:
            no_more = True
            if self._n_best_inliers >= self.min_inliers and self._best_pose is not None:
                return PnPResult(self._best_pose.copy(), self._map_inliers(self._best_inliers),
                                 self._n_best_inliers, True)
        return PnPResult(None, [], 0, no_more)

    def _draw_sample(self, n):
        available = list(range(n))
        chosen = []
        for _ in range(self.min_set):
            pick = self._rng.randint(0, len(available) - 1)
            chosen.append(available[pick])
            available[pick] = available[-1]
            available.pop()
        return chosen

    def _estimate(self, indices):
        try:
            rotation, translation, _ = self._epnp.compute_pose(self._points3d[indices], self._points2d[indices])
        except (np.linalg.LinAlgError, ValueError):
            return None
        return rotation, translation, self._check_inliers(rotation, translation)

    def _check_inliers(self, rotation, translation):
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            pc = self._points3d @ np.asarray(rotation, dtype=float).T + np.asarray(translation, dtype=float).ravel()
            inv_z = 1.0 / pc[:, 2]
            ue = self._epnp.uc + self._epnp.fu * pc[:, 0] * inv_z
            ve = self._epnp.vc + self._epnp.fv * pc[:, 1] * inv_z
            err2 = (self._points2d[:, 0] - ue) ** 2 + (self._points2d[:, 1] - ve) ** 2
            return err2 < self.max_errors

    def _refine(self):
        indices = np.flatnonzero(self._best_inliers)
        if len(indices) == 0:
            return None
        estimate = self._estimate(indices)
        if estimate is None:
            return None
        rotation, translation, mask = estimate
        if int(mask.sum()) > self.min_inliers:
            return _pose_matrix(rotation, translation), mask
        return None

    def _map_inliers(self, mask):
        flags = [False] * self.n_matches
        for k in np.flatnonzero(mask):
            flags[self._indices[k]] = True
        return flags