"""Saving estimated camera and keyframe trajectories in TUM and KITTI formats."""

from __future__ import annotations

import enum
import math
import os
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Sequence, Union

import numpy as np

PathLike = Union[str, "os.PathLike[str]"]

_TIMESTAMP_PRECISION = 6
_FRAME_PRECISION = 9
_KEYFRAME_PRECISION = 7
_KITTI_PRECISION = 9


class Sensor(enum.Enum):
    """Kind of camera input the trajectory was estimated from."""

    MONOCULAR = 0
    STEREO = 1
    RGBD = 2


class TrajectoryError(Exception):
    """Raised when a trajectory cannot be built or saved."""


@dataclass(eq=False)
class KeyFramePose:
    """A keyframe with its world-to-camera pose.

    A keyframe marked ``bad`` has been culled; its pose is then given by
    ``tcp`` (the pose relative to ``parent``) composed with the parent's.
    """

    id: int
    timestamp: float
    pose: np.ndarray
    bad: bool = False
    parent: Optional["KeyFramePose"] = None
    tcp: Optional[np.ndarray] = None


@dataclass(eq=False)
class FramePose:
    """A tracked frame stored relative to its reference keyframe."""

    relative_pose: np.ndarray
    reference: KeyFramePose
    timestamp: float
    lost: bool = False


def _as_pose(matrix) -> np.ndarray:
    pose = np.asarray(matrix, dtype=float)
    if pose.shape != (4, 4):
        raise ValueError("a pose must be a 4x4 matrix")
    return pose


def invert_pose(tcw) -> np.ndarray:
    """Inverse of a rigid 4x4 transform ``[R | t]``."""
    pose = _as_pose(tcw)
    rotation = pose[:3, :3]
    inverse = np.eye(4)
    inverse[:3, :3] = rotation.T
    inverse[:3, 3] = -rotation.T @ pose[:3, 3]
    return inverse


def rotation_to_quaternion(rotation) -> np.ndarray:
    """Unit quaternion ``(x, y, z, w)`` of a 3x3 rotation matrix."""
    m = np.asarray(rotation, dtype=float)
    if m.shape != (3, 3):
        raise ValueError("rotation must be a 3x3 matrix")
    q = np.zeros(4)
    trace = m[0, 0] + m[1, 1] + m[2, 2]
    if trace > 0.0:
        t = math.sqrt(trace + 1.0)
        q[3] = 0.5 * t
        t = 0.5 / t
        q[0] = (m[2, 1] - m[1, 2]) * t
        q[1] = (m[0, 2] - m[2, 0]) * t
        q[2] = (m[1, 0] - m[0, 1]) * t
        return q
    i = 0
    if m[1, 1] > m[0, 0]:
        i = 1
    if m[2, 2] > m[i, i]:
        i = 2
    j = (i + 1) % 3
    k = (j + 1) % 3
    t = math.sqrt(m[i, i] - m[j, j] - m[k, k] + 1.0)
    q[i] = 0.5 * t
    t = 0.5 / t
    q[3] = (m[k, j] - m[j, k]) * t
    q[j] = (m[j, i] + m[i, j]) * t
    q[k] = (m[k, i] + m[i, k]) * t
    return q


def format_tum_line(timestamp, rwc, twc, precision=_FRAME_PRECISION) -> str:
    """One TUM line: ``timestamp tx ty tz qx qy qz qw``."""
    translation = np.asarray(twc, dtype=float).ravel()
    if translation.shape != (3,):
        raise ValueError("twc must have three entries")
    quat = rotation_to_quaternion(rwc)
    values = " ".join(f"{float(v):.{precision}f}" for v in (*translation, *quat))
    return f"{float(timestamp):.{_TIMESTAMP_PRECISION}f} {values}"


def format_kitti_line(rwc, twc) -> str:
    """One KITTI line: the 3x4 matrix ``[Rwc | twc]`` in row-major order."""
    rotation = np.asarray(rwc, dtype=float)
    translation = np.asarray(twc, dtype=float).ravel()
    if rotation.shape != (3, 3) or translation.shape != (3,):
        raise ValueError("rwc must be 3x3 and twc must have three entries")
    matrix = np.column_stack([rotation, translation])
    return " ".join(f"{float(v):.{_KITTI_PRECISION}f}" for v in matrix.ravel())


def resolve_keyframe_pose(keyframe: KeyFramePose) -> np.ndarray:
    """World-to-camera pose of a keyframe, walking up the tree past culled ones."""
    trw = np.eye(4)
    current = keyframe
    while current.bad:
        if current.parent is None or current.tcp is None:
            raise TrajectoryError(f"culled keyframe {current.id} has no parent to fall back on")
        trw = trw @ _as_pose(current.tcp)
        current = current.parent
    return trw @ _as_pose(current.pose)


def _sorted_keyframes(keyframes: Iterable[KeyFramePose]) -> list[KeyFramePose]:
    return sorted(keyframes, key=lambda kf: kf.id)


def camera_poses(frames: Iterable[FramePose], keyframes: Sequence[KeyFramePose]
                 ) -> Iterator[tuple[FramePose, np.ndarray]]:
    """Yield ``(frame, Tcw)`` with the first keyframe placed at the origin."""
    ordered = _sorted_keyframes(keyframes)
    if not ordered:
        raise TrajectoryError("the map holds no keyframes")
    two = invert_pose(ordered[0].pose)
    for frame in frames:
        trw = resolve_keyframe_pose(frame.reference) @ two
        yield frame, _as_pose(frame.relative_pose) @ trw


def _world_from_camera(tcw: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    rwc = tcw[:3, :3].T
    twc = -rwc @ tcw[:3, 3]
    return rwc, twc


def _check_not_monocular(sensor: Sensor, what: str) -> None:
    if Sensor(sensor) is Sensor.MONOCULAR:
        raise TrajectoryError(f"{what} cannot be used for monocular")


def write_tum(path: PathLike, frames, keyframes, sensor) -> int:
    """Write every tracked frame in TUM format; return the number of lines."""
    _check_not_monocular(sensor, "the TUM camera trajectory")
    lines = []
    for frame, tcw in camera_poses(frames, keyframes):
        if frame.lost:
            continue
        rwc, twc = _world_from_camera(tcw)
        lines.append(format_tum_line(frame.timestamp, rwc, twc, _FRAME_PRECISION))
    with open(path, "w", encoding="utf-8") as out:
        out.writelines(line + "\n" for line in lines)
    return len(lines)


def write_kitti(path: PathLike, frames, keyframes, sensor) -> int:
    """Write every frame in KITTI format; return the number of lines."""
    _check_not_monocular(sensor, "the KITTI camera trajectory")
    lines = [format_kitti_line(*_world_from_camera(tcw)) for _, tcw in camera_poses(frames, keyframes)]
    with open(path, "w", encoding="utf-8") as out:
        out.writelines(line + "\n" for line in lines)
    return len(lines)


def write_keyframe_tum(path: PathLike, keyframes) -> int:
    """Write the poses of the keyframes still in the map, in TUM format."""
    lines = []
    for keyframe in _sorted_keyframes(keyframes):
        if keyframe.bad:
            continue
        pose = _as_pose(keyframe.pose)
        rwc, center = _world_from_camera(pose)
        lines.append(format_tum_line(keyframe.timestamp, rwc, center, _KEYFRAME_PRECISION))
    with open(path, "w", encoding="utf-8") as out:
        out.writelines(line + "\n" for line in lines)
    return len(lines)