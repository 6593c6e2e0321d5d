import math

import numpy as np
import pytest

from vslamkit.trajectory import (
    FramePose,
    KeyFramePose,
    Sensor,
    TrajectoryError,
    camera_poses,
    format_kitti_line,
    format_tum_line,
    invert_pose,
    resolve_keyframe_pose,
    rotation_to_quaternion,
    write_keyframe_tum,
    write_kitti,
    write_tum,
)


def rot_z(angle):
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def rot_x(angle):
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[1.0, 0.0, 0.0], [0.0, c, -s], [0.0, s, c]])


def make_pose(rotation, translation):
    pose = np.eye(4)
    pose[:3, :3] = rotation
    pose[:3, 3] = translation
    return pose


def quat_rotate(q, v):
    x, y, z, w = q
    u = np.array([x, y, z])
    return v + 2.0 * np.cross(u, np.cross(u, v) + w * v)


def test_invert_pose_round_trip():
    pose = make_pose(rot_z(0.3) @ rot_x(-0.7), [1.0, -2.0, 0.5])
    assert np.allclose(invert_pose(pose) @ pose, np.eye(4))
    assert np.allclose(invert_pose(invert_pose(pose)), pose)


def test_invert_pose_rejects_bad_shape():
    with pytest.raises(ValueError):
        invert_pose(np.eye(3))


def test_quaternion_of_identity():
    assert np.allclose(rotation_to_quaternion(np.eye(3)), [0.0, 0.0, 0.0, 1.0])


@pytest.mark.parametrize("angle", [0.1, 1.5, math.pi - 0.01, -2.9])
def test_quaternion_is_unit_and_rotates_like_matrix(angle):
    rotation = rot_z(angle) @ rot_x(angle / 2)
    q = rotation_to_quaternion(rotation)
    assert np.linalg.norm(q) == pytest.approx(1.0)
    v = np.array([0.3, -1.2, 2.0])
    assert np.allclose(quat_rotate(q, v), rotation @ v)


def test_format_tum_line_round_trip():
    rotation = rot_z(0.4)
    line = format_tum_line(12.25, rotation, [1.0, 2.0, -3.0], 9)
    fields = line.split()
    assert len(fields) == 8
    assert fields[0] == "12.250000"
    assert [float(f) for f in fields[1:4]] == pytest.approx([1.0, 2.0, -3.0])
    q = np.array([float(f) for f in fields[4:]])
    assert np.allclose(q, rotation_to_quaternion(rotation), atol=1e-8)
    assert len(fields[1].split(".")[1]) == 9


def test_format_kitti_line_round_trip():
    rotation = rot_x(1.1)
    line = format_kitti_line(rotation, [4.0, 5.0, 6.0])
    values = np.array([float(f) for f in line.split()]).reshape(3, 4)
    assert np.allclose(values[:, :3], rotation, atol=1e-8)
    assert np.allclose(values[:, 3], [4.0, 5.0, 6.0])


def test_resolve_good_keyframe_returns_its_pose():
    pose = make_pose(rot_z(0.2), [0.0, 1.0, 2.0])
    kf = KeyFramePose(id=0, timestamp=0.0, pose=pose)
    assert np.allclose(resolve_keyframe_pose(kf), pose)


def test_resolve_culled_keyframe_through_chain():
    root_pose = make_pose(rot_z(0.5), [1.0, 0.0, 0.0])
    root = KeyFramePose(id=0, timestamp=0.0, pose=root_pose)
    mid_pose = make_pose(rot_x(0.3), [0.0, 2.0, 0.0])
    mid = KeyFramePose(id=1, timestamp=1.0, pose=np.eye(4), bad=True, parent=root,
                       tcp=mid_pose @ invert_pose(root_pose))
    leaf_pose = make_pose(rot_z(-0.4), [0.0, 0.0, 3.0])
    leaf = KeyFramePose(id=2, timestamp=2.0, pose=np.eye(4), bad=True, parent=mid,
                        tcp=leaf_pose @ invert_pose(mid_pose))
    assert np.allclose(resolve_keyframe_pose(leaf), leaf_pose)


def test_resolve_culled_keyframe_without_parent_fails():
    kf = KeyFramePose(id=3, timestamp=0.0, pose=np.eye(4), bad=True)
    with pytest.raises(TrajectoryError):
        resolve_keyframe_pose(kf)


def test_camera_poses_put_first_keyframe_at_origin():
    first = KeyFramePose(id=0, timestamp=0.0, pose=make_pose(rot_z(0.7), [3.0, -1.0, 2.0]))
    frame = FramePose(relative_pose=np.eye(4), reference=first, timestamp=0.5)
    [(got_frame, tcw)] = list(camera_poses([frame], [first]))
    assert got_frame is frame
    assert np.allclose(tcw, np.eye(4))


def test_camera_poses_without_keyframes_fail():
    kf = KeyFramePose(id=0, timestamp=0.0, pose=np.eye(4))
    frame = FramePose(relative_pose=np.eye(4), reference=kf, timestamp=0.0)
    with pytest.raises(TrajectoryError):
        list(camera_poses([frame], []))


def _scene():
    kf0 = KeyFramePose(id=0, timestamp=0.0, pose=np.eye(4))
    kf1_pose = make_pose(rot_z(0.2), [-1.0, 0.0, 0.0])
    kf1 = KeyFramePose(id=1, timestamp=1.0, pose=kf1_pose)
    frames = [
        FramePose(np.eye(4), kf0, 0.0),
        FramePose(np.eye(4), kf1, 1.0),
        FramePose(np.eye(4), kf1, 2.0, lost=True),
    ]
    return frames, [kf1, kf0], kf1_pose


def test_write_tum_skips_lost_frames(tmp_path):
    frames, keyframes, kf1_pose = _scene()
    path = tmp_path / "traj.txt"
    assert write_tum(path, frames, keyframes, Sensor.STEREO) == 2
    rows = [line.split() for line in path.read_text().splitlines()]
    assert [float(r[0]) for r in rows] == [0.0, 1.0]
    center = invert_pose(kf1_pose)[:3, 3]
    assert [float(v) for v in rows[1][1:4]] == pytest.approx(list(center))


def test_write_tum_rejects_monocular(tmp_path):
    frames, keyframes, _ = _scene()
    with pytest.raises(TrajectoryError):
        write_tum(tmp_path / "t.txt", frames, keyframes, Sensor.MONOCULAR)


def test_write_kitti_includes_all_frames(tmp_path):
    frames, keyframes, kf1_pose = _scene()
    path = tmp_path / "kitti.txt"
    assert write_kitti(path, frames, keyframes, Sensor.RGBD) == 3
    rows = [np.array([float(v) for v in line.split()]).reshape(3, 4)
            for line in path.read_text().splitlines()]
    assert np.allclose(rows[0][:, :3], np.eye(3))
    assert np.allclose(rows[1], invert_pose(kf1_pose)[:3, :], atol=1e-8)


def test_write_kitti_rejects_monocular(tmp_path):
    frames, keyframes, _ = _scene()
    with pytest.raises(TrajectoryError):
        write_kitti(tmp_path / "k.txt", frames, keyframes, Sensor.MONOCULAR)


def test_write_keyframe_tum_sorted_and_skips_bad(tmp_path):
    kf0 = KeyFramePose(id=0, timestamp=0.5, pose=np.eye(4))
    bad = KeyFramePose(id=1, timestamp=1.5, pose=np.eye(4), bad=True, parent=kf0, tcp=np.eye(4))
    pose2 = make_pose(rot_x(0.3), [0.0, 1.0, 4.0])
    kf2 = KeyFramePose(id=2, timestamp=2.5, pose=pose2)
    path = tmp_path / "kf.txt"
    assert write_keyframe_tum(path, [kf2, bad, kf0]) == 2
    rows = [line.split() for line in path.read_text().splitlines()]
    assert [float(r[0]) for r in rows] == [0.5, 2.5]
    assert len(rows[1][1].split(".")[1]) == 7
    center = invert_pose(pose2)[:3, 3]
    assert [float(v) for v in rows[1][1:4]] == pytest.approx(list(center), abs=1e-6)