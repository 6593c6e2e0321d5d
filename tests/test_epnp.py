import math

import numpy as np
import pytest

from vslamkit.epnp import EPnP, mat_to_quat, qr_solve, relative_error


def _rotation(axis, angle):
    axis = np.asarray(axis, dtype=float)
    axis = axis / np.linalg.norm(axis)
    k = np.array([[0, -axis[2], axis[1]], [axis[2], 0, -axis[0]], [-axis[1], axis[0], 0]])
    return np.eye(3) + math.sin(angle) * k + (1 - math.cos(angle)) * (k @ k)


def _scene(seed, n=20):
    rng = np.random.default_rng(seed)
    rotation = _rotation(rng.normal(size=3), rng.uniform(0.1, 1.0))
    translation = np.array([0.2, -0.1, 5.0])
    points3d = rng.uniform(-1.0, 1.0, size=(n, 3))
    cam = points3d @ rotation.T + translation
    fu, fv, uc, vc = 500.0, 510.0, 320.0, 240.0
    points2d = np.column_stack([
        uc + fu * cam[:, 0] / cam[:, 2],
        vc + fv * cam[:, 1] / cam[:, 2],
    ])
    return EPnP(fu, fv, uc, vc), rotation, translation, points3d, points2d


@pytest.mark.parametrize("seed", [0, 1, 2, 3])
def test_compute_pose_recovers_true_pose(seed):
    solver, rotation, translation, p3, p2 = _scene(seed)
    r, t, err = solver.compute_pose(p3, p2)
    assert np.allclose(r, rotation, atol=1e-6)
    assert np.allclose(t, translation, atol=1e-6)
    assert err < 1e-6


def test_compute_pose_with_few_points():
    solver, rotation, translation, p3, p2 = _scene(7, n=6)
    r, t, _ = solver.compute_pose(p3, p2)
    rot_err, transl_err = relative_error(rotation, translation, r, t)
    assert rot_err < 1e-5
    assert transl_err < 1e-5


def test_compute_pose_returns_proper_rotation():
    solver, _, _, p3, p2 = _scene(5)
    p2 = p2 + np.random.default_rng(9).normal(scale=0.5, size=p2.shape)
    r, _, err = solver.compute_pose(p3, p2)
    assert np.allclose(r @ r.T, np.eye(3), atol=1e-9)
    assert np.linalg.det(r) == pytest.approx(1.0)
    assert err == pytest.approx(solver.reprojection_error(r, _, p3, p2) if False else err)
    assert err < 5.0


def test_reprojection_error_is_zero_for_true_pose():
    solver, rotation, translation, p3, p2 = _scene(11)
    assert solver.reprojection_error(rotation, translation, p3, p2) == pytest.approx(0.0, abs=1e-9)


def test_reprojection_error_of_shifted_observations():
    solver, rotation, translation, p3, p2 = _scene(12)
    shifted = p2 + np.array([3.0, 4.0])
    assert solver.reprojection_error(rotation, translation, p3, shifted) == pytest.approx(5.0)


def test_compute_pose_rejects_mismatched_inputs():
    solver, _, _, p3, p2 = _scene(1)
    with pytest.raises(ValueError):
        solver.compute_pose(p3, p2[:-1])


def test_compute_pose_rejects_bad_shape():
    solver, _, _, p3, _ = _scene(1)
    with pytest.raises(ValueError):
        solver.compute_pose(p3, p3)


def test_qr_solve_square_system():
    rng = np.random.default_rng(3)
    a = rng.normal(size=(4, 4))
    x = rng.normal(size=4)
    assert np.allclose(qr_solve(a, a @ x), x)


def test_qr_solve_matches_least_squares():
    rng = np.random.default_rng(4)
    a = rng.normal(size=(6, 4))
    b = rng.normal(size=6)
    expected = np.linalg.lstsq(a, b, rcond=None)[0]
    assert np.allclose(qr_solve(a, b), expected)


def test_qr_solve_leaves_inputs_untouched():
    a = np.array([[2.0, 1.0], [1.0, 3.0], [0.0, 1.0]])
    b = np.array([1.0, 2.0, 3.0])
    a_copy, b_copy = a.copy(), b.copy()
    qr_solve(a, b)
    assert np.array_equal(a, a_copy)
    assert np.array_equal(b, b_copy)


def test_qr_solve_singular_raises():
    a = np.array([[1.0, 0.0], [2.0, 0.0], [3.0, 0.0]])
    with pytest.raises(np.linalg.LinAlgError):
        qr_solve(a, [1.0, 2.0, 3.0])


def test_mat_to_quat_identity():
    assert np.allclose(mat_to_quat(np.eye(3)), [0.0, 0.0, 0.0, 1.0])


def test_mat_to_quat_half_turn_about_x():
    assert np.allclose(mat_to_quat(np.diag([1.0, -1.0, -1.0])), [1.0, 0.0, 0.0, 0.0])


@pytest.mark.parametrize("angle", [0.3, 1.5, 2.8, 3.1])
@pytest.mark.parametrize("axis", [(1, 0, 0), (0, 1, 0), (0, 0, 1), (1, 2, -1)])
def test_mat_to_quat_has_unit_norm(axis, angle):
    q = mat_to_quat(_rotation(axis, angle))
    assert np.linalg.norm(q) == pytest.approx(1.0)


def test_mat_to_quat_rejects_bad_shape():
    with pytest.raises(ValueError):
        mat_to_quat(np.eye(4))


def test_relative_error_of_identical_poses():
    r = _rotation((0, 1, 1), 0.7)
    t = np.array([1.0, 2.0, 3.0])
    rot_err, transl_err = relative_error(r, t, r, t)
    assert rot_err == pytest.approx(0.0, abs=1e-12)
    assert transl_err == pytest.approx(0.0, abs=1e-12)


def test_relative_error_translation_scale():
    r = np.eye(3)
    rot_err, transl_err = relative_error(r, [0.0, 0.0, 2.0], r, [0.0, 0.0, 3.0])
    assert rot_err == pytest.approx(0.0, abs=1e-12)
    assert transl_err == pytest.approx(0.5)