import numpy as np
import pytest

from rgbdfuse.geom.se3 import R_to_quat_xyzw, Rt_to_T, check_T, exp_se3, exp_so3, inv_T, transform_points


def test_inverse_composes_to_identity():
    R = exp_so3(np.array([0.1, -0.2, 0.3]))
    T = Rt_to_T(R, np.array([0.5, -1.0, 2.0]))
    np.testing.assert_allclose(T @ inv_T(T), np.eye(4), atol=1e-12)


def test_exp_so3_is_a_rotation():
    R = exp_so3(np.array([0.4, 0.0, -0.7]))
    np.testing.assert_allclose(R @ R.T, np.eye(3), atol=1e-12)
    assert np.linalg.det(R) == pytest.approx(1.0)


def test_exp_se3_quarter_turn():
    T = exp_se3(np.array([0.0, 0.0, np.pi / 2, 1.0, 0.0, 0.0]))
    np.testing.assert_allclose(transform_points(T, np.array([[1.0, 0.0, 0.0]])), [[1.0, 1.0, 0.0]], atol=1e-12)


def test_quaternion_of_half_turn_about_z():
    q = R_to_quat_xyzw(np.diag([-1.0, -1.0, 1.0]))
    np.testing.assert_allclose(np.abs(q), [0.0, 0.0, 1.0, 0.0], atol=1e-12)


def test_check_T_rejects_bad_shape():
    with pytest.raises(ValueError):
        check_T(np.eye(3))
