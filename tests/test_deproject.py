import numpy as np
import pytest

from rgbdfuse.modules.deproject import deproject

from conftest import make_K


@pytest.fixture
def plane():
    K = make_K(2.0, 2.0, 2.0, 2.0)
    depth = np.full((5, 5), 5000, np.uint16)  # 1 m
    rgb = np.zeros((5, 5, 3), np.uint8)
    rgb[..., 0] = 255
    rgb[..., 2] = np.arange(5, dtype=np.uint8)[None, :] * 50
    return K, rgb, depth


def test_fronto_parallel_plane(plane):
    K, rgb, depth = plane

    cloud = deproject(rgb, depth, K, depth_scale=5000.0)

    # borders have no central-difference neighbours
    assert len(cloud) == 9
    np.testing.assert_allclose(cloud.points[:, 2], 1.0)
    np.testing.assert_allclose(cloud.normals, np.tile([0.0, 0.0, -1.0], (9, 1)), atol=1e-12)
    # row-major: first valid pixel is (u=1, v=1)
    np.testing.assert_allclose(cloud.points[0], [-0.5, -0.5, 1.0])
    np.testing.assert_allclose(cloud.colors[0], [1.0, 0.0, 50 / 255])


def test_missing_depth_removes_pixel_and_its_neighbours(plane):
    K, rgb, depth = plane
    depth[2, 2] = 0

    cloud = deproject(rgb, depth, K, depth_scale=5000.0)

    assert len(cloud) == 4
    assert np.all(np.isfinite(cloud.points))


def test_depth_range_and_jump_filters(plane):
    K, rgb, depth = plane
    depth[1, 1] = 10000  # 2 m

    assert len(deproject(rgb, depth, K, depth_scale=5000.0, max_depth=1.5)) == 6
    assert len(deproject(rgb, depth, K, depth_scale=5000.0, max_depth_jump=0.1)) == 6


def test_normals_face_the_camera_on_a_slanted_plane():
    K = make_K(4.0, 4.0, 3.0, 3.0)
    us = np.arange(7, dtype=np.float64)
    z = 1.0 + 0.1 * us  # recedes to the right
    depth = np.tile(np.rint(z * 5000).astype(np.uint16), (7, 1))
    rgb = np.zeros((7, 7, 3), np.uint8)

    cloud = deproject(rgb, depth, K, depth_scale=5000.0)

    assert len(cloud) == 25
    assert np.all(np.einsum("ij,ij->i", cloud.normals, cloud.points) < 0.0)
    np.testing.assert_allclose(np.linalg.norm(cloud.normals, axis=1), 1.0)


def test_size_mismatch_raises(plane):
    K, rgb, depth = plane
    with pytest.raises(ValueError):
        deproject(rgb[:4], depth, K)
