import numpy as np
import pytest

from rgbdfuse.modules.index_map import EMPTY, project_to_index_map

from conftest import cloud_at_pixels


def test_points_land_on_their_pixels(tiny_K):
    cloud = cloud_at_pixels(tiny_K, [(0, 0), (3, 1), (2, 3)], [1.0, 2.0, 0.5])

    m = project_to_index_map(cloud.points, tiny_K, 4, 4)

    assert m.shape == (4, 4)
    assert m[0, 0] == 0
    assert m[1, 3] == 1
    assert m[3, 2] == 2
    assert np.sum(m != EMPTY) == 3


def test_nearest_point_wins_and_ties_go_to_lower_index(tiny_K):
    cloud = cloud_at_pixels(tiny_K, [(1, 1), (1, 1), (2, 2), (2, 2)], [2.0, 1.0, 1.5, 1.5])

    m = project_to_index_map(cloud.points, tiny_K, 4, 4)

    assert m[1, 1] == 1
    assert m[2, 2] == 2


def test_points_behind_camera_or_outside_are_dropped(tiny_K):
    pts = np.array([
        [0.0, 0.0, -1.0],   # behind
        [10.0, 0.0, 1.0],   # far right
        [0.0, 0.0, 0.0],    # on the camera center
        [np.nan, 0.0, 1.0],
    ])

    m = project_to_index_map(pts, tiny_K, 4, 4)

    assert np.all(m == EMPTY)


def test_empty_input_and_bad_size(tiny_K):
    assert np.all(project_to_index_map(np.zeros((0, 3)), tiny_K, 3, 2) == EMPTY)
    with pytest.raises(ValueError):
        project_to_index_map(np.zeros((0, 3)), tiny_K, 0, 2)
