import numpy as np
import pytest

from rgbdfuse.system.model import PointModel
from rgbdfuse.system.state import PointCloud, RgbdSample

DEPTH_SCALE = 5000.0


def make_K(fx, fy, cx, cy):
    return np.array([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]], dtype=np.float64)


def cloud_at_pixels(K, pixels, depths, colors=None):
    """Points that project exactly onto the given (u, v) pixels at the given depths, facing the camera."""
    pixels = np.asarray(pixels, dtype=np.float64)
    z = np.asarray(depths, dtype=np.float64)
    x = (pixels[:, 0] - K[0, 2]) * z / K[0, 0]
    y = (pixels[:, 1] - K[1, 2]) * z / K[1, 1]
    P = np.stack([x, y, z], axis=1)
    N = np.tile([0.0, 0.0, -1.0], (len(z), 1))
    C = np.full((len(z), 3), 0.5) if colors is None else np.asarray(colors, dtype=np.float64)
    return PointCloud(P, N, C)


def model_from(cloud):
    m = PointModel()
    m.append_cloud(cloud)
    return m


def render_box_corner(K, width, height, origin):
    """
    Ray-cast a depth image of three orthogonal planes (back wall z=2, left wall
    x=-0.6, floor y=0.6) seen from a camera at `origin` with identity rotation.
    """
    o = np.asarray(origin, dtype=np.float64)
    us, vs = np.meshgrid(np.arange(width, dtype=np.float64), np.arange(height, dtype=np.float64))
    dx = (us - K[0, 2]) / K[0, 0]
    dy = (vs - K[1, 2]) / K[1, 1]

    t = np.full(dx.shape, (2.0 - o[2]))
    with np.errstate(divide="ignore", invalid="ignore"):
        tx = np.where(dx < 0.0, (-0.6 - o[0]) / dx, np.inf)
        ty = np.where(dy > 0.0, (0.6 - o[1]) / dy, np.inf)
    t = np.minimum(t, np.where(tx > 0.0, tx, np.inf))
    t = np.minimum(t, np.where(ty > 0.0, ty, np.inf))
    return np.rint(t * DEPTH_SCALE).astype(np.uint16)


@pytest.fixture
def tiny_K():
    # 4x4 sensor
    return make_K(2.0, 2.0, 1.5, 1.5)


@pytest.fixture
def scene_camera():
    return make_K(60.0, 60.0, 39.5, 29.5), 80, 60


@pytest.fixture
def scene_samples(scene_camera):
    K, w, h = scene_camera

    def _make(origins):
        out = []
        for i, o in enumerate(origins):
            depth = render_box_corner(K, w, h, o)
            rgb = np.zeros((h, w, 3), np.uint8)
            rgb[..., 0] = 200
            rgb[..., 1] = np.linspace(0, 255, w, dtype=np.uint8)[None, :]
            out.append(RgbdSample(idx=i, ts=float(i) / 30.0, rgb=rgb, depth=depth))
        return out

    return _make
