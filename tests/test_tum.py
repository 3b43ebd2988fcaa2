import cv2
import numpy as np
import pytest

from rgbdfuse.dataset.tum import TumEntry, TumRgbdSequence, associate


def test_associate_pairs_nearest_within_tolerance():
    rgb = [TumEntry(1.00, "r0"), TumEntry(1.033, "r1"), TumEntry(2.0, "r2")]
    depth = [TumEntry(1.005, "d0"), TumEntry(1.030, "d1"), TumEntry(1.5, "d2")]

    pairs = associate(rgb, depth, max_dt=0.02)

    assert [(p.rgb_path, p.depth_path) for p in pairs] == [("r0", "d0"), ("r1", "d1")]


def _write_seq(root, n=2):
    (root / "rgb").mkdir()
    (root / "depth").mkdir()
    rgb_lines = ["# color images", "# file: 'x.bag'", "# timestamp filename"]
    depth_lines = ["# depth maps"]
    for i in range(n):
        ts = 100.0 + i / 30.0
        bgr = np.zeros((4, 5, 3), np.uint8)
        bgr[..., 0] = 10 + i  # blue
        bgr[..., 2] = 200     # red
        depth = np.full((4, 5), 5000 + i, np.uint16)
        cv2.imwrite(str(root / "rgb" / f"{ts:.6f}.png"), bgr)
        cv2.imwrite(str(root / "depth" / f"{ts + 0.004:.6f}.png"), depth)
        rgb_lines.append(f"{ts:.6f} rgb/{ts:.6f}.png")
        depth_lines.append(f"{ts + 0.004:.6f} depth/{ts + 0.004:.6f}.png")
    (root / "rgb.txt").write_text("\n".join(rgb_lines) + "\n")
    (root / "depth.txt").write_text("\n".join(depth_lines) + "\n")


def test_sequence_yields_rgb_order_and_raw_depth(tmp_path):
    _write_seq(tmp_path, n=3)
    seq = TumRgbdSequence(str(tmp_path))
    assert len(seq) == 3

    samples = list(seq.iter_rgbd(start=1, step=1, max_frames=5))

    assert [s.idx for s in samples] == [0, 1]
    s = samples[0]
    assert s.rgb.shape == (4, 5, 3)
    assert s.rgb[0, 0, 0] == 200 and s.rgb[0, 0, 2] == 11
    assert s.depth.dtype == np.uint16
    assert int(s.depth[0, 0]) == 5001
    assert s.ts == pytest.approx(100.0 + 1 / 30.0, abs=1e-6)


def test_missing_lists_raise(tmp_path):
    with pytest.raises(FileNotFoundError):
        TumRgbdSequence(str(tmp_path))
