import json

import numpy as np
import pytest

from pgslam.data.kitti_loader import _read_kitti_timestamps, select_frame_indices
from pgslam.eval.evo_eval import compute_trajectory_metrics, load_kitti_trajectory, save_evo_metrics_json
from pgslam.utils.geometry import R_from_rpy_deg, T_from_R_t, translation, write_kitti_poses_txt


def _circle(n=20, radius=5.0, offset=(0.0, 0.0, 0.0)):
    poses = []
    for i in range(n):
        a = 2.0 * np.pi * i / n
        p = np.array([radius * np.cos(a), radius * np.sin(a), 0.1 * i]) + offset
        poses.append(T_from_R_t(R_from_rpy_deg((0.0, 0.0, np.rad2deg(a))), p))
    return np.stack(poses)


def test_metrics_of_shifted_trajectory(tmp_path):
    ref_path = tmp_path / "gt.kitti"
    est_path = tmp_path / "pred.kitti"
    write_kitti_poses_txt(str(ref_path), _circle())
    write_kitti_poses_txt(str(est_path), _circle(offset=(1.0, 0.0, 0.0)))
    ref = load_kitti_trajectory(str(ref_path))
    est = load_kitti_trajectory(str(est_path))
    assert ref.num_poses == 20

    unaligned = compute_trajectory_metrics(ref, est, align=False)
    assert unaligned["ape"]["rmse"] == pytest.approx(1.0, abs=1e-4)
    assert unaligned["rpe"]["rmse"] == pytest.approx(0.0, abs=1e-4)
    aligned = compute_trajectory_metrics(ref, est, align=True)
    assert aligned["ape"]["rmse"] == pytest.approx(0.0, abs=1e-4)

    metrics = save_evo_metrics_json(str(tmp_path / "out"), str(ref_path), str(est_path))
    saved = json.loads((tmp_path / "out" / "evo_metrics.json").read_text())
    assert saved == metrics
    assert set(saved) == {"aligned", "unaligned"}


def test_metrics_reject_length_mismatch(tmp_path):
    write_kitti_poses_txt(str(tmp_path / "a.kitti"), _circle(10))
    write_kitti_poses_txt(str(tmp_path / "b.kitti"), _circle(12))
    with pytest.raises(ValueError):
        compute_trajectory_metrics(load_kitti_trajectory(str(tmp_path / "a.kitti")),
                                   load_kitti_trajectory(str(tmp_path / "b.kitti")))


def test_select_frame_indices():
    np.testing.assert_array_equal(select_frame_indices(10), np.arange(10))
    np.testing.assert_array_equal(select_frame_indices(10, start_frame=2, end_frame=4), [2, 3, 4])
    np.testing.assert_array_equal(select_frame_indices(10, frames=[7, 1]), [7, 1])
    with pytest.raises(IndexError):
        select_frame_indices(10, frames=[10])
    with pytest.raises(IndexError):
        select_frame_indices(10, start_frame=5, end_frame=3)


def test_read_kitti_timestamps(tmp_path):
    path = tmp_path / "timestamps.txt"
    path.write_text("2011-09-26 13:02:25.964389445\n\n2011-09-26 13:02:26.064\n2011-09-26 13:02:27\n")
    ts = _read_kitti_timestamps(str(path))
    assert ts.shape == (3,)
    assert ts[1] - ts[0] == pytest.approx(0.099611, abs=1e-6)
    assert ts[2] - ts[0] == pytest.approx(1.035611, abs=1e-6)
