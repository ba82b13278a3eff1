import os
import json
from typing import Dict, Optional
import numpy as np

from evo.core import metrics as evo_metrics
from evo.core import trajectory as evo_traj
from evo.tools import file_interface as evo_io


def load_kitti_trajectory(path: str) -> evo_traj.PoseTrajectory3D:
    """KITTI pose file as a trajectory with frame-index timestamps."""
    poses = evo_io.read_kitti_poses_file(path).poses_se3
    return evo_traj.PoseTrajectory3D(poses_se3=poses, timestamps=np.arange(len(poses), dtype=float))


def _statistics(metric) -> Dict[str, Optional[float]]:
    stats = metric.get_all_statistics()
    return {k: (float(stats[k]) if k in stats else None) for k in ("rmse", "mean", "median", "std")}


def compute_trajectory_metrics(ref: evo_traj.PoseTrajectory3D,
                               est: evo_traj.PoseTrajectory3D,
                               align: bool = True) -> Dict[str, Dict[str, Optional[float]]]:
    """Translation APE and frame-to-frame RPE of an estimate against a reference.

    Trajectories are index-aligned; with align=True the estimate is first
    SE(3)-aligned (Umeyama, no scale) to the reference.
    """
    if ref.num_poses != est.num_poses:
        raise ValueError(f"Trajectory lengths differ: ref={ref.num_poses}, est={est.num_poses}")
    est_use = evo_traj.PoseTrajectory3D(poses_se3=est.poses_se3, timestamps=est.timestamps)
    if align:
        est_use.align(ref, correct_scale=False)

    ape = evo_metrics.APE(evo_metrics.PoseRelation.translation_part)
    ape.process_data((ref, est_use))
    rpe = evo_metrics.RPE(evo_metrics.PoseRelation.translation_part, delta=1,
                          delta_unit=evo_metrics.Unit.frames)
    rpe.process_data((ref, est_use))
    return {"ape": _statistics(ape), "rpe": _statistics(rpe)}


def save_evo_metrics_json(out_dir: str, ref_path: str, est_path: str,
                          filename: str = "evo_metrics.json") -> Dict[str, Dict]:
    os.makedirs(out_dir, exist_ok=True)
    ref = load_kitti_trajectory(ref_path)
    est = load_kitti_trajectory(est_path)
    metrics = {
        "aligned": compute_trajectory_metrics(ref, est, align=True),
        "unaligned": compute_trajectory_metrics(ref, est, align=False),
    }
    with open(os.path.join(out_dir, filename), 'w') as f:
        json.dump(metrics, f, indent=2)
    return metrics
