"""
Run the keyframe localizer on KITTI Raw.

Pipeline overview:
- Load dataset and calibration (IMU<-LiDAR extrinsic) via pykitti.
- Feed every velodyne scan to the localizer as an observation, with the OXTS
  pose (relative to the first frame) as the world<-robot initial guess.
- The localizer thread registers scans against the local keyframe map and the
  map manager inserts keyframes based on overlap.
- Save predicted and ground-truth trajectories and evaluate with evo.

Frames:
- T_world_robot: world<-IMU, T_robot_sensor: IMU<-LiDAR
"""
import os
import sys
import json
import time
import shutil
import logging
import argparse
import numpy as np
from typing import Dict, List, Optional
from tqdm import tqdm

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from pgslam.utils.io import load_yaml_config, ensure_run_dir, save_kitti_trajectory, count_kitti_pose_lines
from pgslam.utils.geometry import invert_se3
from pgslam.data.kitti_loader import KITTIRawLoader, SequenceSpec
from pgslam.localization.config import LocalizerConfig
from pgslam.localization.ingestion import Observation
from pgslam.localization.localizer import Localizer, LocalizationResult
from pgslam.mapping.keyframe_policy import OverlapRangePolicy
from pgslam.mapping.map_manager import MapManager
from pgslam.eval.evo_eval import save_evo_metrics_json


def _wait_until_processed(localizer: Localizer, n: int, desc: str) -> None:
    """Block until the localizer has taken n scans off its queue."""
    with tqdm(total=n, desc=desc) as bar:
        done = 0
        while done < n:
            if not localizer.is_running:
                raise RuntimeError("Localizer thread exited before processing all scans")
            time.sleep(0.05)
            current = localizer.processed_count
            bar.update(current - done)
            done = current
    # The last scan may still be in flight; stop() waits for it


def run_localizer(config_path: str, date: str, drive: str,
                  start_frame: Optional[int] = None,
                  end_frame: Optional[int] = None):
    """Run the localizer over a KITTI Raw sequence.

    Args:
        config_path: YAML config path
        date: KITTI date (e.g., 2011_09_26)
        drive: KITTI drive ID (e.g., 0001)
    """
    cfg = load_yaml_config(config_path)
    run_dir = ensure_run_dir(cfg['logging']['run_root'], date, drive, suffix='localizer')
    shutil.copy2(config_path, os.path.join(run_dir, 'config.yaml'))
    print(f"Run directory: {run_dir}")

    spec = SequenceSpec(
        root_dir=cfg['dataset']['root_dir'],
        date=date,
        drive=drive,
        frames=cfg['dataset'].get('frames', []),
        start_frame=start_frame if start_frame is not None else cfg['dataset'].get('start_frame'),
        end_frame=end_frame if end_frame is not None else cfg['dataset'].get('end_frame'),
    )
    ds = KITTIRawLoader(spec)
    n = ds.num_lidar()
    if n <= 0:
        raise ValueError("No LiDAR frames after applying frames/start_frame/end_frame")
    print(f"LiDAR frames: {n}")

    T_robot_sensor = ds.get_T_imu_velo()
    T_w0_inv = invert_se3(ds.get_T_w_imu(0))
    gt_poses = [T_w0_inv @ ds.get_T_w_imu(i) for i in range(n)]

    # Localizer, map manager and policy share the same overlap range
    loc_cfg = LocalizerConfig.from_dict(cfg)
    policy = OverlapRangePolicy(loc_cfg.overlap_range_min, loc_cfg.overlap_range_max)
    map_manager = MapManager(loc_cfg.local_map_capacity, policy)

    results: Dict[float, LocalizationResult] = {}
    localizer = Localizer(map_manager, loc_cfg, policy=policy,
                          on_result=lambda r: results.__setitem__(r.timestamp, r))

    t0 = time.time()
    localizer.run()
    try:
        for i in range(n):
            localizer.add_new_data(Observation(
                timestamp=float(ds.lidar_timestamps[i]),
                world_frame_id='world',
                T_world_robot=gt_poses[i],
                T_robot_sensor=T_robot_sensor,
                cloud=ds.get_cloud(i),
            ))
        _wait_until_processed(localizer, n, desc=f"localizer {date}_{drive}")
    finally:
        localizer.stop()
    runtime = time.time() - t0

    # Bootstrap and failed scans keep their initial guess
    traj: List[np.ndarray] = []
    overlaps: List[Optional[float]] = []
    for i in range(n):
        r = results.get(float(ds.lidar_timestamps[i]))
        traj.append(r.T_world_robot if r is not None else gt_poses[i])
        overlaps.append(r.overlap if r is not None else None)

    out_pred = os.path.join(run_dir, 'trajectory_pred.kitti')
    out_gt = os.path.join(run_dir, 'trajectory_gt.kitti')
    save_kitti_trajectory(out_pred, np.stack(traj, axis=0))
    save_kitti_trajectory(out_gt, np.stack(gt_poses, axis=0))
    num_pred_lines = count_kitti_pose_lines(out_pred)
    num_gt_lines = count_kitti_pose_lines(out_gt)
    print(f"Saved trajectories: {out_pred} (poses={num_pred_lines}), {out_gt} (poses={num_gt_lines})")

    ev = cfg.get('evaluation', {})
    if ev.get('enable', True) and num_pred_lines >= 2 and num_gt_lines >= 2:
        metrics_evo = save_evo_metrics_json(run_dir, out_gt, out_pred)
        print(f"APE rmse (aligned): {metrics_evo['aligned']['ape']['rmse']}")

    valid = [o for o in overlaps if o is not None]
    metrics = {
        "date": date,
        "drive": drive,
        "num_frames": n,
        "num_registered": len(results),
        "num_failed": localizer.failed_count,
        "num_keyframes": len(map_manager.graph),
        "runtime_total_s": float(runtime),
        "mean_overlap": float(np.mean(valid)) if valid else None,
        "per_frame": {"overlap": overlaps},
    }
    metrics_path = os.path.join(run_dir, 'metrics.json')
    with open(metrics_path, 'w') as f:
        json.dump(metrics, f, indent=2)
    print(f"Saved metrics: {metrics_path}")


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('--config', type=str, required=True)
    parser.add_argument('--date', type=str, required=True)
    parser.add_argument('--drive', type=str, required=True)
    parser.add_argument('--start_frame', type=int, default=None)
    parser.add_argument('--end_frame', type=int, default=None)
    parser.add_argument('--log_level', type=str, default='WARNING')
    args = parser.parse_args()
    logging.basicConfig(level=args.log_level, format='%(asctime)s %(name)s %(levelname)s: %(message)s')
    run_localizer(args.config, args.date, args.drive, start_frame=args.start_frame, end_frame=args.end_frame)
