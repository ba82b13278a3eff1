import os
from dataclasses import dataclass
from typing import List, Optional
import numpy as np
import open3d as o3d
import pykitti
from datetime import datetime

from ..utils.geometry import invert_se3


@dataclass
class SequenceSpec:
    root_dir: str
    date: str
    drive: str
    frames: Optional[List[int]] = None
    start_frame: Optional[int] = None
    end_frame: Optional[int] = None


def _read_kitti_timestamps(path: str) -> np.ndarray:
    times: List[float] = []
    with open(path, 'r') as f:
        for line in f:
            s = line.strip()
            if not s:
                continue
            if '.' in s:
                base, frac = s.split('.')
                frac6 = (frac + '000000')[:6]
                dt = datetime.strptime(base, '%Y-%m-%d %H:%M:%S')
                dt = dt.replace(microsecond=int(frac6))
            else:
                dt = datetime.strptime(s, '%Y-%m-%d %H:%M:%S')
            times.append(dt.timestamp())
    return np.asarray(times, dtype=float)


def select_frame_indices(n: int, frames: Optional[List[int]] = None,
                         start_frame: Optional[int] = None, end_frame: Optional[int] = None) -> np.ndarray:
    """Dataset indices for an explicit frame list or an inclusive [start, end] range."""
    if frames:
        idx = np.array(frames, dtype=int)
        if np.any(idx < 0) or np.any(idx >= n):
            raise IndexError("One or more requested frame indices are out of range for this sequence")
        return idx
    start = int(start_frame) if start_frame is not None else 0
    end = int(end_frame) if end_frame is not None else (n - 1)
    if start < 0 or end < 0 or start >= n or end >= n or start > end:
        raise IndexError("Invalid start/end frame range for this sequence")
    return np.arange(start, end + 1, dtype=int)


class KITTIRawLoader:
    """KITTI Raw velodyne scans with OXTS poses, for feeding the localizer.

    The robot frame is the IMU/OXTS frame and the sensor frame is the
    velodyne, so T_robot_sensor = T_imu_velo from the dataset calibration.
    """

    def __init__(self, spec: SequenceSpec):
        self.spec = spec
        self.dataset = pykitti.raw(spec.root_dir, spec.date, spec.drive)
        seq_dir = os.path.join(spec.root_dir, spec.date, f"{spec.date}_drive_{spec.drive}_sync")

        lidar_ts_file = os.path.join(seq_dir, 'velodyne_points', 'timestamps.txt')
        imu_ts_file = os.path.join(seq_dir, 'oxts', 'timestamps.txt')
        if not os.path.exists(lidar_ts_file):
            raise FileNotFoundError(f"Missing LiDAR timestamps: {lidar_ts_file}")
        if not os.path.exists(imu_ts_file):
            raise FileNotFoundError(f"Missing IMU timestamps: {imu_ts_file}")
        lidar_timestamps_all = _read_kitti_timestamps(lidar_ts_file)
        self.imu_timestamps = _read_kitti_timestamps(imu_ts_file)

        self.frame_indices = select_frame_indices(len(lidar_timestamps_all), spec.frames,
                                                  spec.start_frame, spec.end_frame)
        self.lidar_timestamps = lidar_timestamps_all[self.frame_indices]

    def num_lidar(self) -> int:
        return len(self.lidar_timestamps)

    def get_velodyne(self, idx: int) -> np.ndarray:
        # Returns Nx4 (x,y,z,reflectance)
        return self.dataset.get_velo(int(self.frame_indices[idx]))

    def get_cloud(self, idx: int) -> o3d.geometry.PointCloud:
        pcd = o3d.geometry.PointCloud()
        pcd.points = o3d.utility.Vector3dVector(self.get_velodyne(idx)[:, :3].astype(np.float64))
        return pcd

    def get_T_w_imu(self, idx: int) -> np.ndarray:
        """OXTS pose (world<-IMU) nearest to the scan timestamp."""
        t = self.lidar_timestamps[idx]
        k = int(np.searchsorted(self.imu_timestamps, t, side='left'))
        k = int(np.clip(k, 0, len(self.imu_timestamps) - 1))
        return np.array(self.dataset.oxts[k].T_w_imu, dtype=float)

    def get_T_imu_velo(self) -> np.ndarray:
        # pykitti gives T_velo_imu (IMU points -> velodyne frame)
        return invert_se3(np.asarray(self.dataset.calib.T_velo_imu, dtype=float))
