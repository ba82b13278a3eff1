import os
import yaml
import time
import numpy as np
from typing import Any, Dict
from .geometry import write_kitti_poses_txt


def load_yaml_config(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path, 'r') as f:
        try:
            cfg = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Malformed YAML in {path}: {e}") from e
    if not isinstance(cfg, dict):
        raise ValueError(f"Expected a mapping at the top level of {path}, got {type(cfg).__name__}")
    return cfg


def ensure_run_dir(root: str, date: str, drive: str, suffix: str = None) -> str:
    stamp = time.strftime('%Y%m%d_%H%M%S')
    name = f"{stamp}_{date}_{drive}"
    if suffix:
        name = f"{name}_{suffix}"
    run_dir = os.path.join(root, name)
    os.makedirs(run_dir, exist_ok=True)
    return run_dir


def save_kitti_trajectory(path: str, Twb_list: np.ndarray) -> None:
    write_kitti_poses_txt(path, Twb_list)


def count_kitti_pose_lines(path: str) -> int:
    n = 0
    with open(path, 'r') as f:
        for line in f:
            if line.strip():
                n += 1
    return n
