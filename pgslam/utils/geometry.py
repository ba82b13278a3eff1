"""
Geometric utility functions for keyframe-based localization.

This module provides the rigid-body operations shared by the local map window,
the map manager and the localizer:

- SE(3) inversion and composition of 4x4 homogeneous transforms
- Rigid transformation of Open3D point clouds (the "rigid-transform operator")
- A pose distance metric used to find the closest keyframe to a query pose
- KITTI trajectory format utilities

Frames follow the T_a_b convention: T_a_b maps points from frame b to frame a.
"""

import numpy as np
import open3d as o3d
from typing import Tuple


def so3_log(R: np.ndarray) -> np.ndarray:
    """Logarithmic map from SO(3) to so(3): rotation matrix to axis-angle.

    Args:
        R: 3x3 rotation matrix in SO(3)

    Returns:
        Axis-angle representation (3,) in radians
    """
    cos_theta = max(-1.0, min(1.0, (np.trace(R) - 1.0) * 0.5))
    theta = np.arccos(cos_theta)
    if theta < 1e-12:
        return np.zeros(3)
    if np.pi - theta < 1e-6:
        # Near pi the skew part vanishes; recover the axis from the symmetric part
        axis = np.sqrt(np.maximum(np.diag(R) + 1.0, 0.0) * 0.5)
        k = int(np.argmax(axis))
        axis[k] = max(axis[k], 1e-12)
        for j in range(3):
            if j != k:
                axis[j] = (R[k, j] + R[j, k]) / (4.0 * axis[k])
        return theta * axis / np.linalg.norm(axis)
    w = (1.0 / (2.0 * np.sin(theta))) * np.array([R[2, 1] - R[1, 2], R[0, 2] - R[2, 0], R[1, 0] - R[0, 1]])
    return theta * w


def invert_se3(T: np.ndarray) -> np.ndarray:
    """Invert a 4x4 homogeneous transformation matrix.

    For transformation T = [R, t; 0, 1], the inverse is:
        T^(-1) = [R^T, -R^T*t; 0, 1]

    Args:
        T: 4x4 homogeneous transformation matrix

    Returns:
        4x4 inverse transformation matrix
    """
    R = T[:3, :3]
    t = T[:3, 3]
    T_inv = np.eye(4)
    T_inv[:3, :3] = R.T
    T_inv[:3, 3] = -R.T @ t
    return T_inv


def compose(T_a_b: np.ndarray, T_b_c: np.ndarray) -> np.ndarray:
    """Compose two transformations: T_a_c = T_a_b * T_b_c."""
    return T_a_b @ T_b_c


def relative_transform(T_world_a: np.ndarray, T_world_b: np.ndarray) -> np.ndarray:
    """Express pose b in the frame of pose a: T_a_b = inv(T_world_a) * T_world_b."""
    return compose(invert_se3(T_world_a), T_world_b)


def as_pose(T) -> np.ndarray:
    """Validate and copy a pose into a float64 (4, 4) array."""
    M = np.array(T, dtype=float, copy=True)
    if M.shape != (4, 4):
        raise ValueError(f"Expected a 4x4 pose, got shape {M.shape}")
    return M


def translation(x: float, y: float, z: float) -> np.ndarray:
    """Pure translation as a 4x4 homogeneous matrix."""
    T = np.eye(4)
    T[:3, 3] = [x, y, z]
    return T


def R_from_rpy_deg(rpy_deg: Tuple[float, float, float]) -> np.ndarray:
    """Create rotation matrix from roll-pitch-yaw angles in degrees.

    The rotation is composed as: R = Rz(yaw) * Ry(pitch) * Rx(roll)
    This follows the ZYX Euler angle convention (yaw-pitch-roll).

    Args:
        rpy_deg: Roll, pitch, yaw angles in degrees (r, p, y)

    Returns:
        3x3 rotation matrix
    """
    r, p, y = [np.deg2rad(x) for x in rpy_deg]
    cr, sr = np.cos(r), np.sin(r)
    cp, sp = np.cos(p), np.sin(p)
    cy, sy = np.cos(y), np.sin(y)
    Rz = np.array([[cy, -sy, 0], [sy, cy, 0], [0, 0, 1]])
    Ry = np.array([[cp, 0, sp], [0, 1, 0], [-sp, 0, cp]])
    Rx = np.array([[1, 0, 0], [0, cr, -sr], [0, sr, cr]])
    return Rz @ Ry @ Rx


def T_from_R_t(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """Create 4x4 transformation matrix from rotation and translation."""
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = np.asarray(t, dtype=float).reshape(3)
    return T


def transform_cloud(cloud: o3d.geometry.PointCloud, T: np.ndarray) -> o3d.geometry.PointCloud:
    """Rigidly transform a point cloud.

    The input cloud is left untouched; points (and normals, when present) of a
    copy are mapped with T. This is the rigid-transform operator used to move
    clouds between sensor, robot, keyframe and world frames.

    Args:
        cloud: Point cloud expressed in frame b
        T: Transform T_a_b (4x4)

    Returns:
        New point cloud expressed in frame a
    """
    out = o3d.geometry.PointCloud(cloud)
    out.transform(np.asarray(T, dtype=float))
    return out


def pose_distance(T_a: np.ndarray, T_b: np.ndarray, rotation_weight: float = 0.0) -> float:
    """Distance between two poses.

    Translation distance (m) plus rotation_weight times the relative rotation
    angle (rad). With the default weight this is the Euclidean distance
    between the two positions.

    Args:
        T_a: First pose (4x4)
        T_b: Second pose (4x4)
        rotation_weight: Meters per radian of relative rotation

    Returns:
        Non-negative scalar distance
    """
    dist = float(np.linalg.norm(T_a[:3, 3] - T_b[:3, 3]))
    if rotation_weight > 0.0:
        R_ab = T_a[:3, :3].T @ T_b[:3, :3]
        dist += rotation_weight * float(np.linalg.norm(so3_log(R_ab)))
    return dist


def write_kitti_poses_txt(file_path: str, Twb_list: np.ndarray) -> None:
    """Write trajectory poses to KITTI format text file.

    The KITTI format stores each pose as a 3x4 matrix flattened row-major:
    [R11 R12 R13 t1 R21 R22 R23 t2 R31 R32 R33 t3]

    Args:
        file_path: Output file path
        Twb_list: Array of 4x4 transformation matrices (N, 4, 4)
    """
    with open(file_path, 'w') as f:
        for T in Twb_list:
            row = np.asarray(T, dtype=float)[:3, :4].reshape(-1)
            f.write(' '.join([f"{v:.9f}" for v in row]) + '\n')
