import logging
import numpy as np
import open3d as o3d
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from ..utils.io import load_yaml_config

logger = logging.getLogger(__name__)

ICP_METHODS = ("point_to_plane", "point_to_point")


class RegistrationError(RuntimeError):
    """ICP could not produce a pose for the current scan."""


@dataclass
class IcpConfig:
    """ICP parameters.

    Attributes:
        method: "point_to_plane" (Huber-robust) or "point_to_point"
        max_correspondence_dist: Maximum correspondence distance (m)
        max_iters: Maximum ICP iterations
        robust_delta: Huber loss parameter (point-to-plane only)
        normal_radius: Radius for map normal estimation (m)
        normal_max_nn: Maximum neighbors for map normal estimation
    """
    method: str = "point_to_plane"
    max_correspondence_dist: float = 1.0
    max_iters: int = 30
    robust_delta: float = 0.5
    normal_radius: float = 1.0
    normal_max_nn: int = 30

    def __post_init__(self) -> None:
        if self.method not in ICP_METHODS:
            raise ValueError(f"Invalid ICP method: {self.method}. Must be one of {list(ICP_METHODS)}")
        if self.max_correspondence_dist <= 0:
            raise ValueError("max_correspondence_dist must be positive")
        if self.max_iters <= 0:
            raise ValueError("max_iters must be positive")
        if self.robust_delta <= 0:
            raise ValueError("robust_delta must be positive")
        if self.normal_radius <= 0 or self.normal_max_nn <= 0:
            raise ValueError("normal_radius and normal_max_nn must be positive")

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "IcpConfig":
        icp = cfg.get('icp', cfg)
        if not isinstance(icp, dict):
            raise ValueError(f"'icp' section must be a mapping, got {type(icp).__name__}")
        unknown = set(icp) - set(cls.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown ICP parameters: {sorted(unknown)}")
        try:
            return cls(
                method=str(icp.get('method', cls.method)),
                max_correspondence_dist=float(icp.get('max_correspondence_dist', cls.max_correspondence_dist)),
                max_iters=int(icp.get('max_iters', cls.max_iters)),
                robust_delta=float(icp.get('robust_delta', cls.robust_delta)),
                normal_radius=float(icp.get('normal_radius', cls.normal_radius)),
                normal_max_nn=int(icp.get('normal_max_nn', cls.normal_max_nn)),
            )
        except (TypeError, ValueError) as e:
            raise ValueError(f"Malformed ICP configuration: {e}") from e


def icp_point_to_plane(source: o3d.geometry.PointCloud,
                       target: o3d.geometry.PointCloud,
                       init_T: np.ndarray,
                       max_correspondence_dist: float,
                       max_iters: int,
                       robust_delta: float) -> o3d.pipelines.registration.RegistrationResult:
    """Point-to-plane ICP registration with a Huber robust kernel.

    Args:
        source: Source point cloud
        target: Target point cloud (must have normals)
        init_T: Initial transformation guess (4x4)
        max_correspondence_dist: Maximum correspondence distance (m)
        max_iters: Maximum iterations
        robust_delta: Huber loss parameter

    Returns:
        Open3D registration result (transformation, fitness, inlier_rmse, correspondences)
    """
    criteria = o3d.pipelines.registration.ICPConvergenceCriteria(max_iteration=max_iters)
    loss = o3d.pipelines.registration.HuberLoss(robust_delta)
    return o3d.pipelines.registration.registration_icp(
        source, target, max_correspondence_dist,
        init_T,
        o3d.pipelines.registration.TransformationEstimationPointToPlane(loss),
        criteria,
    )


def icp_point_to_point(source: o3d.geometry.PointCloud,
                       target: o3d.geometry.PointCloud,
                       init_T: np.ndarray,
                       max_correspondence_dist: float,
                       max_iters: int) -> o3d.pipelines.registration.RegistrationResult:
    """Point-to-point ICP registration (no normals required)."""
    criteria = o3d.pipelines.registration.ICPConvergenceCriteria(max_iteration=max_iters)
    return o3d.pipelines.registration.registration_icp(
        source, target, max_correspondence_dist,
        init_T,
        o3d.pipelines.registration.TransformationEstimationPointToPoint(),
        criteria,
    )


class IcpRegistration:
    """Scan-to-map ICP against a reference cloud.

    The map is set once per local map refresh and reused for every scan until
    the next refresh. Poses passed to and returned by register() are expressed
    in the map frame.
    """

    def __init__(self, config: Optional[IcpConfig] = None):
        self.config = config if config is not None else IcpConfig()
        self._map: Optional[o3d.geometry.PointCloud] = None
        self._last_overlap = 0.0
        self._last_rmse: Optional[float] = None
        self._last_correspondences = 0

    @classmethod
    def from_yaml(cls, path: str) -> "IcpRegistration":
        return cls(IcpConfig.from_dict(load_yaml_config(path)))

    def has_map(self) -> bool:
        return self._map is not None

    def set_map(self, cloud: o3d.geometry.PointCloud) -> None:
        """Use a copy of the cloud as the registration target."""
        if len(cloud.points) == 0:
            raise RegistrationError("Cannot set an empty map")
        target = o3d.geometry.PointCloud(cloud)
        # Point-to-plane needs target normals; merged maps usually come without
        if self.config.method == "point_to_plane" and not target.has_normals():
            target.estimate_normals(
                search_param=o3d.geometry.KDTreeSearchParamHybrid(
                    radius=self.config.normal_radius,
                    max_nn=self.config.normal_max_nn,
                )
            )
        self._map = target

    def register(self, cloud: o3d.geometry.PointCloud, T_map_robot_init: np.ndarray) -> np.ndarray:
        """Align the scan to the map starting from an initial guess.

        Args:
            cloud: Scan in the robot frame
            T_map_robot_init: Initial robot pose in the map frame (4x4)

        Returns:
            Corrected robot pose in the map frame (4x4)

        Raises:
            RegistrationError: no map, empty scan, or no correspondences
        """
        if self._map is None:
            raise RegistrationError("No map set")
        if len(cloud.points) == 0:
            raise RegistrationError("Input cloud is empty")

        cfg = self.config
        init_T = np.asarray(T_map_robot_init, dtype=float)
        if cfg.method == "point_to_plane":
            result = icp_point_to_plane(cloud, self._map, init_T, cfg.max_correspondence_dist,
                                        cfg.max_iters, cfg.robust_delta)
        else:
            result = icp_point_to_point(cloud, self._map, init_T, cfg.max_correspondence_dist, cfg.max_iters)

        n_corr = np.asarray(result.correspondence_set).shape[0]
        self._last_overlap = float(result.fitness)
        self._last_rmse = float(result.inlier_rmse)
        self._last_correspondences = int(n_corr)
        if n_corr == 0:
            raise RegistrationError(
                f"ICP found no correspondences within {cfg.max_correspondence_dist} m"
            )
        return np.array(result.transformation, dtype=float)

    def last_overlap(self) -> float:
        """Fraction of scan points with a map correspondence in the last run."""
        return self._last_overlap

    def last_stats(self) -> Tuple[float, Optional[float], int]:
        """(overlap, inlier_rmse, correspondence_count) of the last run."""
        return self._last_overlap, self._last_rmse, self._last_correspondences
