"""
Input filter chain for incoming LiDAR scans.

Filters are declared in YAML as an ordered list and applied in place, in the
sensor frame, before a scan is registered:

    filters:
      - type: range_crop
        min_range: 1.0
        max_range: 60.0
      - type: voxel_down_sample
        voxel_size: 0.5
      - type: estimate_normals
        radius: 1.0
        max_nn: 30
"""

import logging
import numpy as np
import open3d as o3d
from typing import Any, Callable, Dict, List, Tuple

from ..utils.io import load_yaml_config

logger = logging.getLogger(__name__)


def _range_crop(cloud: o3d.geometry.PointCloud, min_range: float, max_range: float) -> o3d.geometry.PointCloud:
    ranges = np.linalg.norm(np.asarray(cloud.points), axis=1)
    keep = np.flatnonzero((ranges >= min_range) & (ranges <= max_range))
    return cloud.select_by_index(keep.tolist())


def _voxel_down_sample(cloud: o3d.geometry.PointCloud, voxel_size: float) -> o3d.geometry.PointCloud:
    return cloud.voxel_down_sample(voxel_size)


def _random_down_sample(cloud: o3d.geometry.PointCloud, ratio: float) -> o3d.geometry.PointCloud:
    return cloud.random_down_sample(ratio)


def _statistical_outlier(cloud: o3d.geometry.PointCloud, nb_neighbors: int, std_ratio: float) -> o3d.geometry.PointCloud:
    filtered, _ = cloud.remove_statistical_outlier(nb_neighbors=nb_neighbors, std_ratio=std_ratio)
    return filtered


def _estimate_normals(cloud: o3d.geometry.PointCloud, radius: float, max_nn: int) -> o3d.geometry.PointCloud:
    # For LiDAR data, skip normal orientation; ICP copes with flipped normals
    cloud.estimate_normals(search_param=o3d.geometry.KDTreeSearchParamHybrid(radius=radius, max_nn=max_nn))
    return cloud


# type -> (function, {parameter: cast})
FILTER_TYPES: Dict[str, Tuple[Callable[..., o3d.geometry.PointCloud], Dict[str, type]]] = {
    'range_crop': (_range_crop, {'min_range': float, 'max_range': float}),
    'voxel_down_sample': (_voxel_down_sample, {'voxel_size': float}),
    'random_down_sample': (_random_down_sample, {'ratio': float}),
    'statistical_outlier': (_statistical_outlier, {'nb_neighbors': int, 'std_ratio': float}),
    'estimate_normals': (_estimate_normals, {'radius': float, 'max_nn': int}),
}


def _parse_filter(index: int, spec: Any) -> Tuple[str, Dict[str, Any]]:
    if not isinstance(spec, dict) or 'type' not in spec:
        raise ValueError(f"Filter #{index} must be a mapping with a 'type' key, got {spec!r}")
    ftype = spec['type']
    if ftype not in FILTER_TYPES:
        raise ValueError(f"Filter #{index}: unknown type '{ftype}'. Available: {sorted(FILTER_TYPES)}")
    _, params = FILTER_TYPES[ftype]
    given = {k: v for k, v in spec.items() if k != 'type'}
    missing = set(params) - set(given)
    unknown = set(given) - set(params)
    if missing or unknown:
        raise ValueError(f"Filter #{index} ({ftype}): missing {sorted(missing)}, unknown {sorted(unknown)}")
    try:
        kwargs = {k: cast(given[k]) for k, cast in params.items()}
    except (TypeError, ValueError) as e:
        raise ValueError(f"Filter #{index} ({ftype}): {e}") from e
    if any(v <= 0 for k, v in kwargs.items() if k != 'min_range') or kwargs.get('min_range', 0.0) < 0:
        raise ValueError(f"Filter #{index} ({ftype}): parameters must be positive, got {kwargs}")
    if ftype == 'range_crop' and kwargs['min_range'] > kwargs['max_range']:
        raise ValueError(f"Filter #{index} (range_crop): min_range > max_range")
    if ftype == 'random_down_sample' and kwargs['ratio'] > 1.0:
        raise ValueError(f"Filter #{index} (random_down_sample): ratio must be in (0, 1]")
    return ftype, kwargs


class InputFilters:
    """Ordered chain of point cloud filters applied in place."""

    def __init__(self, filters: List[Dict[str, Any]] = None):
        self.filters: List[Tuple[str, Dict[str, Any]]] = [
            _parse_filter(i, spec) for i, spec in enumerate(filters or [])
        ]

    @classmethod
    def from_yaml(cls, path: str) -> "InputFilters":
        cfg = load_yaml_config(path)
        filters = cfg.get('filters', [])
        if not isinstance(filters, list):
            raise ValueError(f"'filters' in {path} must be a list, got {type(filters).__name__}")
        return cls(filters)

    def __len__(self) -> int:
        return len(self.filters)

    def apply(self, cloud: o3d.geometry.PointCloud) -> None:
        """Run every filter in order, replacing the cloud's content in place."""
        for ftype, kwargs in self.filters:
            if len(cloud.points) == 0:
                break
            fn, _ = FILTER_TYPES[ftype]
            out = fn(cloud, **kwargs)
            if out is not cloud:
                cloud.clear()
                cloud += out
