"""
Keyframe pose graph.

Stores keyframes (posed point-cloud snapshots) by vertex id. Optimized poses
can be replaced at any time by a backend running in another thread; every
replacement stamps the keyframe with a fresh, strictly increasing update time
so that readers holding an older snapshot can detect that it is stale.

Edges, optimization and loop closure live outside this module.
"""

import itertools
import threading
import time
import numpy as np
import open3d as o3d
from dataclasses import dataclass, replace
from typing import Dict, Hashable, Iterable, List, Optional

from ..utils.geometry import as_pose

Vertex = Hashable


@dataclass(frozen=True)
class Keyframe:
    """Read-only keyframe snapshot.

    Attributes:
        cloud: Point cloud in the keyframe (robot) frame; shared, never mutated
        optimized_T_world_kf: Current optimized pose of the keyframe (4x4)
        update_time: Graph stamp of the last change to this keyframe
        timestamp: Capture time of the scan the keyframe was made from (s)
    """
    cloud: o3d.geometry.PointCloud
    optimized_T_world_kf: np.ndarray
    update_time: int
    timestamp: Optional[float] = None


class PoseGraph:
    """Thread-safe vertex -> keyframe store with update stamps."""

    def __init__(self):
        self._keyframes: Dict[Vertex, Keyframe] = {}
        self._lock = threading.RLock()
        self._vertex_ids = itertools.count()
        self._stamps = itertools.count(1)

    def add_keyframe(self, cloud: o3d.geometry.PointCloud, T_world_kf: np.ndarray,
                     timestamp: Optional[float] = None) -> Vertex:
        """Insert a keyframe and return its new vertex id."""
        T = as_pose(T_world_kf)
        T.setflags(write=False)
        with self._lock:
            v = next(self._vertex_ids)
            self._keyframes[v] = Keyframe(
                cloud=cloud,
                optimized_T_world_kf=T,
                update_time=next(self._stamps),
                timestamp=timestamp if timestamp is not None else time.time(),
            )
            return v

    def update_pose(self, vertex: Vertex, T_world_kf: np.ndarray) -> None:
        self.update_poses({vertex: T_world_kf})

    def update_poses(self, poses: Dict[Vertex, np.ndarray]) -> None:
        """Replace the optimized poses of several keyframes at once."""
        with self._lock:
            missing = [v for v in poses if v not in self._keyframes]
            if missing:
                raise KeyError(f"Unknown vertices: {missing}")
            for v, T in poses.items():
                T = as_pose(T)
                T.setflags(write=False)
                self._keyframes[v] = replace(self._keyframes[v], optimized_T_world_kf=T,
                                             update_time=next(self._stamps))

    def vertices(self) -> List[Vertex]:
        with self._lock:
            return list(self._keyframes)

    def snapshot(self, vertices: Iterable[Vertex]) -> List[Keyframe]:
        """Keyframes for several vertices, read under a single lock."""
        with self._lock:
            return [self._keyframes[v] for v in vertices]

    def __getitem__(self, vertex: Vertex) -> Keyframe:
        with self._lock:
            return self._keyframes[vertex]

    def __contains__(self, vertex: Vertex) -> bool:
        with self._lock:
            return vertex in self._keyframes

    def __len__(self) -> int:
        with self._lock:
            return len(self._keyframes)
