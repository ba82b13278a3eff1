"""
Map manager: owner of the keyframe graph and of local map composition.

The localizer talks to the graph only through this object. It seeds the first
keyframe, decides when a registered scan becomes a keyframe and which
keyframes form the next local map, and hands the localizer fresh keyframe
snapshots when the local map must be refreshed.

All methods may be called from the localizer thread while a backend updates
poses in the graph from another thread.
"""

import logging
import threading
import numpy as np
import open3d as o3d
from collections import deque
from typing import Deque, Hashable, Optional

from .keyframe_policy import KeyframePolicy
from .local_map import (DataBuffer, LocalMap, has_same_reference_vertex, has_same_vertex_set,
                        is_buffer_outdated, make_data_buffer)
from .pose_graph import PoseGraph
from ..utils.geometry import transform_cloud

logger = logging.getLogger(__name__)


class MapManager:
    """Keyframe insertion and local map composition on top of a PoseGraph.

    Composition rule:
        - a new keyframe is appended as the reference; the oldest member drops
          out once the composition is at capacity
        - otherwise the member closest to the corrected robot pose becomes the
          reference if the policy considers that composition better

    Attributes:
        graph: Shared keyframe graph
        policy: Map quality policy
        rigid_transformation: Rigid-transform operator for point clouds
        local_map_capacity: Maximum keyframes per local map
    """

    def __init__(self, local_map_capacity: int, policy: KeyframePolicy, graph: Optional[PoseGraph] = None):
        if local_map_capacity < 1:
            raise ValueError(f"local_map_capacity must be >= 1, got {local_map_capacity}")
        self.graph = graph if graph is not None else PoseGraph()
        self.policy = policy
        self.rigid_transformation = transform_cloud
        self.local_map_capacity = local_map_capacity

        self._lock = threading.RLock()
        # A prior map seeds the composition with its newest keyframes
        self._next_composition: Deque[Hashable] = deque(self.graph.vertices()[-local_map_capacity:],
                                                        maxlen=local_map_capacity)
        self._published: Optional[DataBuffer] = None
        # Windowed view of the published composition, used for closest-vertex queries
        self._window = LocalMap(local_map_capacity)

    @property
    def next_composition(self) -> Deque[Hashable]:
        with self._lock:
            return deque(self._next_composition, maxlen=self._next_composition.maxlen)

    def add_first_keyframe(self, cloud: o3d.geometry.PointCloud, T_world_robot: np.ndarray,
                           timestamp: Optional[float] = None) -> Hashable:
        """Seed the graph with the first keyframe and make it the local map."""
        with self._lock:
            if len(self.graph) > 0:
                raise RuntimeError("First keyframe already added")
            v = self.graph.add_keyframe(cloud, T_world_robot, timestamp=timestamp)
            self._next_composition.append(v)
            logger.info("Added first keyframe v=%s", v)
            return v

    def local_map_needs_update(self) -> bool:
        """Cheap check: composition changed or a published keyframe went stale."""
        with self._lock:
            if not self._next_composition:
                return False
            if self._published is None:
                return True
            published = [e.vertex for e in self._published]
            next_comp = list(self._next_composition)
            if not (has_same_reference_vertex(published, next_comp) and has_same_vertex_set(published, next_comp)):
                return True
            return is_buffer_outdated(self._published, self.graph)

    def get_updated_local_map(self) -> DataBuffer:
        """Fresh snapshots of the next composition's keyframes, in order."""
        with self._lock:
            if not self._next_composition:
                raise RuntimeError("No keyframes yet; call add_first_keyframe first")
            buffer = make_data_buffer(self.graph, self._next_composition)
            self._published = buffer
            # Only the poses are needed here; skip the cloud merge
            self._window.update_from_data_buffer(buffer, build_cloud=False)
            return deque(buffer, maxlen=buffer.maxlen)

    def invalidate_local_map(self) -> None:
        """Forget the last hand-over so the next check asks for a reload."""
        with self._lock:
            self._published = None

    def add_keyframe_based_on_overlap(self, overlap: float, cloud: o3d.geometry.PointCloud,
                                      T_world_robot: np.ndarray, timestamp: Optional[float] = None) -> Optional[Hashable]:
        """Insert a keyframe or re-anchor the local map after a registered scan.

        Returns:
            The new vertex when a keyframe was inserted, else None
        """
        with self._lock:
            if self.policy.needs_new_keyframe(overlap):
                v = self.graph.add_keyframe(cloud, T_world_robot, timestamp=timestamp)
                self._next_composition.append(v)
                logger.info("Added keyframe v=%s (overlap=%.3f), next composition=%s",
                            v, overlap, list(self._next_composition))
                return v

            if len(self._window) > 1:
                closest = self._window.find_closest_vertex(T_world_robot)
                if closest not in self._next_composition:
                    return None
                candidate = deque((u for u in self._next_composition if u != closest),
                                  maxlen=self._next_composition.maxlen)
                candidate.append(closest)
                if not has_same_reference_vertex(list(candidate), list(self._next_composition)) \
                        and self.policy.is_better_composition(candidate, self._window):
                    logger.info("Re-anchoring local map on v=%s", closest)
                    self._next_composition = candidate
            return None
