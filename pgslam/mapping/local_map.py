"""
Local Map window for keyframe-based LiDAR localization.

This module implements the local map the localizer registers incoming scans
against. A local map is a capacity-bounded, ordered snapshot of keyframes taken
from the pose graph, together with one merged point cloud.

Key Features:
- Ordered window of (vertex, keyframe) pairs (FIFO, bounded like a ring buffer)
- The last element is the reference keyframe; the merged cloud is expressed
  in its local frame so it does not move when the window is re-anchored
- Staleness detection against the graph's update stamps
- Composition comparisons to skip rebuilds when nothing would change

The window holds no lock of its own. Graph reads go through the graph's
accessors, which must be safe against a concurrently running optimizer.
"""

import numpy as np
import open3d as o3d
from collections import deque
from typing import Callable, Deque, Hashable, Iterable, NamedTuple, Sequence

from .pose_graph import Keyframe, PoseGraph
from ..utils.geometry import invert_se3, pose_distance, transform_cloud

Vertex = Hashable


class WindowElement(NamedTuple):
    """A vertex paired with the keyframe data captured from the graph."""
    vertex: Vertex
    keyframe: Keyframe


DataBuffer = Deque[WindowElement]


def composition_capacity(composition: Sequence[Vertex]) -> int:
    """Capacity of a composition: deque maxlen when set, else its length."""
    maxlen = getattr(composition, 'maxlen', None)
    return maxlen if maxlen is not None else len(composition)


def make_data_buffer(graph: PoseGraph, composition: Sequence[Vertex]) -> DataBuffer:
    """Snapshot every vertex of a composition from the graph, preserving order.

    Raises:
        ValueError: if the composition holds duplicate vertices or exceeds its
            own capacity
        KeyError: if a vertex is not in the graph
    """
    vertices = list(composition)
    capacity = composition_capacity(composition)
    if len(vertices) > capacity:
        raise ValueError(f"Composition holds {len(vertices)} vertices but capacity is {capacity}")
    if len(set(vertices)) != len(vertices):
        raise ValueError(f"Composition vertices must be unique, got {vertices}")
    keyframes = graph.snapshot(vertices)
    return deque((WindowElement(v, kf) for v, kf in zip(vertices, keyframes)), maxlen=capacity)


def has_same_vertex_set(a: Sequence[Vertex], b: Sequence[Vertex]) -> bool:
    """True iff both vertex sequences contain the same vertices.

    Both sides are unique, so a size mismatch is an early reject. The
    membership search is quadratic; windows are a handful of keyframes.
    """
    if len(a) != len(b):
        return False
    for v in a:
        if v not in b:
            return False
    for v in b:
        if v not in a:
            return False
    return True


def has_same_reference_vertex(a: Sequence[Vertex], b: Sequence[Vertex]) -> bool:
    """True iff both sequences end with the same vertex (or both are empty)."""
    if len(a) == 0 or len(b) == 0:
        return len(a) == len(b)
    return a[-1] == b[-1]


def is_buffer_outdated(buffer: Iterable[WindowElement], graph: PoseGraph) -> bool:
    """True iff the graph holds a newer version of any buffered keyframe."""
    for element in buffer:
        if graph[element.vertex].update_time > element.keyframe.update_time:
            return True
    return False


class LocalMap:
    """Capacity-bounded keyframe window with a merged reference-frame cloud.

    The window works by:
    1. Storing (vertex, keyframe) snapshots in a bounded deque
    2. Treating the last element as the reference keyframe
    3. Merging every member cloud into the reference frame on each rebuild
    4. Serving the cached merged cloud until the next rebuild

    Attributes:
        distance: Pose metric used by find_closest_vertex
    """

    def __init__(self, capacity: int,
                 distance: Callable[[np.ndarray, np.ndarray], float] = pose_distance):
        """Create an empty window.

        Args:
            capacity: Maximum number of keyframes in the window
            distance: Pose metric used by find_closest_vertex
        """
        if capacity < 1:
            raise ValueError(f"Local map capacity must be >= 1, got {capacity}")
        self.distance = distance
        self._data: DataBuffer = deque(maxlen=capacity)
        self._cloud = o3d.geometry.PointCloud()

    @classmethod
    def from_graph(cls, graph: PoseGraph, composition: Sequence[Vertex],
                   distance: Callable[[np.ndarray, np.ndarray], float] = pose_distance) -> "LocalMap":
        """Snapshot the keyframes of a composition and build the merged cloud."""
        local_map = cls(max(1, composition_capacity(composition)), distance=distance)
        local_map.update_to_new_composition(graph, composition)
        return local_map

    @property
    def capacity(self) -> int:
        return self._data.maxlen

    def __len__(self) -> int:
        return len(self._data)

    def data_buffer(self) -> DataBuffer:
        """Copy of the window elements (keyframe snapshots are shared)."""
        return deque(self._data, maxlen=self._data.maxlen)

    def get_composition(self) -> Deque[Vertex]:
        """Ordered member vertices; independent of later changes to the window."""
        return deque((e.vertex for e in self._data), maxlen=self._data.maxlen)

    def reference_vertex(self) -> Vertex:
        return self._reference_element().vertex

    def reference_keyframe(self) -> Keyframe:
        return self._reference_element().keyframe

    def _reference_element(self) -> WindowElement:
        if not self._data:
            raise IndexError("Local map is empty; it has no reference keyframe")
        return self._data[-1]

    def update_from_graph(self, graph: PoseGraph) -> None:
        """Re-snapshot every member from the graph (same membership) and rebuild."""
        keyframes = graph.snapshot(e.vertex for e in self._data)
        self._data = deque((WindowElement(e.vertex, kf) for e, kf in zip(self._data, keyframes)),
                           maxlen=self._data.maxlen)
        self._build_cloud_from_data()

    def update_from_data_buffer(self, data: Iterable[WindowElement], build_cloud: bool = True) -> None:
        """Replace the whole membership with a prepared buffer and rebuild.

        With build_cloud=False only the membership is replaced and the merged
        cloud is cleared, for callers that need poses but not the cloud.
        """
        elements = [WindowElement(*e) for e in data]
        vertices = [e.vertex for e in elements]
        if len(set(vertices)) != len(vertices):
            raise ValueError(f"Data buffer vertices must be unique, got {vertices}")
        capacity = getattr(data, 'maxlen', None) or max(1, len(elements))
        self._data = deque(elements, maxlen=capacity)
        if build_cloud:
            self._build_cloud_from_data()
        else:
            self._cloud = o3d.geometry.PointCloud()

    def update_to_new_composition(self, graph: PoseGraph, composition: Sequence[Vertex]) -> None:
        """Resize to the composition's capacity, snapshot its vertices and rebuild."""
        buffer = make_data_buffer(graph, composition)
        if buffer.maxlen == 0:
            buffer = deque(maxlen=1)
        self._data = buffer
        self._build_cloud_from_data()

    def has_cloud(self) -> bool:
        return len(self._cloud.points) != 0

    def cloud(self) -> o3d.geometry.PointCloud:
        """Cached merged cloud in the reference keyframe frame. Do not mutate."""
        return self._cloud

    def cloud_in_world_frame(self) -> o3d.geometry.PointCloud:
        """Merged cloud moved to the world frame with the reference keyframe pose."""
        if not self._data:
            return o3d.geometry.PointCloud()
        return transform_cloud(self._cloud, self.reference_keyframe().optimized_T_world_kf)

    def has_same_vertex_set(self, composition: Sequence[Vertex]) -> bool:
        return has_same_vertex_set(list(self.get_composition()), list(composition))

    def has_same_reference_vertex(self, composition: Sequence[Vertex]) -> bool:
        return has_same_reference_vertex(list(self.get_composition()), list(composition))

    def has_same_composition(self, composition: Sequence[Vertex]) -> bool:
        return self.has_same_reference_vertex(composition) and self.has_same_vertex_set(composition)

    def is_outdated(self, graph: PoseGraph) -> bool:
        return is_buffer_outdated(self._data, graph)

    def is_reference_keyframe_outdated(self, graph: PoseGraph) -> bool:
        if not self._data:
            return False
        return is_buffer_outdated([self._data[-1]], graph)

    def find_closest_vertex(self, T_world_x: np.ndarray) -> Vertex:
        """Member whose optimized world pose is closest to the query pose.

        Ties keep the earliest member in window order.
        """
        if not self._data:
            raise ValueError("Cannot search an empty local map")
        closest_v = None
        closest_dist = np.inf
        for element in self._data:
            dist = self.distance(element.keyframe.optimized_T_world_kf, T_world_x)
            if dist < closest_dist:
                closest_v = element.vertex
                closest_dist = dist
        return closest_v

    def _build_cloud_from_data(self) -> None:
        """Merge all member clouds into the reference keyframe frame.

        Starts from a copy of the reference cloud, then appends every other
        member cloud moved by inv(T_world_ref) * T_world_member.
        """
        if not self._data:
            self._cloud = o3d.geometry.PointCloud()
            return

        reference = self._data[-1].keyframe
        merged = o3d.geometry.PointCloud(reference.cloud)
        T_ref_world = invert_se3(reference.optimized_T_world_kf)

        # Walk backwards from the element just before the reference
        for element in list(self._data)[-2::-1]:
            T_ref_kf = T_ref_world @ element.keyframe.optimized_T_world_kf
            merged += transform_cloud(element.keyframe.cloud, T_ref_kf)

        self._cloud = merged
