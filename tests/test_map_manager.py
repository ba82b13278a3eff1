import numpy as np
import pytest

from pgslam.mapping.keyframe_policy import OverlapRangePolicy
from pgslam.mapping.map_manager import MapManager
from pgslam.mapping.pose_graph import PoseGraph
from pgslam.utils.geometry import translation
from conftest import make_cloud


@pytest.fixture
def manager():
    return MapManager(3, OverlapRangePolicy(0.3, 0.7))


def _cloud():
    return make_cloud([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]])


def test_invalid_capacity():
    with pytest.raises(ValueError):
        MapManager(0, OverlapRangePolicy(0.3, 0.7))


def test_no_local_map_before_first_keyframe(manager):
    assert not manager.local_map_needs_update()
    with pytest.raises(RuntimeError):
        manager.get_updated_local_map()


def test_first_keyframe_only_once(manager):
    v = manager.add_first_keyframe(_cloud(), np.eye(4), timestamp=0.0)
    assert list(manager.next_composition) == [v]
    with pytest.raises(RuntimeError):
        manager.add_first_keyframe(_cloud(), np.eye(4))


def test_published_buffer_clears_update_flag(manager):
    v = manager.add_first_keyframe(_cloud(), np.eye(4))
    assert manager.local_map_needs_update()
    buffer = manager.get_updated_local_map()
    assert [e.vertex for e in buffer] == [v]
    assert buffer.maxlen == 3
    assert not manager.local_map_needs_update()

    manager.graph.update_pose(v, translation(0.5, 0, 0))
    assert manager.local_map_needs_update()


def test_low_overlap_inserts_keyframe_and_evicts_oldest(manager):
    v0 = manager.add_first_keyframe(_cloud(), np.eye(4))
    added = [manager.add_keyframe_based_on_overlap(0.1, _cloud(), translation(i, 0, 0), timestamp=float(i))
             for i in range(1, 4)]
    assert None not in added
    assert len(manager.graph) == 4
    assert list(manager.next_composition) == added
    assert v0 not in manager.next_composition
    assert manager.graph[added[-1]].timestamp == 3.0


def test_high_overlap_with_single_keyframe_changes_nothing(manager):
    v0 = manager.add_first_keyframe(_cloud(), np.eye(4))
    manager.get_updated_local_map()
    assert manager.add_keyframe_based_on_overlap(0.9, _cloud(), translation(5, 0, 0)) is None
    assert list(manager.next_composition) == [v0]
    assert not manager.local_map_needs_update()


def test_high_overlap_reanchors_on_closest_keyframe(manager):
    v0 = manager.add_first_keyframe(_cloud(), np.eye(4))
    v1 = manager.add_keyframe_based_on_overlap(0.1, _cloud(), translation(10, 0, 0))
    manager.get_updated_local_map()
    assert not manager.local_map_needs_update()

    # Back near the first keyframe: it becomes the reference
    assert manager.add_keyframe_based_on_overlap(0.9, _cloud(), translation(0.5, 0, 0)) is None
    assert list(manager.next_composition) == [v1, v0]
    assert manager.local_map_needs_update()
    assert len(manager.graph) == 2

    # Already anchored on the closest keyframe
    manager.get_updated_local_map()
    assert manager.add_keyframe_based_on_overlap(0.9, _cloud(), translation(0.2, 0, 0)) is None
    assert list(manager.next_composition) == [v1, v0]
    assert not manager.local_map_needs_update()


def test_next_composition_is_a_copy(manager):
    v0 = manager.add_first_keyframe(_cloud(), np.eye(4))
    comp = manager.next_composition
    comp.append("other")
    assert list(manager.next_composition) == [v0]


def test_prior_graph_seeds_composition():
    graph = PoseGraph()
    vs = [graph.add_keyframe(_cloud(), translation(i, 0, 0)) for i in range(3)]
    manager = MapManager(2, OverlapRangePolicy(0.3, 0.7), graph=graph)
    assert list(manager.next_composition) == vs[1:]
    assert manager.local_map_needs_update()
    assert [e.vertex for e in manager.get_updated_local_map()] == vs[1:]
    with pytest.raises(RuntimeError):
        manager.add_first_keyframe(_cloud(), np.eye(4))


def test_invalidate_local_map_requests_reload(manager):
    manager.add_first_keyframe(_cloud(), np.eye(4))
    manager.get_updated_local_map()
    assert not manager.local_map_needs_update()
    manager.invalidate_local_map()
    assert manager.local_map_needs_update()
