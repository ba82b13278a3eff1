import threading

import numpy as np
import pytest

from pgslam.localization.ingestion import Observation, ObservationQueue
from conftest import make_cloud


def _obs(t):
    return Observation(timestamp=t, world_frame_id='world', T_world_robot=np.eye(4),
                       T_robot_sensor=np.eye(4), cloud=make_cloud([[0.0, 0.0, 0.0]]))


def test_fifo_order():
    queue = ObservationQueue()
    stop = threading.Event()
    for t in range(5):
        queue.put(_obs(float(t)))
    assert len(queue) == 5
    assert [queue.get(stop).timestamp for _ in range(5)] == [0.0, 1.0, 2.0, 3.0, 4.0]
    assert len(queue) == 0


def test_get_returns_none_once_stopped():
    queue = ObservationQueue()
    stop = threading.Event()
    queue.put(_obs(0.0))
    stop.set()
    assert queue.get(stop) is None
    assert len(queue) == 1


def test_blocked_consumer_wakes_on_put():
    queue = ObservationQueue()
    stop = threading.Event()
    got = []
    consumer = threading.Thread(target=lambda: got.append(queue.get(stop)))
    consumer.start()
    queue.put(_obs(7.0))
    consumer.join(timeout=5.0)
    assert not consumer.is_alive()
    assert got[0].timestamp == 7.0


def test_blocked_consumer_wakes_on_stop():
    queue = ObservationQueue()
    stop = threading.Event()
    got = []
    consumer = threading.Thread(target=lambda: got.append(queue.get(stop)))
    consumer.start()
    stop.set()
    queue.wake_all()
    consumer.join(timeout=5.0)
    assert not consumer.is_alive()
    assert got == [None]


def test_concurrent_producers_lose_nothing():
    queue = ObservationQueue()
    stop = threading.Event()
    producers = [threading.Thread(target=lambda k=k: [queue.put(_obs(k * 100.0 + i)) for i in range(100)])
                 for k in range(4)]
    for p in producers:
        p.start()
    for p in producers:
        p.join()
    stamps = [queue.get(stop).timestamp for _ in range(400)]
    assert sorted(stamps) == sorted(k * 100.0 + i for k in range(4) for i in range(100))
    # Each producer's own scans stay in order
    for k in range(4):
        mine = [s for s in stamps if k * 100.0 <= s < (k + 1) * 100.0]
        assert mine == sorted(mine)


def test_bounded_queue_drops_oldest(caplog):
    queue = ObservationQueue(max_size=2)
    stop = threading.Event()
    with caplog.at_level("WARNING", logger="pgslam.localization.ingestion"):
        for t in range(4):
            queue.put(_obs(float(t)))
    assert queue.dropped == 2
    assert "dropped" in caplog.text
    assert [queue.get(stop).timestamp for _ in range(2)] == [2.0, 3.0]


def test_invalid_max_size():
    with pytest.raises(ValueError):
        ObservationQueue(max_size=0)
