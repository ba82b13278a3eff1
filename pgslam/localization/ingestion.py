"""
Sensor observations and the queue that hands them to the localizer thread.
"""

import logging
import threading
import numpy as np
import open3d as o3d
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Observation:
    """One LiDAR scan with the poses known at capture time.

    Attributes:
        timestamp: Capture time (s)
        world_frame_id: Name of the world frame the robot pose is given in
        T_world_robot: Robot pose in the world frame, used as initial guess (4x4)
        T_robot_sensor: Sensor extrinsic, maps sensor points to the robot frame (4x4)
        cloud: Scan in the sensor frame; owned by the localizer once enqueued
    """
    timestamp: float
    world_frame_id: str
    T_world_robot: np.ndarray
    T_robot_sensor: np.ndarray
    cloud: o3d.geometry.PointCloud


class ObservationQueue:
    """FIFO of observations shared by any number of producers and one consumer.

    put() never blocks. With max_size set, a full queue drops its oldest
    observation to make room; by default the queue is unbounded.
    """

    def __init__(self, max_size: Optional[int] = None):
        if max_size is not None and max_size < 1:
            raise ValueError(f"max_size must be None or >= 1, got {max_size}")
        self.max_size = max_size
        self.dropped = 0
        self._items: Deque[Observation] = deque()
        self._cond = threading.Condition()

    def put(self, observation: Observation) -> None:
        with self._cond:
            if self.max_size is not None and len(self._items) >= self.max_size:
                old = self._items.popleft()
                self.dropped += 1
                logger.warning("Observation queue full (%d); dropped scan t=%.6f", self.max_size, old.timestamp)
            self._items.append(observation)
            self._cond.notify()

    def get(self, stop_event: threading.Event) -> Optional[Observation]:
        """Block until an observation is available or stop is requested.

        Returns:
            The oldest observation, or None once stop_event is set
        """
        with self._cond:
            if stop_event.is_set():
                return None
            self._cond.wait_for(lambda: self._items or stop_event.is_set())
            if stop_event.is_set():
                return None
            return self._items.popleft()

    def wake_all(self) -> None:
        """Wake every waiting consumer so it re-checks its stop flag."""
        with self._cond:
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)
