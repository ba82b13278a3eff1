"""
Localizer: the registration front-end of the keyframe SLAM pipeline.

Scans are queued by any number of producer threads and processed strictly in
arrival order by one worker thread. Per scan the worker:

1. Applies the input filter chain (in place, sensor frame)
2. Moves the scan to the robot frame with T_robot_sensor
3. Bootstraps the map with the first scan, or refreshes the local map when the
   map manager reports a change
4. Registers the scan against the local map (in the reference keyframe frame)
5. Reports overlap, scan and corrected pose back to the map manager

Frames:
- T_world_robot: world<-robot, T_robot_sensor: robot<-sensor,
  T_world_refkf: world<-reference keyframe, T_refkf_robot: refkf<-robot
"""

import enum
import logging
import threading
import time
import numpy as np
import open3d as o3d
from dataclasses import dataclass
from typing import Callable, Hashable, Optional, Sequence, Tuple

from .config import LocalizerConfig
from .ingestion import Observation, ObservationQueue
from ..icp.filters import InputFilters
from ..icp.registration import IcpRegistration
from ..mapping.keyframe_policy import KeyframePolicy, OverlapRangePolicy
from ..mapping.local_map import LocalMap
from ..mapping.map_manager import MapManager
from ..utils.geometry import relative_transform
from ..utils.worker import WorkerTask

logger = logging.getLogger(__name__)


class LocalizerState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    TRACKING = "tracking"
    STOPPED = "stopped"


@dataclass(frozen=True)
class LocalizationResult:
    """Corrected pose of one registered scan."""
    timestamp: float
    T_world_robot: np.ndarray
    T_refkf_robot: np.ndarray
    reference_vertex: Hashable
    overlap: float


class Localizer:
    """Queue-fed scan-to-local-map localizer running in its own thread.

    Attributes:
        state: Current pipeline state
        last_result: Result of the last successfully registered scan
        last_error: Last per-scan exception contained by the worker loop
        processed_count: Scans taken off the queue
        failed_count: Scans whose cycle raised
    """

    def __init__(self, map_manager: MapManager, config: LocalizerConfig,
                 registration: Optional[IcpRegistration] = None,
                 input_filters: Optional[InputFilters] = None,
                 policy: Optional[KeyframePolicy] = None,
                 on_result: Optional[Callable[[LocalizationResult], None]] = None):
        self.config = config
        self._map_manager = map_manager
        self._registration = registration if registration is not None else IcpRegistration()
        self._input_filters = input_filters if input_filters is not None else InputFilters()
        self._policy = policy if policy is not None else OverlapRangePolicy(
            config.overlap_range_min, config.overlap_range_max)
        self._on_result = on_result

        self._queue = ObservationQueue(max_size=config.queue_max_size)
        self._worker = WorkerTask(self._main, name="localizer", on_stop=self._queue.wake_all)

        self._local_map = LocalMap(config.local_map_capacity)
        self._local_map_lock = threading.Lock()

        self.state = LocalizerState.UNINITIALIZED
        self.last_result: Optional[LocalizationResult] = None
        self.last_error: Optional[BaseException] = None
        self.processed_count = 0
        self.failed_count = 0

        if config.local_icp_config:
            self.set_local_icp_config(config.local_icp_config)
        if config.input_filters_config:
            self.set_input_filters_config(config.input_filters_config)

    # Setup

    def set_local_icp_config(self, config_path: str) -> None:
        """Load the ICP descriptor. Errors propagate to the caller."""
        self._registration = IcpRegistration.from_yaml(config_path)
        logger.info("Loaded local ICP config: %s", config_path)

    def set_input_filters_config(self, config_path: str) -> None:
        """Load the input filter chain. Errors propagate to the caller."""
        self._input_filters = InputFilters.from_yaml(config_path)
        logger.info("Loaded %d input filters: %s", len(self._input_filters), config_path)

    # Producer side

    def add_new_data(self, observation: Observation) -> None:
        """Queue a scan for the worker; never blocks."""
        self._queue.put(observation)

    def pending(self) -> int:
        return len(self._queue)

    # Lifecycle

    def run(self) -> None:
        if self.state == LocalizerState.STOPPED:
            self.state = LocalizerState.TRACKING if self._registration.has_map() else LocalizerState.UNINITIALIZED
        self._worker.start()

    def stop(self) -> None:
        """Stop after the scan in flight, if any, and join the worker."""
        self._worker.stop()
        self.state = LocalizerState.STOPPED

    @property
    def is_running(self) -> bool:
        return self._worker.is_running

    def __enter__(self) -> "Localizer":
        self.run()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # Local map access

    def get_local_map(self) -> Tuple[o3d.geometry.PointCloud, bool]:
        """Copy of the local map cloud in the reference keyframe frame."""
        with self._local_map_lock:
            if not self._local_map.has_cloud():
                return o3d.geometry.PointCloud(), False
            return o3d.geometry.PointCloud(self._local_map.cloud()), True

    def get_local_map_in_world_frame(self) -> Tuple[o3d.geometry.PointCloud, bool]:
        with self._local_map_lock:
            if not self._local_map.has_cloud():
                return o3d.geometry.PointCloud(), False
            return self._local_map.cloud_in_world_frame(), True

    # Map quality hooks

    def has_enough_overlap(self, overlap: float) -> bool:
        enough = self._policy.has_enough_overlap(overlap)
        if not enough:
            logger.warning("Overlap %.3f below minimum %.3f; tracking may be lost",
                           overlap, self.config.overlap_range_min)
        return enough

    def is_better_composition(self, composition: Sequence[Hashable]) -> bool:
        return self._policy.is_better_composition(composition, self._local_map)

    # Worker

    def _main(self, stop_event: threading.Event) -> None:
        logger.info("Localizer thread started")
        while not stop_event.is_set():
            observation = self._queue.get(stop_event)
            if observation is None:
                break

            logger.info("Processing cloud #%d (t=%.6f)", self.processed_count, observation.timestamp)
            self.processed_count += 1
            try:
                self._process(observation)
            except Exception as e:
                self.failed_count += 1
                self.last_error = e
                logger.exception("Failed to process cloud t=%.6f", observation.timestamp)
        logger.info("Localizer thread stopped after %d clouds (%d failed)",
                    self.processed_count, self.failed_count)

    def _process(self, observation: Observation) -> None:
        cloud = observation.cloud

        t0 = time.time()
        self._input_filters.apply(cloud)
        logger.debug("Input filters took %.1f ms", (time.time() - t0) * 1e3)

        cloud = self._map_manager.rigid_transformation(cloud, observation.T_robot_sensor)

        if self.state == LocalizerState.UNINITIALIZED or not self._registration.has_map():
            self._process_first_cloud(cloud, observation)
            return

        self._update_before_icp()

        T_world_refkf = self._local_map.reference_keyframe().optimized_T_world_kf
        T_refkf_robot_init = relative_transform(T_world_refkf, observation.T_world_robot)

        t0 = time.time()
        T_refkf_robot = self._registration.register(cloud, T_refkf_robot_init)
        logger.debug("ICP took %.1f ms", (time.time() - t0) * 1e3)

        T_world_robot = T_world_refkf @ T_refkf_robot
        overlap = self._registration.last_overlap()
        logger.info("Current overlap is %.3f", overlap)
        self.has_enough_overlap(overlap)

        result = LocalizationResult(
            timestamp=observation.timestamp,
            T_world_robot=T_world_robot,
            T_refkf_robot=T_refkf_robot,
            reference_vertex=self._local_map.reference_vertex(),
            overlap=overlap,
        )
        self.last_result = result
        if self._on_result is not None:
            self._on_result(result)

        self._map_manager.add_keyframe_based_on_overlap(overlap, cloud, T_world_robot,
                                                        timestamp=observation.timestamp)

    def _process_first_cloud(self, cloud: o3d.geometry.PointCloud, observation: Observation) -> None:
        if len(cloud.points) == 0:
            raise ValueError(f"First cloud (t={observation.timestamp:.6f}) is empty after filtering")
        # The graph is non-empty when it holds a prior map or a previous bootstrap failed to load
        if len(self._map_manager.graph) == 0:
            self._map_manager.add_first_keyframe(cloud, observation.T_world_robot, timestamp=observation.timestamp)
        self._load_local_map(self._map_manager.get_updated_local_map())
        self.state = LocalizerState.TRACKING
        logger.info("Localizer initialized with first keyframe")

    def _update_before_icp(self) -> None:
        if not self._map_manager.local_map_needs_update():
            return
        buffer = self._map_manager.get_updated_local_map()
        candidate = [e.vertex for e in buffer]
        if not self.is_better_composition(candidate) and not self._local_map.is_outdated(self._map_manager.graph):
            logger.debug("Local map %s unchanged; skipping rebuild", candidate)
            return
        self._load_local_map(buffer)

    def _load_local_map(self, buffer) -> None:
        t0 = time.time()
        previous = self._local_map.data_buffer()
        with self._local_map_lock:
            self._local_map.update_from_data_buffer(buffer)
        try:
            self._registration.set_map(self._local_map.cloud())
        except Exception:
            with self._local_map_lock:
                self._local_map.update_from_data_buffer(previous)
            self._map_manager.invalidate_local_map()
            raise
        logger.info("Setting new map %s took %.1f ms", list(self._local_map.get_composition()),
                    (time.time() - t0) * 1e3)
