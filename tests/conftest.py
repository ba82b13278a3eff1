import time
import numpy as np
import open3d as o3d

from pgslam.icp.registration import RegistrationError


def make_cloud(points) -> o3d.geometry.PointCloud:
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(np.asarray(points, dtype=np.float64).reshape(-1, 3))
    return pcd


def corner_scene(n_per_plane: int = 1500, size: float = 4.0, seed: int = 0) -> np.ndarray:
    """Points on three orthogonal planes (x=0, y=0, z=0); constrains all 6 DOF."""
    rng = np.random.default_rng(seed)
    planes = []
    for axis in range(3):
        pts = rng.uniform(0.0, size, size=(n_per_plane, 3))
        pts[:, axis] = 0.0
        planes.append(pts)
    return np.vstack(planes)


def wait_for(predicate, timeout: float = 10.0, interval: float = 0.01) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeRegistration:
    """Registration engine stand-in: returns the initial guess unchanged."""

    def __init__(self, overlap: float = 0.9, fail_on_calls=(), fail_on_set_map=()):
        self.overlap = overlap
        self.fail_on_calls = set(fail_on_calls)
        self.fail_on_set_map = set(fail_on_set_map)
        self.map = None
        self.set_map_calls = 0
        self.register_calls = []

    def has_map(self) -> bool:
        return self.map is not None

    def set_map(self, cloud) -> None:
        self.set_map_calls += 1
        if self.set_map_calls in self.fail_on_set_map:
            raise RegistrationError("synthetic map failure")
        self.map = o3d.geometry.PointCloud(cloud)

    def register(self, cloud, T_init):
        self.register_calls.append((len(cloud.points), np.array(T_init)))
        if len(self.register_calls) in self.fail_on_calls:
            raise RegistrationError("synthetic failure")
        return np.array(T_init)

    def last_overlap(self) -> float:
        return self.overlap


class RecordingFilters:
    """Filter chain stand-in that records the size of every cloud it sees."""

    def __init__(self):
        self.seen = []

    def apply(self, cloud) -> None:
        self.seen.append(len(cloud.points))
