"""Point cloud and IMU containers."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


def _vec3(value, name):
    arr = np.asarray(value, dtype=float)
    if arr.shape != (3,):
        raise ValueError(f"{name} must be a 3-vector")
    return arr


@dataclass
class Imu:
    """One IMU reading: timestamp in seconds, angular rate and specific force."""

    timestamp: float
    gyro: np.ndarray
    acce: np.ndarray

    def __post_init__(self):
        self.timestamp = float(self.timestamp)
        self.gyro = _vec3(self.gyro, "gyro")
        self.acce = _vec3(self.acce, "acce")


@dataclass
class FullCloud:
    """Points with intensity, per-point time offset (ms) and scan ring."""

    points: np.ndarray
    intensity: np.ndarray | None = None
    time: np.ndarray | None = None
    ring: np.ndarray | None = field(default=None)

    def __post_init__(self):
        self.points = np.asarray(self.points, dtype=float).reshape(-1, 3)
        n = len(self.points)
        self.intensity = self._column(self.intensity, n, float, "intensity")
        self.time = self._column(self.time, n, float, "time")
        self.ring = self._column(self.ring, n, np.int64, "ring")

    @staticmethod
    def _column(values, n, dtype, name):
        if values is None:
            return np.zeros(n, dtype=dtype)
        arr = np.asarray(values, dtype=dtype).reshape(-1)
        if len(arr) != n:
            raise ValueError(f"{name} has {len(arr)} entries for {n} points")
        return arr

    def __len__(self):
        return len(self.points)

    def transformed(self, pose):
        """A copy of this cloud with the points moved by ``pose``."""
        return FullCloud(
            pose.apply(self.points),
            self.intensity.copy(),
            self.time.copy(),
            self.ring.copy(),
        )


def voxel_filter(points, leaf_size):
    """Replace the points in each voxel of side ``leaf_size`` by their centroid."""
    if leaf_size <= 0:
        raise ValueError("leaf_size must be positive")
    pts = np.asarray(points, dtype=float).reshape(-1, 3)
    if len(pts) == 0:
        return np.zeros((0, 3))
    keys = np.floor(pts / leaf_size).astype(np.int64)
    _, inverse = np.unique(keys, axis=0, return_inverse=True)
    inverse = inverse.reshape(-1)
    count = np.bincount(inverse)
    sums = np.zeros((len(count), 3))
    np.add.at(sums, inverse, pts)
    return sums / count[:, None]