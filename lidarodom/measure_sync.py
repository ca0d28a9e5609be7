"""Pairs each lidar scan with the IMU readings that cover it."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field

import numpy as np

from .cloud_convert import CloudConvert
from .pointcloud import FullCloud

logger = logging.getLogger(__name__)


def _empty_cloud():
    return FullCloud(np.zeros((0, 3)))


@dataclass
class MeasureGroup:
    """One scan with its start and end time (s) and the IMU readings up to its end."""

    lidar_begin_time: float = 0.0
    lidar_end_time: float = 0.0
    lidar: FullCloud = field(default_factory=_empty_cloud)
    imu: list = field(default_factory=list)


class MessageSync:
    """Buffers lidar scans and IMU readings and hands out synchronised groups."""

    def __init__(self, callback=None, converter=None):
        self.callback = callback
        self.converter = converter or CloudConvert()
        self._lidar_buffer = deque()
        self._time_buffer = deque()
        self._imu_buffer = deque()
        self._last_timestamp_imu = -1.0
        self._last_timestamp_lidar = 0.0
        self._pending = None  # (cloud, begin, end) of the scan waiting for IMU data

    def process_imu(self, imu):
        if imu.timestamp < self._last_timestamp_imu:
            logger.warning("imu loop back, clear buffer")
            self._imu_buffer.clear()
        self._last_timestamp_imu = imu.timestamp
        self._imu_buffer.append(imu)

    def _clear_lidar(self):
        self._lidar_buffer.clear()
        self._time_buffer.clear()
        self._pending = None

    def process_cloud(self, timestamp, points):
        """Convert spinning-lidar points stamped ``timestamp``; True if a group was emitted."""
        if timestamp < self._last_timestamp_lidar:
            logger.error("lidar loop back, clear buffer")
            self._clear_lidar()
        cloud = self.converter.process(points)
        self._lidar_buffer.append(cloud)
        self._time_buffer.append(float(timestamp))
        self._last_timestamp_lidar = timestamp
        return self._sync()

    def process_livox(self, timestamp, points):
        """Convert livox points stamped ``timestamp``; empty scans are dropped."""
        if timestamp < self._last_timestamp_lidar:
            logger.warning("lidar loop back, clear buffer")
            self._clear_lidar()
        self._last_timestamp_lidar = timestamp
        cloud = self.converter.process_livox(points)
        if len(cloud) == 0:
            return False
        self._lidar_buffer.append(cloud)
        self._time_buffer.append(float(timestamp))
        return self._sync()

    def _sync(self):
        if not self._lidar_buffer or not self._imu_buffer:
            return False

        if self._pending is None:
            cloud = self._lidar_buffer[0]
            begin = self._time_buffer[0]
            last_offset = float(cloud.time[-1]) if len(cloud) else 0.0
            self._pending = (cloud, begin, begin + last_offset / 1000.0)
        cloud, begin, end = self._pending

        if self._last_timestamp_imu < end:
            return False

        imus = []
        imu_time = self._imu_buffer[0].timestamp
        while self._imu_buffer and imu_time < end:
            imu_time = self._imu_buffer[0].timestamp
            if imu_time > end:
                break
            imus.append(self._imu_buffer.popleft())

        self._lidar_buffer.popleft()
        self._time_buffer.popleft()
        self._pending = None

        if self.callback is not None:
            self.callback(MeasureGroup(begin, end, cloud, imus))
        return True