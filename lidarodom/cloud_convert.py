"""Conversion of raw lidar packets into time-stamped full clouds."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum

import numpy as np
import yaml

from .pointcloud import FullCloud

logger = logging.getLogger(__name__)

_OMEGA = 3.61  # scan angular velocity, degrees per millisecond
_RAD2DEG = 57.2957
_MIN_RANGE = 4.0
_SAME_POINT = 1e-7
_TAG_MASK = 0x30
_GOOD_TAGS = (0x10, 0x00)


class LidarType(IntEnum):
    AVIA = 1  # solid-state livox
    VELO32 = 2  # velodyne 32 lines
    OUST64 = 3  # ouster 64 lines


@dataclass(frozen=True)
class LivoxPoint:
    x: float
    y: float
    z: float
    reflectivity: float = 0.0
    tag: int = 0
    line: int = 0
    offset_time: int = 0  # nanoseconds from the start of the packet


@dataclass(frozen=True)
class RawPoint:
    """A spinning-lidar point: ``time`` for velodyne (scaled), ``t`` in ns for ouster."""

    x: float
    y: float
    z: float
    intensity: float = 0.0
    time: float = 0.0
    t: float = 0.0
    ring: int = 0


def _empty():
    return FullCloud(np.zeros((0, 3)))


class CloudConvert:
    """Turns livox, velodyne and ouster points into a FullCloud with times in milliseconds."""

    def __init__(self, lidar_type=LidarType.AVIA, point_filter_num=1, num_scans=6, time_scale=1e-3):
        if point_filter_num < 1:
            raise ValueError("point_filter_num must be at least 1")
        self.lidar_type = LidarType(lidar_type)
        self.point_filter_num = int(point_filter_num)
        self.num_scans = int(num_scans)
        self.time_scale = float(time_scale)

    def load_yaml(self, path):
        """Read the preprocessing parameters from a YAML configuration file."""
        with open(path, encoding="utf-8") as fh:
            cfg = yaml.safe_load(fh)
        pre = cfg["preprocess"]
        self.time_scale = float(pre["time_scale"])
        lidar_type = int(pre["lidar_type"])
        self.num_scans = int(pre["scan_line"])
        filter_num = int(cfg["point_filter_num"])
        if filter_num < 1:
            raise ValueError("point_filter_num must be at least 1")
        self.point_filter_num = filter_num
        try:
            self.lidar_type = LidarType(lidar_type)
            logger.info("using lidar type %s", self.lidar_type.name)
        except ValueError:
            logger.warning("unknown lidar_type %d", lidar_type)

    def process_livox(self, points):
        """Convert livox points; the first point of a packet is always dropped."""
        points = list(points)
        n = len(points)
        if n < 2:
            return _empty()
        xyz = np.array([(p.x, p.y, p.z) for p in points], dtype=float)
        refl = np.array([p.reflectivity for p in points], dtype=float)
        tags = np.array([p.tag for p in points], dtype=np.int64)
        lines = np.array([p.line for p in points], dtype=np.int64)
        offsets = np.array([p.offset_time for p in points], dtype=float)

        idx = np.arange(n)
        masked = tags & _TAG_MASK
        keep = (
            (idx >= 1)
            & (lines < self.num_scans)
            & np.isin(masked, _GOOD_TAGS)
            & (idx % self.point_filter_num == 0)
        )
        full = np.zeros((n, 3))
        full[keep] = xyz[keep]
        prev = np.vstack([np.zeros((1, 3)), full[:-1]])
        moved = np.any(np.abs(full - prev) > _SAME_POINT, axis=1)
        valid = keep & moved
        return FullCloud(xyz[valid], intensity=refl[valid], time=offsets[valid] / 1e6)

    def process(self, points):
        """Convert spinning-lidar points according to ``lidar_type``."""
        if self.lidar_type is LidarType.OUST64:
            return self._ouster(list(points))
        if self.lidar_type is LidarType.VELO32:
            return self._velodyne(list(points))
        raise ValueError(f"lidar type {self.lidar_type.name} has no point-cloud handler")

    def _ouster(self, points):
        kept = [p for i, p in enumerate(points) if i % self.point_filter_num == 0]
        if not kept:
            return _empty()
        return FullCloud(
            [(p.x, p.y, p.z) for p in kept],
            intensity=[p.intensity for p in kept],
            time=[p.t / 1e6 for p in kept],
        )

    def _velodyne(self, points):
        if not points:
            return _empty()
        given_offset_time = points[-1].time > 0
        yaw_first = {}
        time_last = {}
        xyz, intensity, times = [], [], []

        for i, p in enumerate(points):
            t = p.time * self.time_scale
            if np.sqrt(p.x * p.x + p.y * p.y + p.z * p.z) < _MIN_RANGE:
                continue

            if not given_offset_time:
                layer = int(p.ring)
                if not 0 <= layer < self.num_scans:
                    raise ValueError(f"ring {layer} outside 0..{self.num_scans - 1}")
                yaw = float(np.arctan2(p.y, p.x)) * _RAD2DEG
                if layer not in yaw_first:
                    yaw_first[layer] = yaw
                    time_last[layer] = 0.0
                    continue
                if yaw <= yaw_first[layer]:
                    t = (yaw_first[layer] - yaw) / _OMEGA
                else:
                    t = (yaw_first[layer] - yaw + 360.0) / _OMEGA
                if t < time_last[layer]:
                    t += 360.0 / _OMEGA
                time_last[layer] = t

            if i % self.point_filter_num == 0:
                xyz.append((p.x, p.y, p.z))
                intensity.append(p.intensity)
                times.append(t)

        if not xyz:
            return _empty()
        return FullCloud(xyz, intensity=intensity, time=times)