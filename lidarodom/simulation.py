"""Synthetic box-shaped point clouds with a known relative pose."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .geometry import SE3, so3_exp

_FACE_AXIS = np.array([2, 2, 0, 0, 1, 1])
_FACE_SIGN = np.array([-1.0, 1.0, -1.0, 1.0, -1.0, 1.0])


@dataclass(frozen=True)
class SimulationOptions:
    num_points: int = 2000
    width: float = 5.0  # half extent along y
    length: float = 10.0  # half extent along x
    height: float = 1.0  # half extent along z
    pose_rot_sigma: float = 0.05
    pose_trans_sigma: float = 0.3


@dataclass(frozen=True)
class SimulatedData:
    """Target and source clouds; ``pose`` maps target points onto source points."""

    target: np.ndarray
    source: np.ndarray
    pose: SE3


def generate_target(options, rng):
    """Sample points uniformly over the six faces of the box."""
    n = options.num_points
    if n < 0:
        raise ValueError("num_points must not be negative")
    half = np.array([options.length, options.width, options.height], dtype=float)
    faces = rng.integers(0, 6, size=n)
    pts = rng.uniform(-half, half, size=(n, 3))
    axis = _FACE_AXIS[faces]
    pts[np.arange(n), axis] = _FACE_SIGN[faces] * half[axis]
    return pts


def generate(options=None, seed=0):
    """Build a target box cloud and a source cloud moved by a random pose."""
    options = options or SimulationOptions()
    target = generate_target(options, np.random.default_rng(seed))
    rng = np.random.default_rng(seed)
    rot = rng.normal(0.0, options.pose_rot_sigma, size=3)
    trans = rng.normal(0.0, options.pose_trans_sigma, size=3)
    pose = SE3(so3_exp(rot), trans)
    return SimulatedData(target=target, source=pose.apply(target), pose=pose)