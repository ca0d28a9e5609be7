"""Iterated error-state Kalman filter driven by IMU readings and custom observations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np

from .geometry import SE3, hat, so3_exp, so3_log

logger = logging.getLogger(__name__)

_DEFAULT_GRAVITY = (0.0, 0.0, -9.8)
_DIM = 18
_MAX_GAP_FACTOR = 5


@dataclass
class IeskfOptions:
    num_iterations: int = 3
    quit_eps: float = 1e-3  # stop iterating when the correction is this small

    imu_dt: float = 0.01
    gyro_var: float = 1e-5
    acce_var: float = 1e-2
    bias_gyro_var: float = 1e-6
    bias_acce_var: float = 1e-4

    gnss_pos_noise: float = 0.1
    gnss_height_noise: float = 0.1
    gnss_ang_noise: float = float(np.deg2rad(1.0))

    update_bias_gyro: bool = True
    update_bias_acce: bool = True


def _zeros3():
    return np.zeros(3)


@dataclass
class NavState:
    """Nominal navigation state: time, attitude, position, velocity and IMU biases."""

    timestamp: float = 0.0
    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    p: np.ndarray = field(default_factory=_zeros3)
    v: np.ndarray = field(default_factory=_zeros3)
    bg: np.ndarray = field(default_factory=_zeros3)
    ba: np.ndarray = field(default_factory=_zeros3)


def _vec3(value, default):
    if value is None:
        return np.array(default, dtype=float)
    return np.array(value, dtype=float).reshape(3)


class IESKF:
    """Filter over the 18-dimensional error state ``(p, v, theta, bg, ba, g)``."""

    def __init__(self, options=None, init_bg=None, init_ba=None, gravity=None):
        self.options = options or IeskfOptions()
        self._build_noise(self.options)
        self._time = 0.0
        self._R = np.eye(3)
        self._p = np.zeros(3)
        self._v = np.zeros(3)
        self._bg = _vec3(init_bg, (0.0, 0.0, 0.0))
        self._ba = _vec3(init_ba, (0.0, 0.0, 0.0))
        self._g = _vec3(gravity, _DEFAULT_GRAVITY)
        self._cov = np.eye(_DIM)

    def _build_noise(self, options):
        ev, et = options.acce_var, options.gyro_var
        eg, ea = options.bias_gyro_var, options.bias_acce_var
        self._Q = np.diag([0.0] * 3 + [ev] * 3 + [et] * 3 + [eg] * 3 + [ea] * 3 + [0.0] * 3)
        gp2 = options.gnss_pos_noise**2
        gh2 = options.gnss_height_noise**2
        ga2 = options.gnss_ang_noise**2
        self._gnss_noise = np.diag([gp2, gp2, gh2, ga2, ga2, ga2])

    @property
    def covariance(self):
        return self._cov.copy()

    @property
    def gravity(self):
        return self._g.copy()

    def set_initial_conditions(self, options, init_bg, init_ba, gravity=None):
        """Reset noise, biases and gravity, and start from a small covariance."""
        self._build_noise(options)
        self.options = options
        self._bg = _vec3(init_bg, (0.0, 0.0, 0.0))
        self._ba = _vec3(init_ba, (0.0, 0.0, 0.0))
        self._g = _vec3(gravity, _DEFAULT_GRAVITY)
        self._cov = 1e-4 * np.eye(_DIM)
        self._cov[6:9, 6:9] = 0.1 * np.deg2rad(1.0) * np.eye(3)

    def predict(self, imu):
        """Propagate with one IMU reading; False when the gap since the last one is too long."""
        if imu.timestamp < self._time:
            raise ValueError(f"imu time {imu.timestamp} is before filter time {self._time}")
        dt = imu.timestamp - self._time
        if dt > _MAX_GAP_FACTOR * self.options.imu_dt:
            logger.debug("skip this imu because dt = %g", dt)
            self._time = imu.timestamp
            return False

        acc = imu.acce - self._ba
        gyro = imu.gyro - self._bg
        world_acc = self._R @ acc
        new_p = self._p + self._v * dt + 0.5 * world_acc * dt * dt + 0.5 * self._g * dt * dt
        new_v = self._v + world_acc * dt + self._g * dt
        self._R = self._R @ so3_exp(gyro * dt)
        self._v = new_v
        self._p = new_p

        eye3 = np.eye(3)
        F = np.eye(_DIM)
        F[0:3, 3:6] = eye3 * dt
        F[3:6, 6:9] = -self._R @ hat(acc) * dt
        F[3:6, 12:15] = -self._R * dt
        F[3:6, 15:18] = eye3 * dt
        F[6:9, 6:9] = so3_exp(-gyro * dt)
        F[6:9, 9:12] = -eye3 * dt

        self._cov = F @ self._cov @ F.T + self._Q
        self._time = imu.timestamp
        return True

    def update_using_custom_observe(self, observe):
        """Iterated update; ``observe(pose)`` returns ``(H^T V^-1 H, H^T V^-1 r)``."""
        if self.options.num_iterations < 1:
            raise ValueError("num_iterations must be at least 1")
        start_R = self._R.copy()
        eye = np.eye(_DIM)
        for _ in range(self.options.num_iterations):
            htvh, htvr = observe(self.nominal_se3())
            htvh = np.asarray(htvh, dtype=float).reshape(_DIM, _DIM)
            htvr = np.asarray(htvr, dtype=float).reshape(_DIM)

            J = self._rotation_projection(start_R)
            pk = J @ self._cov @ J.T
            qk = np.linalg.inv(np.linalg.inv(pk) + htvh)
            dx = qk @ htvr
            self._apply(dx)
            if np.linalg.norm(dx) < self.options.quit_eps:
                break

        cov = (eye - qk @ htvh) @ pk
        J = self._rotation_projection(start_R)
        self._cov = J @ cov @ np.linalg.inv(J)

    def _rotation_projection(self, start_R):
        J = np.eye(_DIM)
        J[6:9, 6:9] = np.eye(3) - 0.5 * hat(so3_log(self._R.T @ start_R))
        return J

    def _apply(self, dx):
        self._p = self._p + dx[0:3]
        self._v = self._v + dx[3:6]
        self._R = self._R @ so3_exp(dx[6:9])
        if self.options.update_bias_gyro:
            self._bg = self._bg + dx[9:12]
        if self.options.update_bias_acce:
            self._ba = self._ba + dx[12:15]
        self._g = self._g + dx[15:18]

    def nominal_state(self):
        return NavState(
            self._time, self._R.copy(), self._p.copy(), self._v.copy(), self._bg.copy(), self._ba.copy()
        )

    def nominal_se3(self):
        return SE3(self._R, self._p)

    def set_state(self, state):
        self._time = float(state.timestamp)
        self._R = np.array(state.rotation, dtype=float).reshape(3, 3)
        self._p = np.array(state.p, dtype=float).reshape(3)
        self._v = np.array(state.v, dtype=float).reshape(3)
        self._bg = np.array(state.bg, dtype=float).reshape(3)
        self._ba = np.array(state.ba, dtype=float).reshape(3)

    def set_covariance(self, cov):
        self._cov = np.array(cov, dtype=float).reshape(_DIM, _DIM)