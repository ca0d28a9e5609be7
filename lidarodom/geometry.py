"""Rigid-body transforms and small geometric estimators used by the registrations."""

from __future__ import annotations

import numpy as np
from scipy.spatial.transform import Rotation

_PLANE_EPS = 1e-2
_SERIES_ANGLE = 1e-5


class RegistrationError(RuntimeError):
    """Raised when a registration cannot produce a pose."""


def hat(v):
    """Return the skew-symmetric matrix of a 3-vector."""
    x, y, z = np.asarray(v, dtype=float).reshape(3)
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])


def _hat_many(vectors):
    """Skew-symmetric matrices for an (N, 3) array, shape (N, 3, 3)."""
    v = np.asarray(vectors, dtype=float).reshape(-1, 3)
    out = np.zeros((len(v), 3, 3))
    out[:, 0, 1] = -v[:, 2]
    out[:, 0, 2] = v[:, 1]
    out[:, 1, 0] = v[:, 2]
    out[:, 1, 2] = -v[:, 0]
    out[:, 2, 0] = -v[:, 1]
    out[:, 2, 1] = v[:, 0]
    return out


def so3_exp(phi):
    """Rotation matrix of a rotation vector."""
    return Rotation.from_rotvec(np.asarray(phi, dtype=float).reshape(3)).as_matrix()


def so3_log(rotation):
    """Rotation vector of a rotation matrix."""
    return Rotation.from_matrix(np.asarray(rotation, dtype=float).reshape(3, 3)).as_rotvec()


class SE3:
    """A rigid transform ``p -> R p + t``."""

    __slots__ = ("rotation", "translation")

    def __init__(self, rotation=None, translation=None):
        self.rotation = np.eye(3) if rotation is None else np.array(rotation, dtype=float).reshape(3, 3)
        self.translation = (
            np.zeros(3) if translation is None else np.array(translation, dtype=float).reshape(3)
        )

    def inverse(self):
        rt = self.rotation.T
        return SE3(rt, -rt @ self.translation)

    def __matmul__(self, other):
        if isinstance(other, SE3):
            return SE3(self.rotation @ other.rotation, self.rotation @ other.translation + self.translation)
        return self.apply(other)

    def apply(self, points):
        """Transform one point (3,) or many points (N, 3)."""
        p = np.asarray(points, dtype=float)
        return p @ self.rotation.T + self.translation

    def rotation_log(self):
        return so3_log(self.rotation)

    def log(self):
        """Tangent vector ``(upsilon, omega)`` of this transform."""
        omega = so3_log(self.rotation)
        theta = float(np.linalg.norm(omega))
        w = hat(omega)
        w2 = w @ w
        if theta < _SERIES_ANGLE:
            v_inv = np.eye(3) - 0.5 * w + w2 / 12.0
        else:
            coeff = (1.0 - theta * np.sin(theta) / (2.0 * (1.0 - np.cos(theta)))) / theta**2
            v_inv = np.eye(3) - 0.5 * w + coeff * w2
        return np.concatenate([v_inv @ self.translation, omega])

    def matrix(self):
        m = np.eye(4)
        m[:3, :3] = self.rotation
        m[:3, 3] = self.translation
        return m

    def __repr__(self):
        return f"SE3(rotvec={self.rotation_log().tolist()}, translation={self.translation.tolist()})"


def fit_plane(points):
    """Fit ``n . p + d = 0`` with a unit normal; None if the points are not planar."""
    pts = np.asarray(points, dtype=float).reshape(-1, 3)
    if len(pts) < 3:
        return None
    a = np.hstack([pts, np.ones((len(pts), 1))])
    _, _, vh = np.linalg.svd(a)
    coeffs = vh[-1]
    norm = np.linalg.norm(coeffs[:3])
    if norm == 0.0:
        return None
    coeffs = coeffs / norm
    if np.any(np.abs(a @ coeffs) > _PLANE_EPS):
        return None
    return coeffs


def fit_line(points, eps):
    """Fit a line through the points; returns ``(origin, direction)`` or None."""
    pts = np.asarray(points, dtype=float).reshape(-1, 3)
    if len(pts) < 2:
        return None
    origin = pts.mean(axis=0)
    centered = pts - origin
    _, _, vh = np.linalg.svd(centered)
    direction = vh[0]
    distances = np.linalg.norm(np.cross(centered, direction), axis=1)
    if np.any(distances > eps):
        return None
    return origin, direction


def mean_and_cov(points):
    """Mean and sample covariance (denominator n - 1) of a set of points."""
    pts = np.asarray(points, dtype=float).reshape(-1, 3)
    if len(pts) == 0:
        raise ValueError("cannot compute the mean of no points")
    mean = pts.mean(axis=0)
    d = pts - mean
    denom = len(pts) - 1 if len(pts) > 1 else 1
    return mean, d.T @ d / denom


def update_mean_and_cov(hist_n, cur_n, hist_mu, hist_var, cur_mu, cur_var):
    """Merge the mean and covariance of two batches of points."""
    hist_mu = np.asarray(hist_mu, dtype=float)
    cur_mu = np.asarray(cur_mu, dtype=float)
    total = hist_n + cur_n
    new_mu = (hist_n * hist_mu + cur_n * cur_mu) / total
    dh = hist_mu - new_mu
    dc = cur_mu - new_mu
    new_var = (
        hist_n * (np.asarray(hist_var, dtype=float) + np.outer(dh, dh))
        + cur_n * (np.asarray(cur_var, dtype=float) + np.outer(dc, dc))
    ) / total
    return new_mu, new_var


def voxel_key(point, inv_voxel_size):
    """Voxel index of a point (tuple) or of an (N, 3) array (int array), rounding half away from zero."""
    scaled = np.asarray(point, dtype=float) * inv_voxel_size
    rounded = np.where(scaled >= 0, np.floor(scaled + 0.5), np.ceil(scaled - 0.5)).astype(np.int64)
    if rounded.ndim == 1:
        return tuple(int(v) for v in rounded)
    return rounded