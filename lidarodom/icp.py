"""Iterative closest point registration: point-to-point, point-to-plane and point-to-line."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from scipy.spatial import cKDTree

from .geometry import _PLANE_EPS, SE3, RegistrationError, _hat_many, hat, so3_exp

logger = logging.getLogger(__name__)

_NUM_NEIGHBOURS = 5


@dataclass
class IcpOptions:
    max_iteration: int = 20
    max_nn_distance: float = 1.0  # squared distance limit for point-to-point pairs
    max_plane_distance: float = 0.05
    max_line_distance: float = 0.5
    min_effective_pts: int = 10
    eps: float = 1e-2
    use_initial_translation: bool = False


def _as_cloud(points):
    pts = np.asarray(points, dtype=float).reshape(-1, 3)
    if len(pts) == 0:
        raise ValueError("point cloud is empty")
    return pts


def _fit_planes(neighbours):
    """Plane coefficients (N, 4) with unit normals and a mask of successful fits."""
    a = np.concatenate([neighbours, np.ones(neighbours.shape[:2] + (1,))], axis=2)
    _, _, vh = np.linalg.svd(a)
    coeffs = vh[:, -1, :]
    norm = np.linalg.norm(coeffs[:, :3], axis=1)
    valid = norm > 0.0
    coeffs = coeffs / np.where(valid, norm, 1.0)[:, None]
    residuals = np.abs(np.einsum("nki,ni->nk", a, coeffs))
    valid &= np.all(residuals <= _PLANE_EPS, axis=1)
    return coeffs, valid


def _fit_lines(neighbours, eps):
    """Line origins and directions (N, 3) and a mask of successful fits."""
    origins = neighbours.mean(axis=1)
    centered = neighbours - origins[:, None, :]
    _, _, vh = np.linalg.svd(centered)
    directions = vh[:, 0, :]
    distances = np.linalg.norm(np.cross(centered, directions[:, None, :]), axis=2)
    valid = np.all(distances <= eps, axis=1)
    return origins, directions, valid


class Icp3d:
    """Finds the pose that moves the source cloud onto the target cloud."""

    def __init__(self, options=None):
        self.options = options or IcpOptions()
        self._target = None
        self._source = None
        self._tree = None
        self._target_center = np.zeros(3)
        self._source_center = np.zeros(3)
        self._gt_pose = None

    def set_target(self, target):
        self._target = _as_cloud(target)
        self._tree = cKDTree(self._target)
        self._target_center = self._target.mean(axis=0)
        logger.debug("target center: %s", self._target_center)

    def set_source(self, source):
        self._source = _as_cloud(source)
        self._source_center = self._source.mean(axis=0)
        logger.debug("source center: %s", self._source_center)

    def set_ground_truth(self, pose):
        self._gt_pose = pose

    def _check_ready(self):
        if self._target is None:
            raise RegistrationError("target cloud is not set")
        if self._source is None:
            raise RegistrationError("source cloud is not set")

    def _centered(self, pose):
        return SE3(pose.rotation, self._target_center - self._source_center)

    def _neighbours(self, qs):
        k = min(_NUM_NEIGHBOURS, len(self._target))
        _, idx = self._tree.query(qs, k=k)
        idx = np.asarray(idx).reshape(len(qs), k)
        return self._target[idx], k

    def align_p2p(self, initial_pose=None):
        """Point-to-point Gauss-Newton ICP."""
        logger.debug("aligning with point to point")
        self._check_ready()
        pose = initial_pose if initial_pose is not None else SE3()
        if not self.options.use_initial_translation:
            pose = self._centered(pose)

        def residuals(current):
            qs = current.apply(self._source)
            dist, idx = self._tree.query(qs, k=1)
            ok = np.asarray(dist) ** 2 <= self.options.max_nn_distance
            q = self._source[ok]
            e = self._target[np.asarray(idx)[ok]] - qs[ok]
            jac = np.empty((len(q), 3, 6))
            jac[:, :, :3] = np.einsum("ij,njk->nik", current.rotation, _hat_many(q))
            jac[:, :, 3:] = -np.eye(3)
            return jac, e

        return self._gauss_newton(pose, residuals)

    def align_p2plane(self, initial_pose=None):
        """Point-to-plane Gauss-Newton ICP using planes fitted to five neighbours."""
        logger.debug("aligning with point to plane")
        self._check_ready()
        pose = initial_pose if initial_pose is not None else SE3()
        if not self.options.use_initial_translation:
            pose = self._centered(pose)

        def residuals(current):
            qs = current.apply(self._source)
            neighbours, k = self._neighbours(qs)
            if k <= 3:
                return np.zeros((0, 1, 6)), np.zeros((0, 1))
            planes, ok = _fit_planes(neighbours)
            dis = np.einsum("ni,ni->n", planes[:, :3], qs) + planes[:, 3]
            ok &= np.abs(dis) <= self.options.max_plane_distance
            n = planes[ok, :3]
            q = self._source[ok]
            jac = np.empty((len(q), 1, 6))
            rot_hat = np.einsum("ij,njk->nik", current.rotation, _hat_many(q))
            jac[:, 0, :3] = -np.einsum("ni,nij->nj", n, rot_hat)
            jac[:, 0, 3:] = n
            return jac, dis[ok][:, None]

        return self._gauss_newton(pose, residuals)

    def align_p2line(self, initial_pose=None):
        """Point-to-line Gauss-Newton ICP using lines fitted to five neighbours.

        Unlike the other variants, the centroid difference replaces the initial
        translation only when ``use_initial_translation`` is set.
        """
        logger.debug("aligning with point to line")
        self._check_ready()
        pose = initial_pose if initial_pose is not None else SE3()
        if self.options.use_initial_translation:
            pose = self._centered(pose)
            logger.debug("init trans set to %s", pose.translation)

        def residuals(current):
            qs = current.apply(self._source)
            neighbours, k = self._neighbours(qs)
            if k != _NUM_NEIGHBOURS:
                return np.zeros((0, 3, 6)), np.zeros((0, 3))
            origins, directions, ok = _fit_lines(neighbours, self.options.max_line_distance)
            d_hat = _hat_many(directions)
            err = np.einsum("nij,nj->ni", d_hat, qs - origins)
            ok &= np.linalg.norm(err, axis=1) <= self.options.max_line_distance
            d_hat = d_hat[ok]
            q = self._source[ok]
            rot_hat = np.einsum("ij,njk->nik", current.rotation, _hat_many(q))
            jac = np.empty((len(q), 3, 6))
            jac[:, :, :3] = -d_hat @ rot_hat
            jac[:, :, 3:] = d_hat
            return jac, err[ok]

        return self._gauss_newton(pose, residuals)

    def _gauss_newton(self, pose, residuals):
        opts = self.options
        for iteration in range(opts.max_iteration):
            jac, err = residuals(pose)
            count = len(err)
            if count < opts.min_effective_pts:
                raise RegistrationError(f"effective num too small: {count}")
            jt = np.transpose(jac, (0, 2, 1))
            hessian = (jt @ jac).sum(axis=0)
            gradient = -np.einsum("nij,nj->i", jt, err)
            total_res = float(np.sum(err * err))
            try:
                dx = np.linalg.inv(hessian) @ gradient
            except np.linalg.LinAlgError as exc:
                raise RegistrationError("normal equations are singular") from exc
            pose = SE3(pose.rotation @ so3_exp(dx[:3]), pose.translation + dx[3:])
            step = float(np.linalg.norm(dx))
            logger.debug(
                "iter %d total res: %g, eff: %d, mean res: %g, dxn: %g",
                iteration, total_res, count, total_res / count, step,
            )
            if self._gt_pose is not None:
                error = float(np.linalg.norm((self._gt_pose.inverse() @ pose).log()))
                logger.debug("iter %d pose error: %g", iteration, error)
            if step < opts.eps:
                logger.debug("converged, dx = %s", dx)
                break
        return pose


__all__ = ["IcpOptions", "Icp3d", "hat"]