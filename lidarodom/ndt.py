"""Voxel-based normal distributions transform registration."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from .geometry import SE3, RegistrationError, _hat_many, mean_and_cov, so3_exp, voxel_key

logger = logging.getLogger(__name__)

_KEY_BIAS = 1 << 20
_KEY_MASK = (1 << 21) - 1


class NearbyType(Enum):
    CENTER = "center"  # only the voxel holding the point
    NEARBY6 = "nearby6"  # plus its six face neighbours


_NEARBY6 = ((0, 0, 0), (-1, 0, 0), (1, 0, 0), (0, 1, 0), (0, -1, 0), (0, 0, -1), (0, 0, 1))


def nearby_offsets(nearby_type):
    """Voxel offsets searched around a point's own voxel."""
    if nearby_type is NearbyType.CENTER:
        return [(0, 0, 0)]
    return list(_NEARBY6)


@dataclass
class NdtOptions:
    max_iteration: int = 20
    voxel_size: float = 1.0
    min_effective_pts: int = 10
    min_pts_in_voxel: int = 3
    eps: float = 1e-2
    res_outlier_th: float = 20.0
    remove_centroid: bool = False
    nearby_type: NearbyType = NearbyType.NEARBY6

    @property
    def inv_voxel_size(self):
        return 1.0 / self.voxel_size


@dataclass
class Voxel:
    indices: list
    mu: np.ndarray = field(default_factory=lambda: np.zeros(3))
    sigma: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    info: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))


def _regularized_info(sigma):
    """Inverse of a covariance whose small singular values are lifted to 1e-3 of the largest."""
    u, s, vh = np.linalg.svd(sigma)
    lam = s.copy()
    lam[1:] = np.maximum(lam[1:], lam[0] * 1e-3)
    with np.errstate(divide="ignore"):
        inv = 1.0 / lam
    return vh.T @ np.diag(inv) @ u.T


def _encode(keys):
    k = (np.asarray(keys, dtype=np.int64) + _KEY_BIAS) & _KEY_MASK
    return (k[..., 0] << 42) | (k[..., 1] << 21) | k[..., 2]


class _VoxelIndex:
    """Sorted lookup table from voxel keys to Gaussian parameters."""

    def __init__(self, keys, mus, infos):
        codes = _encode(np.asarray(keys, dtype=np.int64).reshape(-1, 3))
        order = np.argsort(codes)
        self._codes = codes[order]
        self.mu = np.asarray(mus, dtype=float).reshape(-1, 3)[order]
        self.info = np.asarray(infos, dtype=float).reshape(-1, 3, 3)[order]

    def __len__(self):
        return len(self._codes)

    def lookup(self, keys):
        codes = _encode(keys)
        if len(self._codes) == 0:
            return np.zeros(codes.shape, dtype=bool), np.zeros(codes.shape, dtype=np.int64)
        pos = np.searchsorted(self._codes, codes)
        clipped = np.minimum(pos, len(self._codes) - 1)
        found = (pos < len(self._codes)) & (self._codes[clipped] == codes)
        return found, clipped


def _normal_equations(pose, source, offsets, inv_voxel_size, index, outlier_th):
    """Accumulate the Gauss-Newton system of the NDT cost at ``pose``."""
    qs = pose.apply(source)
    keys = voxel_key(qs, inv_voxel_size)
    rot_part = -np.einsum("ij,njk->nik", pose.rotation, _hat_many(source))
    hessian = np.zeros((6, 6))
    gradient = np.zeros(6)
    total_res = 0.0
    count = 0
    for off in offsets:
        found, vox = index.lookup(keys + np.asarray(off, dtype=np.int64))
        if not found.any():
            continue
        sel = vox[found]
        e = qs[found] - index.mu[sel]
        info = index.info[sel]
        with np.errstate(invalid="ignore"):
            res = np.einsum("ni,nij,nj->n", e, info, e)
        ok = ~np.isnan(res) & (res <= outlier_th)
        if not ok.any():
            continue
        e, info, res = e[ok], info[ok], res[ok]
        jac = np.concatenate([rot_part[found][ok], np.broadcast_to(np.eye(3), (len(e), 3, 3))], axis=2)
        jt_info = np.transpose(jac, (0, 2, 1)) @ info
        hessian += (jt_info @ jac).sum(axis=0)
        gradient -= np.einsum("nij,nj->i", jt_info, e)
        total_res += float(res.sum())
        count += len(e)
    return hessian, gradient, total_res, count


def _as_cloud(points):
    pts = np.asarray(points, dtype=float).reshape(-1, 3)
    if len(pts) == 0:
        raise ValueError("point cloud is empty")
    return pts


class Ndt3d:
    """Registers a source cloud onto a voxelized target with Gauss-Newton NDT."""

    def __init__(self, options=None):
        self.options = options or NdtOptions()
        self._offsets = nearby_offsets(self.options.nearby_type)
        self.grids = {}
        self._index = None
        self._target = None
        self._source = None
        self._target_center = np.zeros(3)
        self._source_center = np.zeros(3)
        self._gt_pose = None

    def set_target(self, target):
        self._target = _as_cloud(target)
        self._build_voxels()
        self._target_center = self._target.mean(axis=0)

    def set_source(self, source):
        self._source = _as_cloud(source)
        self._source_center = self._source.mean(axis=0)

    def set_ground_truth(self, pose):
        self._gt_pose = pose

    def _build_voxels(self):
        pts = self._target
        keys = voxel_key(pts, self.options.inv_voxel_size)
        unique, inverse = np.unique(keys, axis=0, return_inverse=True)
        inverse = inverse.reshape(-1)
        order = np.argsort(inverse, kind="stable")
        groups = np.split(order, np.cumsum(np.bincount(inverse))[:-1])
        self.grids = {}
        for key, members in zip(unique, groups):
            if len(members) <= self.options.min_pts_in_voxel:
                continue
            mu, sigma = mean_and_cov(pts[members])
            self.grids[tuple(int(k) for k in key)] = Voxel(
                indices=members.tolist(), mu=mu, sigma=sigma, info=_regularized_info(sigma)
            )
        voxels = list(self.grids.values())
        self._index = _VoxelIndex(
            list(self.grids.keys()) or np.zeros((0, 3)),
            [v.mu for v in voxels] or np.zeros((0, 3)),
            [v.info for v in voxels] or np.zeros((0, 3, 3)),
        )

    def align(self, initial_pose=None):
        """Estimate the pose taking source points onto the target; raises RegistrationError."""
        if not self.grids:
            raise RegistrationError("target has no usable voxels")
        if self._source is None:
            raise RegistrationError("source cloud is not set")
        opts = self.options
        pose = initial_pose if initial_pose is not None else SE3()
        if opts.remove_centroid:
            pose = SE3(pose.rotation, self._target_center - self._source_center)
            logger.debug("init trans set to %s", pose.translation)

        for iteration in range(opts.max_iteration):
            hessian, gradient, total_res, count = _normal_equations(
                pose, self._source, self._offsets, opts.inv_voxel_size, self._index, opts.res_outlier_th
            )
            if count < opts.min_effective_pts:
                raise RegistrationError(f"effective num too small: {count}")
            dx = np.linalg.inv(hessian) @ gradient
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
                break
        return pose