"""Incremental NDT: a voxel map that grows with each added cloud and forgets old voxels."""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field

import numpy as np

from .geometry import SE3, RegistrationError, mean_and_cov, so3_exp, update_mean_and_cov, voxel_key
from .ndt import NearbyType, _as_cloud, _normal_equations, _regularized_info, _VoxelIndex, nearby_offsets

logger = logging.getLogger(__name__)

_COV_DAMPING = 1e-3
_SINGLE_POINT_INFO = 1e2
_INFO_RATIO = 0.01  # weight of each point's feedback in the filter update
# position block first, then rotation block of the 18-dimensional error state
_STATE_INDEX = np.array([6, 7, 8, 0, 1, 2])


@dataclass
class IncNdtOptions:
    max_iteration: int = 4
    voxel_size: float = 1.0
    min_effective_pts: int = 10
    min_pts_in_voxel: int = 5
    max_pts_in_voxel: int = 50
    eps: float = 1e-3
    res_outlier_th: float = 5.0
    capacity: int = 100000
    nearby_type: NearbyType = NearbyType.NEARBY6

    @property
    def inv_voxel_size(self):
        return 1.0 / self.voxel_size


@dataclass
class IncVoxel:
    """Points waiting to be merged plus the voxel's current Gaussian estimate."""

    pts: list = field(default_factory=list)
    mu: np.ndarray = field(default_factory=lambda: np.zeros(3))
    sigma: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    info: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    ndt_estimated: bool = False
    num_pts: int = 0

    def add_point(self, point):
        self.pts.append(np.asarray(point, dtype=float).reshape(3))
        if not self.ndt_estimated:
            self.num_pts += 1


class IncNdt3d:
    """NDT registration against a voxel map that is updated incrementally.

    Voxels are kept in least-recently-updated order; once the map holds
    ``capacity`` voxels the stalest one is dropped.
    """

    def __init__(self, options=None):
        self.options = options or IncNdtOptions()
        self._offsets = nearby_offsets(self.options.nearby_type)
        self.grids = OrderedDict()  # most recently touched voxels at the end
        self._source = None
        self._first_scan = True

    def num_grids(self):
        return len(self.grids)

    def add_cloud(self, cloud_world):
        """Insert points given in the map frame and refresh the touched voxels."""
        pts = np.asarray(cloud_world, dtype=float).reshape(-1, 3)
        keys = voxel_key(pts, self.options.inv_voxel_size)
        active = set()
        for key_row, pt in zip(keys.tolist(), pts):
            key = tuple(key_row)
            voxel = self.grids.get(key)
            if voxel is None:
                voxel = IncVoxel()
                voxel.add_point(pt)
                self.grids[key] = voxel
                if len(self.grids) >= self.options.capacity:
                    self.grids.popitem(last=False)
            else:
                voxel.add_point(pt)
                self.grids.move_to_end(key)
            active.add(key)

        for key in sorted(active):
            voxel = self.grids.get(key)
            if voxel is not None:
                self._update_voxel(voxel)
        self._first_scan = False

    def _update_voxel(self, v):
        opts = self.options
        if self._first_scan:
            if len(v.pts) > 1:
                v.mu, v.sigma = mean_and_cov(v.pts)
                v.info = np.linalg.inv(v.sigma + np.eye(3) * _COV_DAMPING)
            else:
                v.mu = v.pts[0].copy()
                v.info = np.eye(3) * _SINGLE_POINT_INFO
            v.ndt_estimated = True
            v.pts.clear()
            return

        if v.ndt_estimated and v.num_pts > opts.max_pts_in_voxel:
            return

        if not v.ndt_estimated and len(v.pts) > opts.min_pts_in_voxel:
            v.mu, v.sigma = mean_and_cov(v.pts)
            v.info = np.linalg.inv(v.sigma + np.eye(3) * _COV_DAMPING)
            v.ndt_estimated = True
            v.pts.clear()
        elif v.ndt_estimated and len(v.pts) > opts.min_pts_in_voxel:
            cur_mu, cur_var = mean_and_cov(v.pts)
            v.mu, v.sigma = update_mean_and_cov(v.num_pts, len(v.pts), v.mu, v.sigma, cur_mu, cur_var)
            v.num_pts += len(v.pts)
            v.pts.clear()
            v.info = _regularized_info(v.sigma)

    def set_source(self, source):
        self._source = _as_cloud(source)

    def _index(self):
        if not self.grids:
            raise RegistrationError("voxel map is empty")
        if self._source is None:
            raise RegistrationError("source cloud is not set")
        estimated = [(k, v) for k, v in self.grids.items() if v.ndt_estimated]
        if not estimated:
            return _VoxelIndex(np.zeros((0, 3)), np.zeros((0, 3)), np.zeros((0, 3, 3)))
        return _VoxelIndex(
            [k for k, _ in estimated],
            [v.mu for _, v in estimated],
            [v.info for _, v in estimated],
        )

    def _equations(self, pose, index):
        return _normal_equations(
            pose, self._source, self._offsets, self.options.inv_voxel_size, index, self.options.res_outlier_th
        )

    def align(self, initial_pose=None):
        """Estimate the pose taking the source onto the map.

        Raises RegistrationError when too few residuals are usable; the error's
        ``pose`` attribute then holds the pose reached so far.
        """
        index = self._index()
        logger.debug("aligning with inc ndt, pts: %d, grids: %d", len(self._source), len(self.grids))
        opts = self.options
        pose = initial_pose if initial_pose is not None else SE3()
        for iteration in range(opts.max_iteration):
            hessian, gradient, total_res, count = self._equations(pose, index)
            if count < opts.min_effective_pts:
                error = RegistrationError(f"effective num too small: {count}")
                error.pose = pose
                raise error
            dx = np.linalg.inv(hessian) @ gradient
            pose = SE3(pose.rotation @ so3_exp(dx[:3]), pose.translation + dx[3:])
            step = float(np.linalg.norm(dx))
            logger.debug(
                "iter %d total res: %g, eff: %d, mean res: %g, dxn: %g",
                iteration, total_res, count, total_res / count, step,
            )
            if step < opts.eps:
                logger.debug("converged, dx = %s", dx)
                break
        return pose

    def compute_residual_and_jacobians(self, pose):
        """Return ``(H^T V H, H^T V r)`` over the 18-dimensional filter error state."""
        index = self._index()
        hessian, gradient, _, count = self._equations(pose, index)
        htvh = np.zeros((18, 18))
        htvr = np.zeros(18)
        htvh[np.ix_(_STATE_INDEX, _STATE_INDEX)] = hessian * _INFO_RATIO
        htvr[_STATE_INDEX] = gradient * _INFO_RATIO
        logger.debug("effective: %d", count)
        return htvh, htvr