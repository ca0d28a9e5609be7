# lidarodom

Building blocks for lidar and lidar-inertial odometry in plain Python on top of NumPy and
SciPy: rigid transforms, ICP and NDT registration, an incremental NDT voxel map, LOAM-style
feature extraction, raw lidar point conversion, lidar/IMU synchronisation and an iterated
error-state Kalman filter.

## Install

```
pip install .
pip install ".[test]"   # with the test dependencies
```

## Modules

- `lidarodom.geometry`
  - `SE3(rotation, translation)`: a rigid transform `p -> R p + t` with `inverse()`,
    composition and point transformation through `@`, `apply(points)` for one point or an
    `(N, 3)` array, `log()` (tangent vector `(upsilon, omega)`), `rotation_log()` and
    `matrix()` (4x4).
  - `hat`, `so3_exp`, `so3_log`: SO(3) helpers.
  - `fit_plane(points)`: unit-normal plane `(nx, ny, nz, d)`, or `None` when any point lies
    more than 0.01 from it.
  - `fit_line(points, eps)`: `(origin, direction)`, or `None` when any point lies farther
    than `eps` from the line.
  - `mean_and_cov`, `update_mean_and_cov`: sample mean/covariance and merging of two batches.
  - `voxel_key(point, inv_voxel_size)`: voxel index, rounding half away from zero.
  - `RegistrationError`: raised when a registration cannot produce a pose.
- `lidarodom.pointcloud`
  - `Imu(timestamp, gyro, acce)`: one IMU reading.
  - `FullCloud(points, intensity, time, ring)`: points with per-point intensity, time
    offset in milliseconds and scan ring; `len()` and `transformed(pose)`.
  - `voxel_filter(points, leaf_size)`: replaces the points of each voxel with their centroid.
- `lidarodom.simulation`
  - `generate(options=None, seed=0)`: a box-shaped target cloud sampled over the six faces
    and a source cloud moved by a random pose. The returned `SimulatedData.pose` maps target
    points onto source points. Box size, point count and pose noise are set through
    `SimulationOptions`.
- `lidarodom.icp`
  - `Icp3d(IcpOptions())` with `set_target`, `set_source`, `set_ground_truth` and
    `align_p2p`, `align_p2plane`, `align_p2line`. Point-to-plane and point-to-line fit
    planes and lines to five nearest neighbours (SciPy k-d tree). For point-to-point and
    point-to-plane the centroid difference replaces the initial translation unless
    `use_initial_translation` is set; point-to-line uses it only when that option is set.
- `lidarodom.ndt`
  - `Ndt3d(NdtOptions())` with `set_target`, `set_source`, `set_ground_truth` and
    `align(initial_pose)`. Voxels need more than `min_pts_in_voxel` points; each source point
    is matched against its own voxel (`NearbyType.CENTER`) or also the six face neighbours
    (`NearbyType.NEARBY6`, the default). `remove_centroid=True` starts from the centroid
    difference.
- `lidarodom.ndt_inc`
  - `IncNdt3d(IncNdtOptions())`: a voxel map grown with `add_cloud(points_in_map_frame)`.
    Voxels are kept in least-recently-updated order and the stalest is dropped once the map
    reaches `capacity`. `align(initial_pose)` registers the cloud given to `set_source`;
    when it fails, the `RegistrationError` carries the pose reached so far as `.pose`.
    `compute_residual_and_jacobians(pose)` returns `(H^T V H, H^T V r)` over an
    18-dimensional error state, ready for `IESKF.update_using_custom_observe`.
    `num_grids()` counts voxels.
- `lidarodom.features`
  - `extract(cloud, num_scans=16)`: edge and surface points of a `FullCloud` whose points
    carry their ring. Rings with fewer than 131 points are skipped; each ring is cut into six
    sectors with at most 20 edge points each. `curvatures` and `extract_from_sector` expose
    the steps.
- `lidarodom.cloud_convert`
  - `CloudConvert(lidar_type, point_filter_num, num_scans, time_scale)` and
    `load_yaml(path)` reading `preprocess.time_scale`, `preprocess.lidar_type`,
    `preprocess.scan_line` and `point_filter_num`.
  - `process_livox(points)` converts `LivoxPoint`s; `process(points)` converts `RawPoint`s
    for `LidarType.VELO32` (points closer than 4 m dropped; times computed from yaw when the
    last point has no time) and `LidarType.OUST64`. Output times are in milliseconds.
- `lidarodom.measure_sync`
  - `MessageSync(callback, converter)`: buffers scans (`process_cloud(timestamp, points)`,
    `process_livox(timestamp, points)`) and IMU readings (`process_imu(imu)`), and calls
    `callback(MeasureGroup)` once the IMU data reaches the end of the oldest scan.
- `lidarodom.iekf`
  - `IESKF(IeskfOptions(), init_bg, init_ba, gravity)` over the error state
    `(p, v, theta, bg, ba, g)`: `predict(imu)` (returns `False` and skips when the gap
    exceeds five times `imu_dt`; raises `ValueError` for a reading older than the filter),
    `update_using_custom_observe(observe)`, `nominal_state()` (a `NavState`),
    `nominal_se3()`, `set_state`, `set_covariance`, `set_initial_conditions`.

## Example

```python
from lidarodom.geometry import SE3
from lidarodom.icp import Icp3d, IcpOptions
from lidarodom.ndt import Ndt3d, NdtOptions, NearbyType
from lidarodom.simulation import generate

data = generate(seed=1)

icp = Icp3d(IcpOptions())
icp.set_source(data.source)
icp.set_target(data.target)
pose = icp.align_p2p(SE3())          # moves source points onto the target
print(pose.translation, data.pose.inverse().translation)

ndt = Ndt3d(NdtOptions(voxel_size=0.5, remove_centroid=True, nearby_type=NearbyType.CENTER))
ndt.set_source(data.source)
ndt.set_target(data.target)
pose = ndt.align(SE3())
```

Combining the incremental NDT map with the filter:

```python
from lidarodom.iekf import IESKF
from lidarodom.ndt_inc import IncNdt3d

ndt = IncNdt3d()
ndt.add_cloud(first_scan)            # (N, 3) points in the map frame
ndt.set_source(next_scan)
filt = IESKF()
filt.update_using_custom_observe(ndt.compute_residual_and_jacobians)
print(filt.nominal_se3())
```

Every alignment raises `lidarodom.geometry.RegistrationError` when too few points find a match.

## What the package does not do

It provides the parts, not a running odometry: there is no loop that keeps keyframes and a
local map and registers each new scan, no lidar-inertial pipeline tying `MessageSync`,
`IESKF` and `IncNdt3d` together, and no command-line program. It does not read or write point
cloud files or recorded sensor logs, and it has no viewer; clouds go in and come out as NumPy
arrays or `FullCloud` objects.

## Tests

```
pytest
```