import numpy as np
import pytest

from lidarodom.geometry import SE3, RegistrationError, so3_exp
from lidarodom.ndt import NearbyType
from lidarodom.ndt_inc import IncNdt3d, IncNdtOptions, IncVoxel
from lidarodom.simulation import SimulationOptions, generate


def _cluster(rng, n, center=(0.0, 0.0, 0.0)):
    return rng.uniform(-0.4, 0.4, size=(n, 3)) + np.asarray(center)


def test_add_point_counts_only_before_estimation():
    v = IncVoxel()
    v.add_point([1.0, 2.0, 3.0])
    v.add_point([1.0, 2.0, 3.0])
    assert v.num_pts == 2
    v.ndt_estimated = True
    v.add_point([0.0, 0.0, 0.0])
    assert v.num_pts == 2
    assert len(v.pts) == 3


def test_first_scan_estimates_every_voxel():
    rng = np.random.default_rng(1)
    pts = np.vstack([_cluster(rng, 4), [[5.0, 5.0, 5.0]]])
    ndt = IncNdt3d()
    ndt.add_cloud(pts)
    assert ndt.num_grids() == 2
    multi = ndt.grids[(0, 0, 0)]
    single = ndt.grids[(5, 5, 5)]
    assert multi.ndt_estimated and single.ndt_estimated
    np.testing.assert_allclose(multi.mu, pts[:4].mean(axis=0))
    assert multi.pts == []
    np.testing.assert_allclose(single.info, np.eye(3) * 1e2)
    np.testing.assert_allclose(single.mu, [5.0, 5.0, 5.0])


def test_capacity_evicts_least_recent():
    ndt = IncNdt3d(IncNdtOptions(capacity=3))
    pts = np.array([[float(i) * 3, 0.0, 0.0] for i in range(5)])
    ndt.add_cloud(pts)
    assert ndt.num_grids() == 2
    assert list(ndt.grids.keys()) == [(9, 0, 0), (12, 0, 0)]


def test_later_scan_merges_mean():
    rng = np.random.default_rng(2)
    first = _cluster(rng, 10)
    second = _cluster(rng, 10)
    ndt = IncNdt3d()
    ndt.add_cloud(first)
    ndt.add_cloud(second)
    v = ndt.grids[(0, 0, 0)]
    assert v.num_pts == 20
    np.testing.assert_allclose(v.mu, np.vstack([first, second]).mean(axis=0))
    assert v.pts == []


def test_later_scan_keeps_few_points_pending():
    rng = np.random.default_rng(3)
    ndt = IncNdt3d()
    ndt.add_cloud(_cluster(rng, 10))
    mu_before = ndt.grids[(0, 0, 0)].mu.copy()
    ndt.add_cloud(_cluster(rng, 3))
    v = ndt.grids[(0, 0, 0)]
    assert len(v.pts) == 3
    np.testing.assert_allclose(v.mu, mu_before)


def test_full_voxel_is_frozen():
    rng = np.random.default_rng(4)
    ndt = IncNdt3d(IncNdtOptions(max_pts_in_voxel=5))
    ndt.add_cloud(_cluster(rng, 10))
    mu_before = ndt.grids[(0, 0, 0)].mu.copy()
    ndt.add_cloud(_cluster(rng, 10))
    v = ndt.grids[(0, 0, 0)]
    np.testing.assert_allclose(v.mu, mu_before)
    assert v.num_pts == 10


def test_new_voxel_waits_for_enough_points():
    rng = np.random.default_rng(5)
    ndt = IncNdt3d()
    ndt.add_cloud(_cluster(rng, 3))
    ndt.add_cloud(_cluster(rng, 4, center=(10.0, 0.0, 0.0)))
    assert not ndt.grids[(10, 0, 0)].ndt_estimated
    ndt.add_cloud(_cluster(rng, 4, center=(10.0, 0.0, 0.0)))
    assert ndt.grids[(10, 0, 0)].ndt_estimated


def test_align_requires_map_and_source():
    ndt = IncNdt3d()
    ndt.set_source(np.ones((3, 3)))
    with pytest.raises(RegistrationError):
        ndt.align()
    ndt2 = IncNdt3d()
    ndt2.add_cloud(np.ones((3, 3)))
    with pytest.raises(RegistrationError):
        ndt2.align()


def test_set_source_rejects_empty():
    with pytest.raises(ValueError):
        IncNdt3d().set_source(np.zeros((0, 3)))


def test_align_too_few_effective_points_carries_pose():
    rng = np.random.default_rng(6)
    pts = _cluster(rng, 20)
    ndt = IncNdt3d(IncNdtOptions(min_effective_pts=10**6))
    ndt.add_cloud(pts)
    ndt.set_source(pts)
    start = SE3(translation=[0.01, 0.0, 0.0])
    with pytest.raises(RegistrationError) as info:
        ndt.align(start)
    np.testing.assert_allclose(info.value.pose.translation, start.translation)


@pytest.fixture(scope="module")
def box():
    return generate(SimulationOptions(num_points=12000), seed=7).target


def test_align_recovers_small_offset(box):
    ndt = IncNdt3d(IncNdtOptions(max_iteration=10, nearby_type=NearbyType.CENTER))
    ndt.add_cloud(box)
    truth = SE3(so3_exp([0.0, 0.0, 0.01]), [0.05, -0.04, 0.03])
    ndt.set_source(truth.inverse().apply(box))
    pose = ndt.align(SE3())
    np.testing.assert_allclose(pose.translation, truth.translation, atol=0.03)
    assert np.linalg.norm((truth.inverse() @ pose).rotation_log()) < 0.01


def test_residual_and_jacobians_structure(box):
    ndt = IncNdt3d()
    ndt.add_cloud(box)
    ndt.set_source(box)
    htvh, htvr = ndt.compute_residual_and_jacobians(SE3(translation=[0.02, 0.0, 0.0]))
    assert htvh.shape == (18, 18) and htvr.shape == (18,)
    np.testing.assert_allclose(htvh, htvh.T, atol=1e-9)
    assert np.all(htvh[3:6] == 0.0) and np.all(htvh[9:] == 0.0)
    assert np.all(htvr[3:6] == 0.0) and np.all(htvr[9:] == 0.0)
    assert np.linalg.eigvalsh(htvh).min() > -1e-9
    assert np.diag(htvh)[0:3].sum() > 0.0