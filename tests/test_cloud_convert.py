import numpy as np
import pytest

from lidarodom.cloud_convert import CloudConvert, LidarType, LivoxPoint, RawPoint


def _livox(n, **kw):
    return [LivoxPoint(float(i + 1), 2.0 * i, 0.5, reflectivity=float(i), **kw) for i in range(n)]


def test_livox_drops_first_point():
    pts = _livox(4)
    out = CloudConvert().process_livox(pts)
    assert len(out) == 3
    assert np.allclose(out.points, [(p.x, p.y, p.z) for p in pts[1:]])
    assert np.allclose(out.intensity, [p.reflectivity for p in pts[1:]])


def test_livox_tag_and_line_filters():
    pts = [
        LivoxPoint(1.0, 0.0, 0.0),
        LivoxPoint(2.0, 0.0, 0.0, tag=0x20),
        LivoxPoint(3.0, 0.0, 0.0, tag=0x10),
        LivoxPoint(4.0, 0.0, 0.0, line=6),
        LivoxPoint(5.0, 0.0, 0.0, line=5),
    ]
    out = CloudConvert(num_scans=6).process_livox(pts)
    assert np.allclose(out.points[:, 0], [3.0, 5.0])


def test_livox_repeated_point_is_dropped():
    pts = [LivoxPoint(1.0, 1.0, 1.0), LivoxPoint(2.0, 2.0, 2.0), LivoxPoint(2.0, 2.0, 2.0)]
    out = CloudConvert().process_livox(pts)
    assert len(out) == 1


def test_livox_offset_time_in_milliseconds():
    pts = [LivoxPoint(1.0, 0.0, 0.0), LivoxPoint(2.0, 0.0, 0.0, offset_time=2_000_000)]
    out = CloudConvert().process_livox(pts)
    assert out.time[0] == pytest.approx(2.0)


def test_livox_point_filter_keeps_multiples():
    pts = _livox(7)
    out = CloudConvert(point_filter_num=2).process_livox(pts)
    assert np.allclose(out.points[:, 0], [pts[i].x for i in (2, 4, 6)])


def test_livox_empty_packet():
    assert len(CloudConvert().process_livox([])) == 0


def test_ouster_time_and_filter():
    pts = [RawPoint(float(i), 0.0, 0.0, intensity=1.0, t=5e6 * i) for i in range(4)]
    out = CloudConvert(LidarType.OUST64, point_filter_num=2).process(pts)
    assert np.allclose(out.points[:, 0], [0.0, 2.0])
    assert np.allclose(out.time, [p.t / 1e6 for p in (pts[0], pts[2])])


def test_velodyne_given_time_drops_near_points():
    scale = 1e-3
    pts = [
        RawPoint(1.0, 0.0, 0.0, time=10.0),
        RawPoint(5.0, 0.0, 0.0, time=20.0),
        RawPoint(0.0, 5.0, 0.0, time=30.0),
    ]
    out = CloudConvert(LidarType.VELO32, num_scans=32, time_scale=scale).process(pts)
    assert len(out) == 2
    assert np.allclose(out.time, [p.time * scale for p in pts[1:]])


def test_velodyne_computed_times_are_monotonic():
    yaws = np.deg2rad([10.0, 5.0, 0.0, -5.0, -20.0])
    pts = [RawPoint(5 * np.cos(a), 5 * np.sin(a), 0.0, ring=0) for a in yaws]
    out = CloudConvert(LidarType.VELO32, num_scans=32).process(pts)
    assert len(out) == len(pts) - 1
    assert np.all(out.time > 0)
    assert np.all(np.diff(out.time) > 0)


def test_velodyne_ring_out_of_range():
    pts = [RawPoint(5.0, 0.0, 0.0, ring=40), RawPoint(6.0, 0.0, 0.0, ring=40)]
    with pytest.raises(ValueError):
        CloudConvert(LidarType.VELO32, num_scans=32).process(pts)


def test_process_rejects_avia():
    with pytest.raises(ValueError):
        CloudConvert(LidarType.AVIA).process([RawPoint(5.0, 0.0, 0.0)])


def test_invalid_filter_num():
    with pytest.raises(ValueError):
        CloudConvert(point_filter_num=0)


def test_load_yaml(tmp_path):
    path = tmp_path / "lidar.yaml"
    path.write_text(
        "preprocess:\n  time_scale: 0.5\n  lidar_type: 2\n  scan_line: 32\npoint_filter_num: 4\n",
        encoding="utf-8",
    )
    conv = CloudConvert()
    conv.load_yaml(path)
    assert conv.lidar_type is LidarType.VELO32
    assert conv.num_scans == 32
    assert conv.point_filter_num == 4
    assert conv.time_scale == pytest.approx(0.5)


def test_load_yaml_unknown_type_keeps_previous(tmp_path):
    path = tmp_path / "lidar.yaml"
    path.write_text(
        "preprocess:\n  time_scale: 1.0\n  lidar_type: 9\n  scan_line: 16\npoint_filter_num: 1\n",
        encoding="utf-8",
    )
    conv = CloudConvert(LidarType.OUST64)
    conv.load_yaml(path)
    assert conv.lidar_type is LidarType.OUST64
    assert conv.num_scans == 16