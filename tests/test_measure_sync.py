import numpy as np
import pytest

from lidarodom.cloud_convert import CloudConvert, LidarType, LivoxPoint, RawPoint
from lidarodom.measure_sync import MeasureGroup, MessageSync
from lidarodom.pointcloud import Imu


def _imu(t):
    return Imu(t, np.zeros(3), np.array([0.0, 0.0, 9.8]))


def _scan():
    # ouster times are in ns: the last point is 100 ms after the first
    return [RawPoint(5.0, 0.0, 0.0, t=0.0), RawPoint(6.0, 0.0, 0.0, t=1e8)]


@pytest.fixture
def collected():
    return []


@pytest.fixture
def sync(collected):
    return MessageSync(collected.append, CloudConvert(LidarType.OUST64))


def test_group_collects_imu_up_to_scan_end(sync, collected):
    for t in (9.9, 10.0, 10.05, 10.12, 10.2):
        sync.process_imu(_imu(t))
    assert sync.process_cloud(10.0, _scan()) is True
    assert len(collected) == 1
    group = collected[0]
    assert isinstance(group, MeasureGroup)
    assert group.lidar_begin_time == 10.0
    assert group.lidar_end_time == pytest.approx(10.1)
    assert [imu.timestamp for imu in group.imu] == [9.9, 10.0, 10.05]
    assert len(group.lidar) == 2


def test_waits_until_imu_covers_scan(sync, collected):
    for t in (9.9, 10.0, 10.05):
        sync.process_imu(_imu(t))
    assert sync.process_cloud(10.0, _scan()) is False
    assert collected == []
    sync.process_imu(_imu(10.2))
    assert sync.process_cloud(10.3, _scan()) is True
    assert len(collected) == 1
    assert collected[0].lidar_begin_time == 10.0
    assert [imu.timestamp for imu in collected[0].imu] == [9.9, 10.0, 10.05]


def test_remaining_imu_goes_to_next_group(sync, collected):
    for t in (9.95, 10.05, 10.15, 10.25, 10.35, 10.45):
        sync.process_imu(_imu(t))
    assert sync.process_cloud(10.0, _scan()) is True
    assert sync.process_cloud(10.2, _scan()) is True
    assert len(collected) == 2
    first = [imu.timestamp for imu in collected[0].imu]
    second = [imu.timestamp for imu in collected[1].imu]
    assert first == [9.95, 10.05]
    assert second == [10.15, 10.25]
    assert all(imu.timestamp <= g.lidar_end_time for g in collected for imu in g.imu)


def test_imu_loop_back_clears_buffer(sync, collected):
    sync.process_imu(_imu(10.0))
    sync.process_imu(_imu(5.0))
    sync.process_imu(_imu(10.5))
    assert sync.process_cloud(10.0, _scan()) is True
    assert [imu.timestamp for imu in collected[0].imu] == [5.0]


def test_no_imu_means_no_group(sync, collected):
    assert sync.process_cloud(10.0, _scan()) is False
    assert collected == []


def test_empty_livox_scan_is_dropped(collected):
    sync = MessageSync(collected.append, CloudConvert(LidarType.AVIA))
    sync.process_imu(_imu(20.0))
    assert sync.process_livox(10.0, [LivoxPoint(1.0, 2.0, 3.0)]) is False
    assert collected == []


def test_livox_scan_is_synchronised(collected):
    sync = MessageSync(collected.append, CloudConvert(LidarType.AVIA))
    for t in (9.99, 10.0, 10.5):
        sync.process_imu(_imu(t))
    points = [LivoxPoint(1.0, 0.0, 0.0), LivoxPoint(2.0, 0.0, 0.0, offset_time=1000000)]
    assert sync.process_livox(10.0, points) is True
    group = collected[0]
    assert len(group.lidar) == 1
    assert group.lidar_begin_time == 10.0
    assert all(imu.timestamp <= group.lidar_end_time for imu in group.imu)


def test_works_without_callback():
    sync = MessageSync(None, CloudConvert(LidarType.OUST64))
    sync.process_imu(_imu(10.5))
    assert sync.process_cloud(10.0, _scan()) is True