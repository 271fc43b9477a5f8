"""
Tests for the per-model message unpackers and the loader factory.
"""

from types import SimpleNamespace

import numpy as np
import pytest

from conftest import (
    CLOUD_MSGTYPE,
    IMAGE_MSGTYPE,
    IMU_MSGTYPE,
    TI_RADAR_MSGTYPE,
    make_cloud_msg,
    make_image_msg,
    make_imu_msg,
    make_radar_msg,
    make_stamp,
)
from ctcalib.sensors.frames import CameraFrame, ImuFrame, LiDARFrame, RadarTargetArray
from ctcalib.sensors.loaders import (
    SensorModality,
    get_loader,
    is_rs_camera,
    pointcloud2_to_structured,
    stamp_to_sec,
    supported_models,
)


class TestFactory:
    """Closed set of sensor models."""

    def test_unknown_model(self):
        assert get_loader("NOT_A_SENSOR") is None
        assert not is_rs_camera("NOT_A_SENSOR")

    def test_modalities(self):
        assert "SENSOR_IMU" in supported_models(SensorModality.IMU)
        assert "VLP_POINTS" in supported_models(SensorModality.LIDAR)
        assert "AWR1843BOOST_RAW" in supported_models(SensorModality.RADAR)
        assert "SENSOR_IMAGE_COMP_RS_LAST" in supported_models(SensorModality.CAMERA)

    def test_rolling_shutter_flag(self):
        assert is_rs_camera("SENSOR_IMAGE_RS_MID")
        assert is_rs_camera("SENSOR_IMAGE_COMP_RS_FIRST")
        assert not is_rs_camera("SENSOR_IMAGE_GS")

    def test_wrong_msgtype_rejected(self):
        loader = get_loader("SENSOR_IMU")
        assert loader.load(make_imu_msg(1.0), IMAGE_MSGTYPE) is None


class TestUnpack:
    """Messages become frames with absolute timestamps."""

    def test_stamp(self):
        assert stamp_to_sec(SimpleNamespace(sec=12, nanosec=500_000_000)) == pytest.approx(12.5)

    def test_imu(self):
        frame = get_loader("SENSOR_IMU").load(make_imu_msg(3.25, (0.1, 0.2, 0.3), (1.0, 2.0, 9.0)), IMU_MSGTYPE)
        assert isinstance(frame, ImuFrame)
        assert frame.timestamp == pytest.approx(3.25)
        assert np.allclose(frame.gyro, [0.1, 0.2, 0.3])
        assert np.allclose(frame.acce, [1.0, 2.0, 9.0])

    def test_mono_image(self):
        frame = get_loader("SENSOR_IMAGE_GS").load(make_image_msg(1.5, width=8, height=6), IMAGE_MSGTYPE)
        assert isinstance(frame, CameraFrame)
        assert frame.image.shape == (6, 8)
        assert frame.frame_id == -1

    def test_unsupported_encoding_rejected(self):
        msg = make_image_msg(1.0)
        msg.encoding = "bayer_rggb8"
        assert get_loader("SENSOR_IMAGE_GS").load(msg, IMAGE_MSGTYPE) is None

    def test_ti_radar_single_target(self):
        arr = get_loader("AWR1843BOOST_RAW").load(
            make_radar_msg(2.0, (3.0, 4.0, 0.0), -0.5), "ti_mmwave_rospkg/msg/RadarScan"
        )
        assert isinstance(arr, RadarTargetArray)
        assert len(arr.targets) == 1
        assert np.allclose(arr.targets[0].direction, [0.6, 0.8, 0.0])
        assert arr.targets[0].radial_velocity == -0.5

    def test_velodyne_cloud(self):
        pts = np.array([[1.0, 0.0, 0.0], [0.0, 2.0, 0.0], [0.0, 0.0, 0.0], [np.nan, 1.0, 1.0]])
        rel = np.array([0.0, 0.01, 0.02, 0.03])
        frame = get_loader("VLP_POINTS").load(make_cloud_msg(10.0, pts, rel), CLOUD_MSGTYPE)

        assert isinstance(frame, LiDARFrame)
        assert frame.size == 2
        assert np.allclose(frame.points, pts[:2])
        assert np.allclose(frame.point_times, 10.0 + rel[:2], atol=1e-6)
        assert np.allclose(frame.intensity, 7.0)

    def test_ouster_cloud_nanosecond_offsets(self):
        pts = np.array([[1.0, 1.0, 1.0], [2.0, 2.0, 2.0]])
        rel = np.array([0, 50_000_000], dtype=np.uint32)
        frame = get_loader("OUSTER_POINTS").load(make_cloud_msg(1.0, pts, rel, "t", np.uint32), CLOUD_MSGTYPE)
        assert np.allclose(frame.point_times, [1.0, 1.05])

    def test_cloud_without_time_field_rejected(self):
        pts = np.ones((3, 3))
        msg = make_cloud_msg(1.0, pts, np.zeros(3), time_field="ring")
        assert get_loader("VLP_POINTS").load(msg, CLOUD_MSGTYPE) is None

    def test_structured_view_respects_offsets(self):
        pts = np.arange(6, dtype=float).reshape(2, 3)
        cloud = pointcloud2_to_structured(make_cloud_msg(0.0, pts, np.zeros(2)))
        assert cloud.shape == (2,)
        assert np.allclose(cloud["y"], [1.0, 4.0])


class TestRadarTargetValidity:
    """Targets at zero range have no line of sight and are dropped."""

    def test_ti_zero_range_rejected(self):
        loader = get_loader("AWR1843BOOST_RAW")
        assert loader.load(make_radar_msg(2.0, (0.0, 0.0, 0.0)), TI_RADAR_MSGTYPE) is None
        assert loader.load(make_radar_msg(2.0, (np.nan, 1.0, 0.0)), TI_RADAR_MSGTYPE) is None

    def test_ainstein_zero_range_dropped(self):
        targets = [
            SimpleNamespace(azimuth=0.0, elevation=0.0, range=0.0, speed=1.0),
            SimpleNamespace(azimuth=90.0, elevation=0.0, range=2.0, speed=-0.5),
        ]
        msg = SimpleNamespace(header=SimpleNamespace(stamp=make_stamp(4.0), frame_id="radar"), targets=targets)
        arr = get_loader("AINSTEIN_RADAR").load(msg, "ainstein_radar_msgs/msg/RadarTargetArray")
        assert len(arr.targets) == 1
        assert np.allclose(arr.targets[0].direction, [0.0, 1.0, 0.0], atol=1e-12)
        assert np.all(np.isfinite(arr.targets[0].direction))
