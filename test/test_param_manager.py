"""
Tests for CalibParamManager: construction, lookup and on-disk formats.
"""

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from conftest import camera_topic_config
from ctcalib.calib.param_manager import CalibParamManager, ImuParams, PinholeIntrinsics


@pytest.fixture
def manager(config_factory):
    config = config_factory(
        camera_topics={"/cam": camera_topic_config()},
        lidar_topics={"/lidar": {"type": "VLP_POINTS"}},
        radar_topics={"/radar": {"type": "AINSTEIN_RADAR"}},
        prior={"gravity_norm": 9.81},
    )
    mgr = CalibParamManager.from_config(config)
    lidar = mgr.lidar["/lidar"]
    lidar.so3_sen_to_br = Rotation.from_rotvec([0.1, -0.2, 0.3]).as_quat()
    lidar.pos_sen_in_br = np.array([0.5, 0.0, -0.1])
    lidar.time_offset = 0.012
    mgr.imu["/imu0"].gyro_bias = np.array([1e-3, 2e-3, -1e-3])
    return mgr


class TestConstruction:
    """Initial values from the configuration."""

    def test_gravity_points_down(self, manager):
        assert np.allclose(manager.gravity, [0.0, 0.0, -9.81])

    def test_one_entry_per_topic(self, manager):
        assert set(manager.imu) == {"/imu0"}
        assert set(manager.lidar) == {"/lidar"}
        assert set(manager.radar) == {"/radar"}
        cam = manager.camera["/cam"]
        assert cam.intrinsics.fx == 400.0
        assert np.allclose(cam.so3_sen_to_br, [0.0, 0.0, 0.0, 1.0])

    def test_sensor_lookup(self, manager):
        assert manager.sensor("/lidar") is manager.lidar["/lidar"]
        assert isinstance(manager.sensor("/imu0"), ImuParams)
        with pytest.raises(KeyError):
            manager.sensor("/nope")

    def test_transform(self, manager):
        lidar = manager.lidar["/lidar"]
        T = lidar.transform()
        assert np.allclose(T[:3, :3], Rotation.from_quat(lidar.so3_sen_to_br).as_matrix())
        assert np.allclose(T[:3, 3], lidar.pos_sen_in_br)


class TestCopies:
    """Snapshots and assignment never alias."""

    def test_snapshot_independent(self, manager):
        snap = manager.snapshot()
        manager.lidar["/lidar"].pos_sen_in_br[0] = 42.0
        manager.gravity[2] = 0.0
        assert snap.lidar["/lidar"].pos_sen_in_br[0] == 0.5
        assert snap.gravity[2] == pytest.approx(-9.81)

    def test_assign(self, manager):
        other = CalibParamManager(np.array([0.0, 0.0, -1.0]))
        other.assign(manager)
        assert np.allclose(other.gravity, manager.gravity)
        assert other.lidar["/lidar"].time_offset == pytest.approx(0.012)
        other.lidar["/lidar"].time_offset = 1.0
        assert manager.lidar["/lidar"].time_offset == pytest.approx(0.012)


class TestSerialization:
    """Saved parameters load back with the same values."""

    @pytest.mark.parametrize("fmt", ["json", "yaml"])
    def test_roundtrip(self, manager, tmp_path, fmt):
        path = tmp_path / f"param.{fmt}"
        manager.save(str(path), fmt)
        loaded = CalibParamManager.load(str(path), fmt)

        assert np.allclose(loaded.gravity, manager.gravity)
        for topic in ("/imu0", "/lidar", "/cam", "/radar"):
            a, b = loaded.sensor(topic), manager.sensor(topic)
            assert np.allclose(a.so3_sen_to_br, b.so3_sen_to_br)
            assert np.allclose(a.pos_sen_in_br, b.pos_sen_in_br)
            assert a.time_offset == pytest.approx(b.time_offset)
        assert np.allclose(loaded.imu["/imu0"].gyro_bias, manager.imu["/imu0"].gyro_bias)
        intri = loaded.camera["/cam"].intrinsics
        assert (intri.fx, intri.cx, intri.width) == (400.0, 320.0, 640)
        assert np.allclose(intri.distortion, 0.0)

    def test_document_layout(self, manager):
        root = manager.to_dict()["CalibParam"]
        assert set(root) == {"EXTRI_IMU", "EXTRI_LiDAR", "EXTRI_Camera", "EXTRI_Radar", "GRAVITY"}
        so3 = root["EXTRI_LiDAR"]["/lidar"]["SO3_SenToBr"]
        assert set(so3) == {"qx", "qy", "qz", "qw"}
        assert "INTRI" in root["EXTRI_Camera"]["/cam"]

    def test_unknown_extension(self, manager, tmp_path):
        with pytest.raises(ValueError):
            manager.save(str(tmp_path / "param.xml"))


class TestIntrinsics:
    def test_project_principal_point(self):
        intri = PinholeIntrinsics(500.0, 500.0, 320.0, 240.0, 640, 480)
        uv = intri.project(np.array([[0.0, 0.0, 2.0], [1.0, -1.0, 5.0]]))
        assert np.allclose(uv[0], [320.0, 240.0])
        assert np.allclose(uv[1], [420.0, 140.0])
        assert np.allclose(intri.K()[:2, 2], [320.0, 240.0])
