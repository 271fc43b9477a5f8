"""
Tests for CalibDataManager: loading, window trimming, timestamp alignment.
"""

import numpy as np
import pytest

from conftest import (
    TI_RADAR_MSGTYPE,
    camera_stream,
    camera_topic_config,
    imu_stream,
    make_radar_msg,
)
from ctcalib.calib.data_manager import CalibDataManager, merge_radar_targets
from ctcalib.common.status import FailureCategory
from ctcalib.sensors.bag_reader import LogMessage
from ctcalib.sensors.frames import RadarTarget, RadarTargetArray


def _single(t: float) -> RadarTargetArray:
    return RadarTargetArray(t, [RadarTarget(t, np.array([1.0, 0.0, 0.0]), 0.5)])


class TestRadarMerge:
    """Single-target radar readings regrouped by the first-member rule."""

    def test_readings_within_window_merge_to_mean(self):
        """All readings within 0.1 s of the first form one array at the mean time."""
        merged = merge_radar_targets([_single(t) for t in (1.00, 1.03, 1.06, 1.09)])
        assert len(merged) == 1
        assert len(merged[0].targets) == 4
        assert merged[0].timestamp == pytest.approx(np.mean([1.00, 1.03, 1.06, 1.09]))

    def test_reading_at_window_starts_new_group(self):
        """A reading 0.1 s or more after the group's first member opens a new group."""
        merged = merge_radar_targets([_single(t) for t in (1.0, 1.05, 1.1, 1.15)])
        assert [len(m.targets) for m in merged] == [2, 2]
        assert merged[0].timestamp == pytest.approx(1.025)
        assert merged[1].timestamp == pytest.approx(1.125)

    def test_compares_against_first_not_last(self):
        """Chained readings 0.06 s apart do not all merge."""
        merged = merge_radar_targets([_single(t) for t in (0.0, 0.06, 0.12, 0.18)])
        assert [len(m.targets) for m in merged] == [2, 2]

    def test_trailing_group_is_flushed(self):
        merged = merge_radar_targets([_single(0.0), _single(0.5)])
        assert len(merged) == 2
        assert merged[-1].timestamp == pytest.approx(0.5)


class TestScenarios:
    """End-to-end initialize() on synthetic logs."""

    def test_inertial_only_window(self, config_factory, log_factory):
        """Scenario A: IMU over [0, 100] s, padding 0.1 s."""
        config = config_factory(prior={"time_offset_padding": 0.1})
        mgr = CalibDataManager(config, log_factory(imu_stream("/imu0", 0.0, 100.0)))
        status = mgr.initialize()

        assert status.is_ok
        assert mgr.aligned_start_timestamp() == 0.0
        assert mgr.aligned_end_timestamp() == pytest.approx(100.0)
        assert mgr.calib_start_timestamp() == pytest.approx(0.1)
        assert mgr.calib_end_timestamp() == pytest.approx(99.9)
        assert mgr.imu_measurements()["/imu0"][0].timestamp == 0.0

    def test_camera_narrows_window(self, config_factory, log_factory):
        """Scenario B: IMU over [0, 100] s and camera over [5, 90] s."""
        config = config_factory(camera_topics={"/cam": camera_topic_config()})
        msgs = imu_stream("/imu0", 0.0, 100.0) + camera_stream("/cam", 5.0, 90.0)
        mgr = CalibDataManager(config, log_factory(msgs))
        status = mgr.initialize()

        assert status.is_ok
        assert mgr.raw_start_timestamp() == pytest.approx(5.0)
        assert mgr.raw_end_timestamp() == pytest.approx(90.0)
        assert mgr.aligned_end_timestamp() == pytest.approx(85.0)
        assert min(f.timestamp for f in mgr.imu_measurements()["/imu0"]) == 0.0
        assert mgr.calib_start_timestamp() == pytest.approx(0.1)
        assert mgr.calib_end_timestamp() == pytest.approx(84.9)

    def test_trimmed_streams_respect_padding(self, config_factory, log_factory):
        """Non-inertial streams are inset by twice the padding, inertial ones are not."""
        pad = 0.1
        config = config_factory(camera_topics={"/cam": camera_topic_config()}, prior={"time_offset_padding": pad})
        msgs = imu_stream("/imu0", 0.0, 20.0) + camera_stream("/cam", 2.0, 15.0)
        mgr = CalibDataManager(config, log_factory(msgs))
        assert mgr.load_calib_data().is_ok
        assert mgr.adjust_calib_data_sequence().is_ok

        lo, hi = mgr.raw_start_timestamp(), mgr.raw_end_timestamp()
        imu = mgr.imu_measurements()["/imu0"]
        cam = mgr.camera_measurements()["/cam"]
        assert imu[0].timestamp >= lo and imu[-1].timestamp <= hi
        assert cam[0].timestamp > lo + 2 * pad
        assert cam[-1].timestamp < hi - 2 * pad

    def test_camera_frame_ids_from_raw_time(self, config_factory, log_factory):
        config = config_factory(camera_topics={"/cam": camera_topic_config()})
        msgs = imu_stream("/imu0", 0.0, 10.0) + camera_stream("/cam", 1.0, 9.0)
        mgr = CalibDataManager(config, log_factory(msgs))
        assert mgr.initialize().is_ok

        frame = mgr.camera_measurements()["/cam"][0]
        raw = frame.timestamp + mgr.raw_start_timestamp()
        assert abs(frame.frame_id - raw * 1e3) <= 1.0
        ids = [f.frame_id for f in mgr.camera_measurements()["/cam"]]
        assert len(set(ids)) == len(ids)
        assert mgr.camera_frame("/cam", frame.frame_id) is frame
        assert mgr.camera_frame("/cam", -5) is None

    def test_radar_stream_merged_and_rebased(self, config_factory, log_factory):
        """Single-target radar readings are merged and their target times re-based."""
        config = config_factory(radar_topics={"/radar": {"type": "AWR1843BOOST_RAW"}})
        radar = [
            LogMessage("/radar", TI_RADAR_MSGTYPE, t, make_radar_msg(t))
            for t in (1.0 + 0.03 * k for k in range(266))
        ]
        mgr = CalibDataManager(config, log_factory(imu_stream("/imu0", 0.0, 10.0) + radar))
        assert mgr.initialize().is_ok

        arrays = mgr.radar_measurements()["/radar"]
        assert all(len(a.targets) == 4 for a in arrays[1:-1])
        for arr in arrays:
            assert arr.timestamp == pytest.approx(np.mean([t.timestamp for t in arr.targets]))
        assert 0.0 < arrays[0].timestamp < 1.0
        assert mgr.radar_avg_frequency() > 0.0

    def test_begin_time_and_duration(self, config_factory, log_factory):
        config = config_factory(begin_time=10.0, duration=20.0)
        mgr = CalibDataManager(config, log_factory(imu_stream("/imu0", 0.0, 100.0)))
        assert mgr.load_calib_data().is_ok
        frames = mgr.imu_measurements()["/imu0"]
        assert frames[0].timestamp == pytest.approx(10.0)
        assert frames[-1].timestamp == pytest.approx(30.0)

    def test_out_of_range_begin_time_resets(self, config_factory, log_factory):
        config = config_factory(begin_time=500.0)
        mgr = CalibDataManager(config, log_factory(imu_stream("/imu0", 0.0, 10.0)))
        assert mgr.load_calib_data().is_ok
        assert mgr.imu_measurements()["/imu0"][0].timestamp == pytest.approx(0.0)

    def test_average_frequency(self, config_factory, log_factory):
        mgr = CalibDataManager(config_factory(), log_factory(imu_stream("/imu0", 0.0, 10.0)))
        assert mgr.initialize().is_ok
        assert mgr.imu_avg_frequency() == pytest.approx(1001 / 10.0)
        assert mgr.lidar_avg_frequency() == -1.0

    def test_single_frame_stream_has_no_frequency(self, config_factory, log_factory):
        """Camera over [5.0, 5.6] s with padding 0.12 s keeps only the 5.3 s frame."""
        config = config_factory(camera_topics={"/cam": camera_topic_config()}, prior={"time_offset_padding": 0.12})
        msgs = imu_stream("/imu0", 0.0, 10.0) + camera_stream("/cam", 5.0, 5.6)
        mgr = CalibDataManager(config, log_factory(msgs))
        assert mgr.initialize().is_ok
        assert len(mgr.camera_measurements()["/cam"]) == 1
        assert mgr.camera_avg_frequency() == -1.0
        assert mgr.imu_avg_frequency() > 0.0


class TestFailures:
    """Fatal statuses carry the right failure category."""

    def test_missing_bag_path(self, config_factory, log_factory):
        config = config_factory(bag_path="/definitely/not/here.bag")
        status = CalibDataManager(config, log_factory(imu_stream("/imu0", 0.0, 1.0))).initialize()
        assert status.is_fatal
        assert status.category is FailureCategory.CONFIGURATION

    def test_unknown_model(self, config_factory, log_factory):
        config = config_factory(imu_topics={"/imu0": {"type": "NOT_A_SENSOR"}})
        status = CalibDataManager(config, log_factory(imu_stream("/imu0", 0.0, 1.0))).initialize()
        assert status.is_fatal
        assert status.category is FailureCategory.CONFIGURATION
        assert "NOT_A_SENSOR" in status.what

    def test_model_of_wrong_modality(self, config_factory, log_factory):
        config = config_factory(imu_topics={"/imu0": {"type": "VLP_POINTS"}})
        status = CalibDataManager(config, log_factory(imu_stream("/imu0", 0.0, 1.0))).initialize()
        assert status.category is FailureCategory.CONFIGURATION

    def test_topic_without_data(self, config_factory, log_factory):
        config = config_factory(camera_topics={"/cam": camera_topic_config()})
        status = CalibDataManager(config, log_factory(imu_stream("/imu0", 0.0, 5.0))).initialize()
        assert status.is_fatal
        assert status.category is FailureCategory.DATA
        assert "/cam" in status.what

    def test_no_intersection(self, config_factory, log_factory):
        config = config_factory(camera_topics={"/cam": camera_topic_config()})
        msgs = imu_stream("/imu0", 0.0, 10.0) + camera_stream("/cam", 20.0, 30.0)
        status = CalibDataManager(config, log_factory(msgs)).initialize()
        assert status.is_fatal
        assert status.category is FailureCategory.DATA

    def test_stream_empty_after_trimming(self, config_factory, log_factory):
        """A camera span shorter than the padded inset leaves no frames."""
        config = config_factory(camera_topics={"/cam": camera_topic_config()}, prior={"time_offset_padding": 0.5})
        msgs = imu_stream("/imu0", 0.0, 10.0) + camera_stream("/cam", 4.0, 5.5)
        status = CalibDataManager(config, log_factory(msgs)).initialize()
        assert status.is_fatal
        assert "/cam" in status.what

    def test_incompatible_messages_skipped(self, config_factory, log_factory):
        """Messages of a type the model does not accept are skipped, not fatal."""
        msgs = imu_stream("/imu0", 0.0, 2.0)
        bogus = camera_stream("/imu0", 0.5, 1.0)
        mgr = CalibDataManager(config_factory(), log_factory(msgs + bogus))
        assert mgr.load_calib_data().is_ok
        assert len(mgr.imu_measurements()["/imu0"]) == len(msgs)

    def test_window_not_longer_than_padding(self, config_factory, log_factory):
        """The intersection must exceed twice the offset padding to leave a calibration window."""
        config = config_factory(prior={"time_offset_padding": 0.1})
        status = CalibDataManager(config, log_factory(imu_stream("/imu0", 0.0, 0.15))).initialize()
        assert status.is_fatal
        assert status.category is FailureCategory.DATA
        assert "too short" in status.what
