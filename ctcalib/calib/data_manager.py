"""
Calibration data manager.

Loads every configured topic from the recorded log, trims all streams to the
common time window and re-bases timestamps so the inertial window starts at
0.0. Each step returns a Status; nothing here raises on bad data.

Window trimming pattern:

             |--> raw start                |--> raw end
    IMU1:    |o o o o o o o o o o o o o o o|
    IMU2:    |o o o o o o o o o o o o o o o|
    RAD1:    |   |o o o o o o o o o o o|   |
    CAM1:    |   |o o o o o o o o o o o|   |
    LID1:    |   |o o o o o o o o o o o|   |
                 |--> +2*pad           |--> -2*pad
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Sequence

from tqdm import tqdm

from ctcalib.common import constants
from ctcalib.common.param_models import CalibConfig
from ctcalib.common.status import FailureCategory, Status
from ctcalib.sensors.bag_reader import BagReader, LogReadError, MessageLog, resolve_bag_path
from ctcalib.sensors.frames import CameraFrame, ImuFrame, LiDARFrame, RadarTargetArray
from ctcalib.sensors.loaders import SensorLoader, SensorModality, get_loader

_logger = logging.getLogger(__name__)


def merge_radar_targets(
    arrays: Sequence[RadarTargetArray],
    window: float = constants.RADAR_MERGE_WINDOW_SEC,
) -> List[RadarTargetArray]:
    """
    Regroup single-target radar readings into target arrays.

    A reading joins the open group while its time is within `window` of the
    group's FIRST reading; otherwise the group is closed with timestamp =
    mean of its members' times and a new group starts. The trailing open
    group is closed the same way.
    """
    merged: List[RadarTargetArray] = []
    group = []
    for item in arrays:
        target = item.targets[0]
        if not group or abs(group[0].timestamp - item.timestamp) < window:
            group.append(target)
            continue
        merged.append(RadarTargetArray(sum(t.timestamp for t in group) / len(group), group))
        group = [target]
    if group:
        merged.append(RadarTargetArray(sum(t.timestamp for t in group) / len(group), group))
    return merged


def _avg_frequency(streams: Dict[str, list]) -> float:
    if not streams:
        return -1.0
    rates = []
    for frames in streams.values():
        span = frames[-1].timestamp - frames[0].timestamp
        # a single frame has no rate
        if span > 0.0:
            rates.append(len(frames) / span)
    return sum(rates) / len(rates) if rates else -1.0


def _window_of(streams: Dict[str, list]):
    """(max of first timestamps, min of last timestamps) over streams."""
    first = max(frames[0].timestamp for frames in streams.values())
    last = min(frames[-1].timestamp for frames in streams.values())
    return first, last


class CalibDataManager:
    """
    Owns the per-topic sensor streams for one calibration run.

    Args:
        config: immutable run configuration
        log_factory: opens the recorded log; defaults to the rosbags-backed
            BagReader. Tests pass an in-memory MessageLog.
    """

    def __init__(self, config: CalibConfig, log_factory: Callable[[str], MessageLog] = BagReader):
        self._config = config
        self._log_factory = log_factory

        self._imu_mes: Dict[str, List[ImuFrame]] = {}
        self._lidar_mes: Dict[str, List[LiDARFrame]] = {}
        self._camera_mes: Dict[str, List[CameraFrame]] = {}
        self._radar_mes: Dict[str, List[RadarTargetArray]] = {}

        self._raw_start = 0.0
        self._raw_end = 0.0
        self._aligned_start = 0.0
        self._aligned_end = 0.0

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def initialize(self) -> Status:
        """Load, trim and align; stops at the first fatal status."""
        status = self.load_calib_data()
        if status.is_fatal:
            return status
        status = self.adjust_calib_data_sequence()
        if status.is_fatal:
            return status
        self.align_timestamp()
        return Status.ok()

    def _resolve_loaders(self) -> tuple[Dict[str, SensorLoader], Status]:
        ds = self._config.data_stream
        expected = (
            (ds.imu_topics, SensorModality.IMU),
            (ds.lidar_topics, SensorModality.LIDAR),
            (ds.camera_topics, SensorModality.CAMERA),
            (ds.radar_topics, SensorModality.RADAR),
        )
        loaders: Dict[str, SensorLoader] = {}
        for topics, modality in expected:
            for topic, cfg in topics.items():
                loader = get_loader(cfg.type)
                if loader is None or loader.modality is not modality:
                    return {}, Status.fatal(
                        f"unsupported {modality.value} model '{cfg.type}' for topic '{topic}'",
                        FailureCategory.CONFIGURATION,
                    )
                loaders[topic] = loader
        return loaders, Status.ok()

    def load_calib_data(self) -> Status:
        _logger.info("loading calibration data...")
        cfg = self._config.data_stream

        bag_path = resolve_bag_path(cfg.bag_path)
        if not bag_path:
            return Status.fatal(f"the ros bag path '{cfg.bag_path}' is invalid!", FailureCategory.CONFIGURATION)

        loaders, status = self._resolve_loaders()
        if status.is_fatal:
            return status
        topics = list(loaders)

        streams: Dict[str, list] = defaultdict(list)
        rejected: Dict[str, int] = defaultdict(int)
        try:
            with self._log_factory(bag_path) as log:
                log_begin, log_end = log.start_time, log.end_time
                _logger.info("source data duration: from '%.5f' to '%.5f'.", log_begin, log_end)
                begin, end = log_begin, log_end
                if cfg.begin_time > 0.0:
                    begin += cfg.begin_time
                    if begin > end:
                        _logger.warning(
                            "begin time '%.5f' is out of the bag's data range, set begin time to '%.5f'.",
                            begin, log_begin,
                        )
                        begin = log_begin
                if cfg.duration > 0.0:
                    end = begin + cfg.duration
                    if end > log_end:
                        _logger.warning(
                            "end time '%.5f' is out of the bag's data range, set end time to '%.5f'.",
                            end, log_end,
                        )
                        end = log_end
                _logger.info("expect data duration: from '%.5f' to '%.5f'.", begin, end)

                messages = log.messages(topics, begin, end)
                for item in tqdm(messages, total=log.message_count(topics), desc="loading", unit="msg", leave=False):
                    loader = loaders.get(item.topic)
                    if loader is None:
                        continue
                    frame = loader.load(item.msg, item.msgtype)
                    if frame is None:
                        rejected[item.topic] += 1
                        continue
                    streams[item.topic].append(frame)
        except LogReadError as exc:
            return Status.fatal(f"failed to read ros bag '{bag_path}': {exc}", FailureCategory.IO)

        for topic, count in rejected.items():
            _logger.debug("topic '%s': %d message(s) rejected as incompatible with model '%s'",
                          topic, count, loaders[topic].model)

        for topic in topics:
            frames = sorted(streams.get(topic, []), key=lambda f: f.timestamp)
            if not frames:
                return Status.fatal(
                    f"there is no data in topic '{topic}'! "
                    "check your configure file and rosbag!",
                    FailureCategory.DATA,
                )
            modality = loaders[topic].modality
            if modality is SensorModality.IMU:
                self._imu_mes[topic] = frames
            elif modality is SensorModality.LIDAR:
                self._lidar_mes[topic] = frames
            elif modality is SensorModality.CAMERA:
                for frame in frames:
                    # id from raw timestamp, millisecond
                    frame.frame_id = int(frame.timestamp * constants.CAMERA_FRAME_ID_SCALE)
                self._camera_mes[topic] = frames
            else:
                if loaders[topic].needs_target_merge:
                    frames = merge_radar_targets(frames)
                self._radar_mes[topic] = frames

        self.output_data_status()
        return Status.ok()

    def adjust_calib_data_sequence(self) -> Status:
        _logger.info("adjust calibration data sequence...")
        if not self._imu_mes:
            return Status.fatal("no inertial data loaded", FailureCategory.DATA)

        self._raw_start, self._raw_end = _window_of(self._imu_mes)
        for streams in (self._radar_mes, self._lidar_mes, self._camera_mes):
            if streams:
                first, last = _window_of(streams)
                self._raw_start = max(self._raw_start, first)
                self._raw_end = min(self._raw_end, last)

        if self._raw_start >= self._raw_end:
            return Status.fatal(
                f"no time-range intersection among sensors: raw start '{self._raw_start:.5f}' "
                f">= raw end '{self._raw_end:.5f}'",
                FailureCategory.DATA,
            )
        to_pad = self._config.prior.time_offset_padding
        if self._raw_end - self._raw_start <= 2.0 * to_pad:
            return Status.fatal(
                f"the intersected time range '{self._raw_end - self._raw_start:.5f}' (s) is too short, "
                f"it must exceed twice the time offset padding '{to_pad:.5f}' (s)",
                FailureCategory.DATA,
            )

        pad = constants.NON_INERTIAL_PADDING_FACTOR * to_pad
        lo, hi = self._raw_start, self._raw_end
        for topic, frames in self._imu_mes.items():
            self._imu_mes[topic] = [f for f in frames if lo <= f.timestamp <= hi]
        for streams in (self._radar_mes, self._lidar_mes, self._camera_mes):
            for topic, frames in streams.items():
                streams[topic] = [f for f in frames if lo + pad < f.timestamp < hi - pad]

        for kind, streams in (
            ("imu", self._imu_mes),
            ("radar", self._radar_mes),
            ("lidar", self._lidar_mes),
            ("camera", self._camera_mes),
        ):
            for topic, frames in streams.items():
                if not frames:
                    return Status.fatal(
                        f"the {kind} data of topic '{topic}' is invalid, there is no intersection "
                        f"with the calibration window [{lo:.5f}, {hi:.5f}] (s)",
                        FailureCategory.DATA,
                    )

        self.output_data_status()
        return Status.ok()

    def align_timestamp(self) -> None:
        _logger.info("align calibration data timestamp...")
        shift = -self._raw_start
        self._aligned_start = 0.0
        self._aligned_end = self._raw_end - self._raw_start
        for streams in (self._imu_mes, self._radar_mes, self._lidar_mes, self._camera_mes):
            for frames in streams.values():
                for frame in frames:
                    frame.shift_time(shift)
        self.output_data_status()

    def output_data_status(self) -> None:
        _logger.info("calibration data info:")
        for label, streams in (
            ("IMU", self._imu_mes),
            ("Radar", self._radar_mes),
            ("LiDAR", self._lidar_mes),
            ("Camera", self._camera_mes),
        ):
            for topic, frames in streams.items():
                if not frames:
                    continue
                _logger.info(
                    "%s topic: '%s', data size: '%06d', time span: from '%+010.5f' to '%+010.5f' (s)",
                    label, topic, len(frames), frames[0].timestamp, frames[-1].timestamp,
                )
        _logger.info("raw start time: '%+010.5f' (s), raw end time: '%+010.5f' (s)", self._raw_start, self._raw_end)
        _logger.info(
            "aligned start time: '%+010.5f' (s), aligned end time: '%+010.5f' (s)",
            self._aligned_start, self._aligned_end,
        )
        _logger.info(
            "calib start time: '%+010.5f' (s), calib end time: '%+010.5f' (s)",
            self.calib_start_timestamp(), self.calib_end_timestamp(),
        )

    # ------------------------------------------------------------------
    # Time access
    # ------------------------------------------------------------------

    def raw_start_timestamp(self) -> float:
        return self._raw_start

    def raw_end_timestamp(self) -> float:
        return self._raw_end

    def aligned_start_timestamp(self) -> float:
        # always 0.0 once aligned
        return self._aligned_start

    def aligned_end_timestamp(self) -> float:
        return self._aligned_end

    def aligned_time_range(self) -> float:
        return self._aligned_end - self._aligned_start

    def calib_start_timestamp(self) -> float:
        return self._aligned_start + self._config.prior.time_offset_padding

    def calib_end_timestamp(self) -> float:
        return self._aligned_end - self._config.prior.time_offset_padding

    def calib_time_range(self) -> float:
        return self.calib_end_timestamp() - self.calib_start_timestamp()

    def imu_avg_frequency(self) -> float:
        return _avg_frequency(self._imu_mes)

    def lidar_avg_frequency(self) -> float:
        return _avg_frequency(self._lidar_mes)

    def camera_avg_frequency(self) -> float:
        return _avg_frequency(self._camera_mes)

    def radar_avg_frequency(self) -> float:
        return _avg_frequency(self._radar_mes)

    # ------------------------------------------------------------------
    # Data access
    # ------------------------------------------------------------------

    def imu_measurements(self) -> Dict[str, List[ImuFrame]]:
        return self._imu_mes

    def lidar_measurements(self) -> Dict[str, List[LiDARFrame]]:
        return self._lidar_mes

    def camera_measurements(self) -> Dict[str, List[CameraFrame]]:
        return self._camera_mes

    def radar_measurements(self) -> Dict[str, List[RadarTargetArray]]:
        return self._radar_mes

    def camera_frame(self, topic: str, frame_id: int) -> Optional[CameraFrame]:
        for frame in self._camera_mes.get(topic, []):
            if frame.frame_id == frame_id:
                return frame
        return None
