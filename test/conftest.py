import os
import sys
from types import SimpleNamespace
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import pytest

# Ensure local package import works for pytest collection.
_TEST_DIR = os.path.dirname(__file__)
_PKG_ROOT = os.path.abspath(os.path.join(_TEST_DIR, ".."))
if _PKG_ROOT not in sys.path:
    sys.path.insert(0, _PKG_ROOT)

from ctcalib.common.param_models import CalibConfig  # noqa: E402
from ctcalib.sensors.bag_reader import LogMessage  # noqa: E402

IMU_MSGTYPE = "sensor_msgs/msg/Imu"
IMAGE_MSGTYPE = "sensor_msgs/msg/Image"
TI_RADAR_MSGTYPE = "ti_mmwave_rospkg/msg/RadarScan"
CLOUD_MSGTYPE = "sensor_msgs/msg/PointCloud2"


# =============================================================================
# Synthetic ROS messages
# =============================================================================
# Plain namespaces with the attribute layout of the deserialized rosbags
# messages, enough for the unpackers.


def make_stamp(t: float) -> SimpleNamespace:
    sec = int(np.floor(t))
    return SimpleNamespace(sec=sec, nanosec=int(round((t - sec) * 1e9)))


def make_imu_msg(t: float, gyro=(0.0, 0.0, 0.0), acce=(0.0, 0.0, 9.797)) -> SimpleNamespace:
    return SimpleNamespace(
        header=SimpleNamespace(stamp=make_stamp(t), frame_id="imu"),
        angular_velocity=SimpleNamespace(x=gyro[0], y=gyro[1], z=gyro[2]),
        linear_acceleration=SimpleNamespace(x=acce[0], y=acce[1], z=acce[2]),
    )


def make_image_msg(t: float, width: int = 8, height: int = 6) -> SimpleNamespace:
    return SimpleNamespace(
        header=SimpleNamespace(stamp=make_stamp(t), frame_id="cam"),
        height=height,
        width=width,
        encoding="mono8",
        is_bigendian=0,
        step=width,
        data=np.zeros(width * height, dtype=np.uint8),
    )


def make_radar_msg(t: float, xyz=(5.0, 0.0, 0.0), velocity: float = -1.0) -> SimpleNamespace:
    return SimpleNamespace(
        header=SimpleNamespace(stamp=make_stamp(t), frame_id="radar"),
        x=xyz[0], y=xyz[1], z=xyz[2], velocity=velocity,
    )


def make_cloud_msg(t, points, rel_times, time_field="time", time_dtype=np.float32, extra=None):
    """PointCloud2 with float32 x, y, z, intensity and a per-point time field."""
    fields = [("x", np.float32), ("y", np.float32), ("z", np.float32), ("intensity", np.float32),
              (time_field, time_dtype)]
    if extra:
        fields.append(extra)
    dtype = np.dtype(fields)
    rec = np.zeros(len(points), dtype=dtype)
    rec["x"], rec["y"], rec["z"] = points[:, 0], points[:, 1], points[:, 2]
    rec["intensity"] = 7.0
    rec[time_field] = rel_times
    codes = {np.dtype(np.float32): 7, np.dtype(np.float64): 8, np.dtype(np.uint32): 6}
    msg_fields = [
        SimpleNamespace(name=name, offset=dtype.fields[name][1], datatype=codes[np.dtype(dt)], count=1)
        for name, dt in fields
    ]
    return SimpleNamespace(
        header=SimpleNamespace(stamp=make_stamp(t), frame_id="lidar"),
        height=1, width=len(points), fields=msg_fields, is_bigendian=False,
        point_step=dtype.itemsize, row_step=dtype.itemsize * len(points),
        data=np.frombuffer(rec.tobytes(), dtype=np.uint8), is_dense=True,
    )


class FakeMessageLog:
    """In-memory MessageLog with the same query semantics as BagReader."""

    def __init__(self, messages: Iterable[LogMessage]):
        self._messages = sorted(messages, key=lambda m: m.timestamp)

    def __enter__(self) -> "FakeMessageLog":
        return self

    def __exit__(self, *exc) -> None:
        return None

    @property
    def start_time(self) -> float:
        return self._messages[0].timestamp

    @property
    def end_time(self) -> float:
        return self._messages[-1].timestamp

    def topics(self) -> Dict[str, str]:
        return {m.topic: m.msgtype for m in self._messages}

    def messages(self, topics, start: float, end: float):
        wanted = set(topics)
        for m in self._messages:
            if m.topic in wanted and start <= m.timestamp <= end:
                yield m

    def message_count(self, topics) -> int:
        wanted = set(topics)
        return sum(1 for m in self._messages if m.topic in wanted)


def imu_stream(topic: str, t0: float, t1: float, rate: int = 100, gyro=(0.0, 0.0, 0.0),
               acce=(0.0, 0.0, 9.797)) -> List[LogMessage]:
    """IMU messages at k / rate for k covering [t0, t1] (exact decimal stamps)."""
    out = []
    for k in range(int(round(t0 * rate)), int(round(t1 * rate)) + 1):
        t = k / rate
        out.append(LogMessage(topic, IMU_MSGTYPE, t, make_imu_msg(t, gyro, acce)))
    return out


def camera_stream(topic: str, t0: float, t1: float, rate: int = 10) -> List[LogMessage]:
    out = []
    for k in range(int(round(t0 * rate)), int(round(t1 * rate)) + 1):
        t = k / rate
        out.append(LogMessage(topic, IMAGE_MSGTYPE, t, make_image_msg(t)))
    return out


# =============================================================================
# Config fixtures
# =============================================================================


def build_config(
    tmp_path,
    imu_topics: Optional[Dict[str, Any]] = None,
    camera_topics: Optional[Dict[str, Any]] = None,
    radar_topics: Optional[Dict[str, Any]] = None,
    lidar_topics: Optional[Dict[str, Any]] = None,
    prior: Optional[Dict[str, Any]] = None,
    preference: Optional[Dict[str, Any]] = None,
    **data_stream: Any,
) -> CalibConfig:
    bag_dir = tmp_path / "bag"
    bag_dir.mkdir(exist_ok=True)
    ds = {
        "bag_path": str(bag_dir),
        "output_path": str(tmp_path / "out"),
        "imu_topics": imu_topics or {"/imu0": {"type": "SENSOR_IMU"}},
        "camera_topics": camera_topics or {},
        "radar_topics": radar_topics or {},
        "lidar_topics": lidar_topics or {},
    }
    ds.update(data_stream)
    return CalibConfig.model_validate({
        "data_stream": ds,
        "prior": prior or {},
        "preference": preference or {},
    })


def camera_topic_config(model: str = "SENSOR_IMAGE_GS") -> Dict[str, Any]:
    return {
        "type": model,
        "intrinsics": {"fx": 400.0, "fy": 400.0, "cx": 320.0, "cy": 240.0, "width": 640, "height": 480},
    }


@pytest.fixture
def config_factory(tmp_path):
    """Build a CalibConfig rooted in the test's tmp_path."""

    def _factory(**kwargs) -> CalibConfig:
        return build_config(tmp_path, **kwargs)

    return _factory


@pytest.fixture
def log_factory():
    """Turn a list of LogMessage into a log_factory for CalibDataManager."""

    def _factory(messages: List[LogMessage]):
        return lambda _path: FakeMessageLog(messages)

    return _factory


# =============================================================================
# Test Utility Fixtures
# =============================================================================

@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def small_pointcloud():
    """Generate a small structured point cloud for ICP tests."""
    np.random.seed(42)
    return np.random.uniform(-5.0, 5.0, size=(400, 3))
