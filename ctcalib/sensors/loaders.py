"""
Per-model message unpackers.

The set of sensor models is closed: every supported model string maps to one
SensorLoader in LOADERS. A loader declares the message types it accepts; a
message of any other type is rejected (unpack returns None) and the data
manager skips it.

Messages are the deserialized objects produced by rosbags, so field access
follows the ROS message definitions (header.stamp.sec/nanosec, PointCloud2
fields/data, ...).
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import cv2
import numpy as np

from ctcalib.sensors.frames import (
    CameraFrame,
    ImuFrame,
    LiDARFrame,
    RadarTarget,
    RadarTargetArray,
)

_logger = logging.getLogger(__name__)


class SensorModality(enum.Enum):
    IMU = "imu"
    LIDAR = "lidar"
    CAMERA = "camera"
    RADAR = "radar"


def stamp_to_sec(stamp) -> float:
    """Convert ROS timestamp to seconds."""
    return float(stamp.sec) + float(stamp.nanosec) * 1e-9


def _vec3(v) -> np.ndarray:
    return np.array([v.x, v.y, v.z], dtype=float)


# =============================================================================
# PointCloud2
# =============================================================================

# sensor_msgs/PointField datatype codes
_POINTFIELD_DTYPES = {
    1: np.int8,
    2: np.uint8,
    3: np.int16,
    4: np.uint16,
    5: np.int32,
    6: np.uint32,
    7: np.float32,
    8: np.float64,
}


def pointcloud2_to_structured(msg) -> np.ndarray:
    """
    View a PointCloud2 payload as a numpy structured array (one record per point).

    Field offsets come straight from msg.fields, so padding bytes between
    fields are skipped without copying.
    """
    names, formats, offsets = [], [], []
    for f in msg.fields:
        base = _POINTFIELD_DTYPES.get(int(f.datatype))
        if base is None:
            raise ValueError(f"unsupported PointField datatype {f.datatype} for field '{f.name}'")
        dt = np.dtype(base).newbyteorder(">" if msg.is_bigendian else "<")
        names.append(f.name)
        formats.append(dt if int(f.count) <= 1 else (dt, int(f.count)))
        offsets.append(int(f.offset))
    dtype = np.dtype({"names": names, "formats": formats, "offsets": offsets, "itemsize": int(msg.point_step)})
    n_points = int(msg.width) * int(msg.height)
    raw = np.asarray(msg.data, dtype=np.uint8)
    if n_points == 0:
        return np.zeros(0, dtype=dtype)
    return np.frombuffer(raw.tobytes(), dtype=dtype, count=n_points)


def _xyz_from_cloud(cloud: np.ndarray) -> np.ndarray:
    for axis in ("x", "y", "z"):
        if axis not in cloud.dtype.names:
            raise ValueError("PointCloud2 message missing x, y, or z fields")
    return np.stack([cloud["x"], cloud["y"], cloud["z"]], axis=1).astype(float)


def _lidar_frame_from_cloud(msg, time_field: str, time_scale: float) -> Optional[LiDARFrame]:
    cloud = pointcloud2_to_structured(msg)
    if time_field not in (cloud.dtype.names or ()):
        _logger.debug("point cloud without per-point '%s' field rejected", time_field)
        return None
    t0 = stamp_to_sec(msg.header.stamp)
    xyz = _xyz_from_cloud(cloud)
    rel_t = cloud[time_field].astype(float) * time_scale
    intensity = cloud["intensity"].astype(float) if "intensity" in cloud.dtype.names else np.zeros(len(cloud))
    valid = np.isfinite(xyz).all(axis=1) & (np.linalg.norm(xyz, axis=1) > 0.0)
    return LiDARFrame(
        timestamp=t0,
        points=xyz[valid],
        point_times=t0 + rel_t[valid],
        intensity=intensity[valid],
    )


# =============================================================================
# Unpackers
# =============================================================================


def _unpack_sensor_imu(msg) -> ImuFrame:
    return ImuFrame(
        timestamp=stamp_to_sec(msg.header.stamp),
        gyro=_vec3(msg.angular_velocity),
        acce=_vec3(msg.linear_acceleration),
    )


def _unpack_sbg_imu(msg) -> ImuFrame:
    return ImuFrame(
        timestamp=stamp_to_sec(msg.header.stamp),
        gyro=_vec3(msg.gyro),
        acce=_vec3(msg.accel),
    )


def _unpack_velodyne_points(msg) -> Optional[LiDARFrame]:
    # velodyne_pointcloud: float32 'time' relative to the scan stamp (s)
    return _lidar_frame_from_cloud(msg, "time", 1.0)


def _unpack_ouster_points(msg) -> Optional[LiDARFrame]:
    # ouster_ros: uint32 't' relative to the scan stamp (ns)
    return _lidar_frame_from_cloud(msg, "t", 1e-9)


def _unpack_livox_custom(msg) -> Optional[LiDARFrame]:
    points = list(msg.points)
    if not points:
        return None
    t0 = stamp_to_sec(msg.header.stamp)
    xyz = np.array([[p.x, p.y, p.z] for p in points], dtype=float)
    offsets = np.array([float(p.offset_time) for p in points], dtype=float) * 1e-9
    reflectivity = np.array([float(p.reflectivity) for p in points], dtype=float)
    valid = np.isfinite(xyz).all(axis=1) & (np.linalg.norm(xyz, axis=1) > 0.0)
    return LiDARFrame(timestamp=t0, points=xyz[valid], point_times=t0 + offsets[valid], intensity=reflectivity[valid])


def _decode_raw_image(msg) -> Optional[np.ndarray]:
    enc = str(msg.encoding).lower()
    h, w, step = int(msg.height), int(msg.width), int(msg.step)
    buf = np.asarray(msg.data, dtype=np.uint8).reshape(h, step)
    if enc in ("mono8", "8uc1"):
        return buf[:, :w].copy()
    if enc in ("mono16", "16uc1"):
        img16 = buf[:, : 2 * w].copy().view(np.uint16 if not msg.is_bigendian else ">u2").reshape(h, w)
        return (img16 >> 8).astype(np.uint8)
    if enc in ("bgr8", "rgb8", "8uc3"):
        img = buf[:, : 3 * w].reshape(h, w, 3)
        return cv2.cvtColor(img, cv2.COLOR_RGB2BGR) if enc == "rgb8" else img.copy()
    if enc in ("bgra8", "rgba8"):
        img = buf[:, : 4 * w].reshape(h, w, 4)
        return cv2.cvtColor(img, cv2.COLOR_RGBA2BGR if enc == "rgba8" else cv2.COLOR_BGRA2BGR)
    _logger.debug("unsupported image encoding '%s' rejected", msg.encoding)
    return None


def _unpack_sensor_image(msg) -> Optional[CameraFrame]:
    img = _decode_raw_image(msg)
    if img is None:
        return None
    return CameraFrame(timestamp=stamp_to_sec(msg.header.stamp), image=img)


def _unpack_compressed_image(msg) -> Optional[CameraFrame]:
    np_arr = np.asarray(msg.data, dtype=np.uint8)
    img = cv2.imdecode(np_arr, cv2.IMREAD_COLOR)
    if img is None:
        return None
    return CameraFrame(timestamp=stamp_to_sec(msg.header.stamp), image=img)


def _valid_target_xyz(xyz: np.ndarray) -> bool:
    # a zero range has no line of sight
    return bool(np.isfinite(xyz).all()) and np.linalg.norm(xyz) > 0.0


def _unpack_ti_radar_scan(msg) -> Optional[RadarTargetArray]:
    # single target per message; regrouped later by the data manager
    t = stamp_to_sec(msg.header.stamp)
    xyz = np.array([msg.x, msg.y, msg.z], dtype=float)
    if not _valid_target_xyz(xyz):
        return None
    tar = RadarTarget(timestamp=t, xyz=xyz, radial_velocity=float(msg.velocity))
    return RadarTargetArray(timestamp=t, targets=[tar])


def _unpack_ainstein_radar(msg) -> RadarTargetArray:
    t = stamp_to_sec(msg.header.stamp)
    targets = []
    for tar in msg.targets:
        az = np.deg2rad(float(tar.azimuth))
        el = np.deg2rad(float(tar.elevation))
        r = float(tar.range)
        xyz = r * np.array([np.cos(el) * np.cos(az), np.cos(el) * np.sin(az), np.sin(el)])
        if not _valid_target_xyz(xyz):
            continue
        targets.append(RadarTarget(timestamp=t, xyz=xyz, radial_velocity=float(tar.speed)))
    return RadarTargetArray(timestamp=t, targets=targets)


def _unpack_pointcloud_posv(msg) -> Optional[RadarTargetArray]:
    cloud = pointcloud2_to_structured(msg)
    if "v" not in (cloud.dtype.names or ()):
        return None
    t = stamp_to_sec(msg.header.stamp)
    xyz = _xyz_from_cloud(cloud)
    vel = cloud["v"].astype(float)
    targets = [
        RadarTarget(timestamp=t, xyz=xyz[i], radial_velocity=float(vel[i]))
        for i in range(len(cloud))
        if _valid_target_xyz(xyz[i])
    ]
    return RadarTargetArray(timestamp=t, targets=targets)


# =============================================================================
# Factory
# =============================================================================


@dataclass(frozen=True)
class SensorLoader:
    model: str
    modality: SensorModality
    msgtypes: Tuple[str, ...]
    unpack: Callable[[Any], Any]
    rolling_shutter: bool = False
    # single-target models whose output is regrouped into arrays after loading
    needs_target_merge: bool = False

    def accepts(self, msgtype: str) -> bool:
        return msgtype in self.msgtypes

    def load(self, msg, msgtype: str) -> Optional[Any]:
        """Unpack msg, or return None if its type/encoding is incompatible with this model."""
        if not self.accepts(msgtype):
            return None
        return self.unpack(msg)


_IMU = "sensor_msgs/msg/Imu"
_SBG_IMU = "sbg_driver/msg/SbgImuData"
_CLOUD = "sensor_msgs/msg/PointCloud2"
_LIVOX = ("livox_ros_driver/msg/CustomMsg", "livox_ros_driver2/msg/CustomMsg")
_IMAGE = "sensor_msgs/msg/Image"
_COMP_IMAGE = "sensor_msgs/msg/CompressedImage"
_TI_RADAR = ("ti_mmwave_rospkg/msg/RadarScan", "ti_mmwave_rospkg/msg/RadarScanCustom")
_AINSTEIN = "ainstein_radar_msgs/msg/RadarTargetArray"


def _camera_loaders() -> Dict[str, SensorLoader]:
    out = {}
    for suffix, rs in (("GS", False), ("RS_FIRST", True), ("RS_MID", True), ("RS_LAST", True)):
        out[f"SENSOR_IMAGE_{suffix}"] = SensorLoader(
            f"SENSOR_IMAGE_{suffix}", SensorModality.CAMERA, (_IMAGE,), _unpack_sensor_image, rolling_shutter=rs
        )
        out[f"SENSOR_IMAGE_COMP_{suffix}"] = SensorLoader(
            f"SENSOR_IMAGE_COMP_{suffix}", SensorModality.CAMERA, (_COMP_IMAGE,), _unpack_compressed_image, rolling_shutter=rs
        )
    return out


LOADERS: Dict[str, SensorLoader] = {
    "SENSOR_IMU": SensorLoader("SENSOR_IMU", SensorModality.IMU, (_IMU,), _unpack_sensor_imu),
    "SBG_IMU": SensorLoader("SBG_IMU", SensorModality.IMU, (_SBG_IMU,), _unpack_sbg_imu),
    "VLP_POINTS": SensorLoader("VLP_POINTS", SensorModality.LIDAR, (_CLOUD,), _unpack_velodyne_points),
    "OUSTER_POINTS": SensorLoader("OUSTER_POINTS", SensorModality.LIDAR, (_CLOUD,), _unpack_ouster_points),
    "LIVOX_CUSTOM": SensorLoader("LIVOX_CUSTOM", SensorModality.LIDAR, _LIVOX, _unpack_livox_custom),
    **_camera_loaders(),
    "AWR1843BOOST_RAW": SensorLoader(
        "AWR1843BOOST_RAW", SensorModality.RADAR, _TI_RADAR, _unpack_ti_radar_scan, needs_target_merge=True
    ),
    "AWR1843BOOST_CUSTOM": SensorLoader(
        "AWR1843BOOST_CUSTOM", SensorModality.RADAR, _TI_RADAR, _unpack_ti_radar_scan, needs_target_merge=True
    ),
    "AINSTEIN_RADAR": SensorLoader("AINSTEIN_RADAR", SensorModality.RADAR, (_AINSTEIN,), _unpack_ainstein_radar),
    "SENSOR_POINTCLOUD2_POSV": SensorLoader(
        "SENSOR_POINTCLOUD2_POSV", SensorModality.RADAR, (_CLOUD,), _unpack_pointcloud_posv
    ),
}


def get_loader(model: str) -> Optional[SensorLoader]:
    return LOADERS.get(model)


def supported_models(modality: SensorModality) -> Tuple[str, ...]:
    return tuple(k for k, v in LOADERS.items() if v.modality is modality)


def is_rs_camera(model: str) -> bool:
    loader = LOADERS.get(model)
    return loader is not None and loader.rolling_shutter
