"""
Calibration parameter manager.

Holds every estimated quantity that is not spline state:
- per-topic extrinsic (SO3_SenToBr, POS_SenInBr) and time offset TO_SenToBr
- IMU gyroscope/accelerometer biases
- camera pinhole intrinsics and radial-tangential distortion
- gravity in the world frame

The solver writes parameters on its own thread while the viewer reads them
from another; all access that spans more than one field goes through the
lock, and the viewer only ever sees snapshot() copies.
"""

from __future__ import annotations

import contextlib
import copy
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional

import numpy as np
from scipy.spatial.transform import Rotation

from ctcalib.common.param_models import CalibConfig, PinholeIntrinsicsConfig
from ctcalib.common.serialization import load_data, save_data
from ctcalib.common.transforms.se3 import make_transform

_logger = logging.getLogger(__name__)


def _identity_quat() -> np.ndarray:
    return np.array([0.0, 0.0, 0.0, 1.0])


@dataclass
class SensorParams:
    """Extrinsic to the body frame and clock offset of one sensor."""

    so3_sen_to_br: np.ndarray = field(default_factory=_identity_quat)  # (x, y, z, w)
    pos_sen_in_br: np.ndarray = field(default_factory=lambda: np.zeros(3))
    time_offset: float = 0.0  # t_body = t_sensor + time_offset

    def transform(self) -> np.ndarray:
        """T_SenToBr as 4x4."""
        return make_transform(Rotation.from_quat(self.so3_sen_to_br).as_matrix(), self.pos_sen_in_br)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "SO3_SenToBr": {k: float(v) for k, v in zip(("qx", "qy", "qz", "qw"), self.so3_sen_to_br)},
            "POS_SenInBr": self.pos_sen_in_br.tolist(),
            "TO_SenToBr": float(self.time_offset),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SensorParams":
        q = data["SO3_SenToBr"]
        return cls(
            so3_sen_to_br=np.array([q["qx"], q["qy"], q["qz"], q["qw"]], dtype=float),
            pos_sen_in_br=np.asarray(data["POS_SenInBr"], dtype=float),
            time_offset=float(data["TO_SenToBr"]),
        )


@dataclass
class ImuParams(SensorParams):
    gyro_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))
    acce_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["GYRO_BIAS"] = self.gyro_bias.tolist()
        out["ACCE_BIAS"] = self.acce_bias.tolist()
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImuParams":
        base = SensorParams.from_dict(data)
        return cls(
            so3_sen_to_br=base.so3_sen_to_br,
            pos_sen_in_br=base.pos_sen_in_br,
            time_offset=base.time_offset,
            gyro_bias=np.asarray(data.get("GYRO_BIAS", [0.0, 0.0, 0.0]), dtype=float),
            acce_bias=np.asarray(data.get("ACCE_BIAS", [0.0, 0.0, 0.0]), dtype=float),
        )


@dataclass
class PinholeIntrinsics:
    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int
    distortion: np.ndarray = field(default_factory=lambda: np.zeros(5))  # k1, k2, p1, p2, k3

    @classmethod
    def from_config(cls, cfg: PinholeIntrinsicsConfig) -> "PinholeIntrinsics":
        return cls(cfg.fx, cfg.fy, cfg.cx, cfg.cy, cfg.width, cfg.height, np.asarray(cfg.distortion, dtype=float))

    def K(self) -> np.ndarray:
        return np.array([[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]])

    def project(self, p_cam: np.ndarray) -> np.ndarray:
        """Undistorted pinhole projection of (N, 3) camera-frame points."""
        p = np.atleast_2d(p_cam)
        return np.stack([self.fx * p[:, 0] / p[:, 2] + self.cx, self.fy * p[:, 1] / p[:, 2] + self.cy], axis=1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fx": self.fx, "fy": self.fy, "cx": self.cx, "cy": self.cy,
            "width": self.width, "height": self.height,
            "distortion": self.distortion.tolist(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PinholeIntrinsics":
        return cls(
            float(data["fx"]), float(data["fy"]), float(data["cx"]), float(data["cy"]),
            int(data["width"]), int(data["height"]), np.asarray(data["distortion"], dtype=float),
        )


@dataclass
class CameraParams(SensorParams):
    intrinsics: Optional[PinholeIntrinsics] = None

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        if self.intrinsics is not None:
            out["INTRI"] = self.intrinsics.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CameraParams":
        base = SensorParams.from_dict(data)
        intri = PinholeIntrinsics.from_dict(data["INTRI"]) if "INTRI" in data else None
        return cls(base.so3_sen_to_br, base.pos_sen_in_br, base.time_offset, intri)


class CalibParamManager:
    """Estimated calibration parameters of one run, shared by solver and viewer."""

    def __init__(self, gravity: np.ndarray):
        self.imu: Dict[str, ImuParams] = {}
        self.lidar: Dict[str, SensorParams] = {}
        self.camera: Dict[str, CameraParams] = {}
        self.radar: Dict[str, SensorParams] = {}
        self.gravity = np.asarray(gravity, dtype=float).reshape(3)
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: CalibConfig) -> "CalibParamManager":
        ds = config.data_stream
        mgr = cls(gravity=np.array([0.0, 0.0, -config.prior.gravity_norm]))
        for topic in ds.imu_topics:
            mgr.imu[topic] = ImuParams()
        for topic in ds.lidar_topics:
            mgr.lidar[topic] = SensorParams()
        for topic, cam in ds.camera_topics.items():
            mgr.camera[topic] = CameraParams(intrinsics=PinholeIntrinsics.from_config(cam.intrinsics))
        for topic in ds.radar_topics:
            mgr.radar[topic] = SensorParams()
        return mgr

    @contextlib.contextmanager
    def locked(self) -> Iterator["CalibParamManager"]:
        with self._lock:
            yield self

    def sensor(self, topic: str) -> SensorParams:
        for group in (self.imu, self.lidar, self.camera, self.radar):
            if topic in group:
                return group[topic]
        raise KeyError(f"no calibration parameters for topic '{topic}'")

    def snapshot(self) -> "CalibParamManager":
        with self._lock:
            other = CalibParamManager(self.gravity.copy())
            other.imu = copy.deepcopy(self.imu)
            other.lidar = copy.deepcopy(self.lidar)
            other.camera = copy.deepcopy(self.camera)
            other.radar = copy.deepcopy(self.radar)
        return other

    def assign(self, other: "CalibParamManager") -> None:
        """Overwrite every parameter with copies of other's."""
        with self._lock:
            self.gravity = other.gravity.copy()
            self.imu = copy.deepcopy(other.imu)
            self.lidar = copy.deepcopy(other.lidar)
            self.camera = copy.deepcopy(other.camera)
            self.radar = copy.deepcopy(other.radar)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "CalibParam": {
                    "EXTRI_IMU": {t: p.to_dict() for t, p in self.imu.items()},
                    "EXTRI_LiDAR": {t: p.to_dict() for t, p in self.lidar.items()},
                    "EXTRI_Camera": {t: p.to_dict() for t, p in self.camera.items()},
                    "EXTRI_Radar": {t: p.to_dict() for t, p in self.radar.items()},
                    "GRAVITY": self.gravity.tolist(),
                }
            }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalibParamManager":
        root = data["CalibParam"]
        mgr = cls(np.asarray(root["GRAVITY"], dtype=float))
        mgr.imu = {t: ImuParams.from_dict(p) for t, p in root.get("EXTRI_IMU", {}).items()}
        mgr.lidar = {t: SensorParams.from_dict(p) for t, p in root.get("EXTRI_LiDAR", {}).items()}
        mgr.camera = {t: CameraParams.from_dict(p) for t, p in root.get("EXTRI_Camera", {}).items()}
        mgr.radar = {t: SensorParams.from_dict(p) for t, p in root.get("EXTRI_Radar", {}).items()}
        return mgr

    def save(self, path: str, fmt: str | None = None) -> None:
        save_data(path, self.to_dict(), fmt)

    @classmethod
    def load(cls, path: str, fmt: str | None = None) -> "CalibParamManager":
        return cls.from_dict(load_data(path, fmt))

    def show_param_status(self) -> None:
        snap = self.snapshot()
        _logger.info("gravity: %s (norm %.5f)", np.round(snap.gravity, 5).tolist(), float(np.linalg.norm(snap.gravity)))
        for label, group in (("IMU", snap.imu), ("LiDAR", snap.lidar), ("Camera", snap.camera), ("Radar", snap.radar)):
            for topic, p in group.items():
                euler = Rotation.from_quat(p.so3_sen_to_br).as_euler("xyz", degrees=True)
                _logger.info(
                    "%s '%s': euler(deg) %s, pos(m) %s, time offset(s) %+.6f",
                    label, topic, np.round(euler, 3).tolist(), np.round(p.pos_sen_in_br, 4).tolist(), p.time_offset,
                )
