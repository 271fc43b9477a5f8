"""
Sensor frame types.

Frames are created once by the loaders. Their timestamps are rewritten twice
afterwards, by window trimming (which drops frames) and by zero re-basing
(shift_time). Sub-measurement times (per-point LiDAR times, per-target radar
times) move together with the frame time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

import cv2
import numpy as np


@dataclass
class ImuFrame:
    timestamp: float
    gyro: np.ndarray  # (3,) rad/s
    acce: np.ndarray  # (3,) m/s^2, specific force

    def shift_time(self, dt: float) -> None:
        self.timestamp += dt


@dataclass
class LiDARFrame:
    """One scan; every point carries its own absolute timestamp."""

    timestamp: float
    points: np.ndarray  # (N, 3) in the LiDAR frame
    point_times: np.ndarray  # (N,)
    intensity: np.ndarray = field(default_factory=lambda: np.zeros(0))

    def shift_time(self, dt: float) -> None:
        self.timestamp += dt
        self.point_times = self.point_times + dt

    @property
    def size(self) -> int:
        return int(self.points.shape[0])


@dataclass
class CameraFrame:
    timestamp: float
    image: np.ndarray  # (H, W) or (H, W, 3) uint8
    frame_id: int = -1

    def shift_time(self, dt: float) -> None:
        self.timestamp += dt

    def gray(self) -> np.ndarray:
        if self.image.ndim == 2:
            return self.image
        return cv2.cvtColor(self.image, cv2.COLOR_BGR2GRAY)


@dataclass
class RadarTarget:
    timestamp: float
    xyz: np.ndarray  # (3,) in the radar frame
    radial_velocity: float

    def shift_time(self, dt: float) -> None:
        self.timestamp += dt

    @property
    def direction(self) -> np.ndarray:
        return self.xyz / np.linalg.norm(self.xyz)


@dataclass
class RadarTargetArray:
    timestamp: float
    targets: List[RadarTarget]

    def shift_time(self, dt: float) -> None:
        self.timestamp += dt
        for tar in self.targets:
            tar.shift_time(dt)
