"""
Reconstruction containers.

A Reconstruction is the in-memory view of one camera's structure-from-motion
result, keyed by our own frame ids (not COLMAP image ids):

    views     : view id -> View
    poses     : pose id -> 4x4 T_CamToWorld
    structure : landmark id -> Landmark, each with observations keyed by view id

ImagesInfo is the index written next to the exported images; it maps frame
ids to image file names and back.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np

from ctcalib.calib.param_manager import PinholeIntrinsics
from ctcalib.common.serialization import load_data, save_data


@dataclass
class View:
    view_id: int
    intrinsics_id: int
    pose_id: int
    width: int
    height: int
    timestamp: float


@dataclass
class Observation:
    x: np.ndarray  # (2,) pixel
    feature_id: int


@dataclass
class Landmark:
    X: np.ndarray  # (3,) world position
    color: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=np.uint8))
    obs: Dict[int, Observation] = field(default_factory=dict)


@dataclass
class Reconstruction:
    intrinsics: Dict[int, PinholeIntrinsics] = field(default_factory=dict)
    views: Dict[int, View] = field(default_factory=dict)
    poses: Dict[int, np.ndarray] = field(default_factory=dict)
    structure: Dict[int, Landmark] = field(default_factory=dict)

    def pose_of(self, view_id: int) -> Optional[np.ndarray]:
        view = self.views.get(view_id)
        if view is None:
            return None
        return self.poses.get(view.pose_id)

    def observation_count(self) -> int:
        return sum(len(lm.obs) for lm in self.structure.values())


@dataclass
class ImagesInfo:
    topic: str
    root_path: str
    images: Dict[int, str] = field(default_factory=dict)  # frame id -> file name

    def image_filename(self, frame_id: int) -> str:
        return self.images[frame_id]

    def image_path(self, frame_id: int) -> str:
        return os.path.join(self.root_path, self.images[frame_id])

    def name_to_id(self) -> Dict[str, int]:
        return {name: idx for idx, name in self.images.items()}

    def save(self, path: str, fmt: str | None = None) -> None:
        save_data(path, {"info": {
            "topic": self.topic,
            "root_path": self.root_path,
            "images": {str(k): v for k, v in self.images.items()},
        }}, fmt)

    @classmethod
    def load(cls, path: str, fmt: str | None = None) -> "ImagesInfo":
        info = load_data(path, fmt)["info"]
        return cls(
            topic=info["topic"],
            root_path=info["root_path"],
            images={int(k): v for k, v in info.get("images", {}).items()},
        )
