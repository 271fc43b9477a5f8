"""Pydantic configuration models for ctcalib.

One CalibConfig instance is built at startup (from YAML) and passed explicitly
to every component. Models are frozen: nothing mutates configuration after
load.
"""

from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from ctcalib.common import constants


class _FrozenModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ImuTopicConfig(_FrozenModel):
    type: str
    acce_weight: float = Field(10.0, gt=0.0)
    gyro_weight: float = Field(50.0, gt=0.0)


class LiDARTopicConfig(_FrozenModel):
    type: str
    weight: float = Field(10.0, gt=0.0)


class RadarTopicConfig(_FrozenModel):
    type: str
    weight: float = Field(10.0, gt=0.0)


class PinholeIntrinsicsConfig(_FrozenModel):
    """Pinhole projection with radial-tangential distortion (k1, k2, p1, p2, k3)."""

    fx: float = Field(gt=0.0)
    fy: float = Field(gt=0.0)
    cx: float = Field(ge=0.0)
    cy: float = Field(ge=0.0)
    width: int = Field(ge=1)
    height: int = Field(ge=1)
    distortion: List[float] = Field(default_factory=lambda: [0.0] * 5, min_length=5, max_length=5)


class CameraTopicConfig(_FrozenModel):
    type: str
    weight: float = Field(1.0, gt=0.0)
    intrinsics: PinholeIntrinsicsConfig


class DataStreamConfig(_FrozenModel):
    bag_path: str
    output_path: str
    # negative values mean "use the whole log"
    begin_time: float = -1.0
    duration: float = -1.0
    reference_imu: Optional[str] = None

    imu_topics: Dict[str, ImuTopicConfig] = Field(min_length=1)
    lidar_topics: Dict[str, LiDARTopicConfig] = Field(default_factory=dict)
    camera_topics: Dict[str, CameraTopicConfig] = Field(default_factory=dict)
    radar_topics: Dict[str, RadarTopicConfig] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_reference_imu(self) -> "DataStreamConfig":
        if self.reference_imu is not None and self.reference_imu not in self.imu_topics:
            raise ValueError(f"reference_imu '{self.reference_imu}' is not a configured IMU topic")
        return self


class KnotTimeDistConfig(_FrozenModel):
    so3_spline: float = Field(0.02, gt=0.0)
    scale_spline: float = Field(0.05, gt=0.0)


class PriorConfig(_FrozenModel):
    gravity_norm: float = Field(constants.GRAVITY_NORM_DEFAULT, gt=0.0)
    time_offset_padding: float = Field(0.1, ge=0.0)
    knot_time_dist: KnotTimeDistConfig = Field(default_factory=KnotTimeDistConfig)
    sfm_reproj_error_thd: float = Field(2.0, gt=0.0)
    sfm_track_len_thd: int = Field(5, ge=2)
    landmark_num_thd: int = Field(5000, ge=1)
    observation_num_thd: int = Field(20, ge=2)


class PreferenceConfig(_FrozenModel):
    output_data_format: Literal["json", "yaml"] = "json"
    outputs: List[str] = Field(default_factory=list)
    available_threads: int = Field(4, ge=1)
    use_cuda_in_solving: bool = False
    visualization: bool = False
    max_iterations: int = Field(30, ge=1)
    random_seed: int = 42


class CalibConfig(_FrozenModel):
    """Top-level configuration threaded through the whole pipeline."""

    data_stream: DataStreamConfig
    prior: PriorConfig = Field(default_factory=PriorConfig)
    preference: PreferenceConfig = Field(default_factory=PreferenceConfig)

    @classmethod
    def from_yaml(cls, path: str) -> "CalibConfig":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.model_validate(data)

    # ------------------------------------------------------------------
    # Sensor suite
    # ------------------------------------------------------------------

    def is_lidar_integrated(self) -> bool:
        return len(self.data_stream.lidar_topics) > 0

    def is_camera_integrated(self) -> bool:
        return len(self.data_stream.camera_topics) > 0

    def is_radar_integrated(self) -> bool:
        return len(self.data_stream.radar_topics) > 0

    @property
    def reference_imu(self) -> str:
        if self.data_stream.reference_imu is not None:
            return self.data_stream.reference_imu
        return next(iter(self.data_stream.imu_topics))

    def sensor_type(self, topic: str) -> Optional[str]:
        ds = self.data_stream
        for topics in (ds.imu_topics, ds.lidar_topics, ds.camera_topics, ds.radar_topics):
            if topic in topics:
                return topics[topic].type
        return None

    def all_topics(self) -> List[str]:
        ds = self.data_stream
        return [*ds.imu_topics, *ds.lidar_topics, *ds.camera_topics, *ds.radar_topics]

    def outputs_enabled(self, option: str) -> bool:
        return option in self.preference.outputs

    # ------------------------------------------------------------------
    # Output layout
    # ------------------------------------------------------------------

    def format_extension(self) -> str:
        return "." + self.preference.output_data_format

    def stage_dir(self) -> str:
        return os.path.join(self.data_stream.output_path, constants.ITERATION_DIR, constants.STAGE_DIR)

    def epoch_dir(self) -> str:
        return os.path.join(self.data_stream.output_path, constants.ITERATION_DIR, constants.EPOCH_DIR)

    def image_store_dir(self, topic: str) -> str:
        return os.path.join(self.data_stream.output_path, constants.IMAGES_DIR, topic.strip("/"))

    def image_store_info_file(self, topic: str) -> str:
        return os.path.join(self.image_store_dir(topic), constants.IMAGES_INFO_STEM + self.format_extension())

    def sfm_workspace(self, topic: str) -> str:
        return os.path.join(self.data_stream.output_path, constants.SFM_WS_DIR, topic.strip("/"))
