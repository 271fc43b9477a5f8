"""
Tests for the SfM bridge: COLMAP export layout, import filtering, editing.
"""

import os

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from conftest import camera_topic_config
from ctcalib.calib.param_manager import PinholeIntrinsics
from ctcalib.common import constants
from ctcalib.common.transforms.se3 import make_transform
from ctcalib.reconstruction import colmap_io
from ctcalib.reconstruction.bridge import (
    downsample,
    find_covisible_pairs,
    perform_transform,
    store_images_for_sfm,
    try_load_sfm_data,
)
from ctcalib.reconstruction.structures import ImagesInfo, Landmark, Observation, Reconstruction
from ctcalib.sensors.frames import CameraFrame

TOPIC = "/cam"
FRAME_IDS = (100, 200, 300)


def _pose(k):
    R = Rotation.from_euler("y", 5.0 * k, degrees=True).as_matrix()
    return make_transform(R, [0.5 * k, 0.0, 0.1 * k])


def _frames(ids=FRAME_IDS):
    return [CameraFrame(timestamp=i * 1e-3, image=np.zeros((6, 8), dtype=np.uint8), frame_id=i) for i in ids]


@pytest.fixture
def cam_config(config_factory):
    return config_factory(camera_topics={TOPIC: camera_topic_config()})


@pytest.fixture
def intri(cam_config):
    return PinholeIntrinsics.from_config(cam_config.data_stream.camera_topics[TOPIC].intrinsics)


def _write_model(config, cameras=1):
    """
    Three reconstructed images and four points:
      10  good, seen by all images
      11  reprojection error too large
      12  track too short
      13  good, plus one track entry whose feature belongs to point 10
    """
    workspace = config.sfm_workspace(TOPIC)
    image_dir = config.image_store_dir(TOPIC)
    os.makedirs(workspace, exist_ok=True)
    os.makedirs(image_dir, exist_ok=True)
    ImagesInfo(TOPIC, image_dir, {i: f"{i}.jpg" for i in (*FRAME_IDS, 400)}).save(
        config.image_store_info_file(TOPIC), config.preference.output_data_format
    )

    cams = {
        c: colmap_io.ColmapCamera(c, "PINHOLE", 640, 480, np.array([400.0, 400.0, 320.0, 240.0]))
        for c in range(1, cameras + 1)
    }
    colmap_io.write_cameras_text(os.path.join(workspace, constants.SFM_CAMERAS_FILE), cams)

    images = {}
    for k, frame_id in enumerate(FRAME_IDS):
        img = colmap_io.image_from_cam_to_world(k + 1, _pose(k), 1, f"{frame_id}.jpg")
        img.points2d = [
            colmap_io.ColmapPoint2D(np.array([10.0 + k, 20.0 + j]), pid)
            for j, pid in enumerate((10, 11, 12, 13, 10))
        ]
        images[img.image_id] = img
    colmap_io.write_images_text(os.path.join(workspace, constants.SFM_IMAGES_FILE), images)

    def point(pid, error, track):
        return colmap_io.ColmapPoint3D(pid, np.array([0.0, 0.0, 5.0 + pid]), np.array([1, 2, 3]), error, track)

    points = {
        10: point(10, 0.5, [(1, 0), (2, 0), (3, 0)]),
        11: point(11, 5.0, [(1, 1), (2, 1), (3, 1)]),
        12: point(12, 0.5, [(1, 2), (2, 2)]),
        13: point(13, 0.5, [(1, 3), (2, 3), (3, 3), (1, 4)]),
    }
    colmap_io.write_points3d_text(os.path.join(workspace, constants.SFM_POINTS_FILE), points)


class TestColmapText:
    """Text model files read back what was written."""

    def test_images_roundtrip(self, tmp_path):
        img = colmap_io.image_from_cam_to_world(7, _pose(2), 1, "frame 7.jpg")
        img.points2d = [colmap_io.ColmapPoint2D(np.array([1.5, 2.5]), colmap_io.INVALID_POINT3D_ID)]
        empty = colmap_io.image_from_cam_to_world(8, _pose(0), 1, "8.jpg")
        path = str(tmp_path / "images.txt")
        colmap_io.write_images_text(path, {7: img, 8: empty})

        loaded = colmap_io.read_images_text(path)
        assert set(loaded) == {7, 8}
        assert loaded[7].name == "frame 7.jpg"
        assert np.allclose(np.linalg.inv(loaded[7].world_to_cam()), _pose(2), atol=1e-12)
        assert loaded[7].points2d[0].point3d_id == -1
        assert loaded[8].points2d == []


class TestTryLoad:
    """Import of a finished COLMAP model."""

    def test_filters_landmarks(self, cam_config, intri):
        _write_model(cam_config)
        frames = _frames((*FRAME_IDS, 400))
        rec = try_load_sfm_data(cam_config, TOPIC, frames, intri, error_thd=2.0, track_len_thd=3)

        assert rec is not None
        assert set(rec.views) == set(FRAME_IDS)
        assert set(rec.structure) == {10, 13}
        assert set(rec.structure[13].obs) == set(FRAME_IDS)
        assert rec.structure[13].obs[100].feature_id == 3
        assert rec.views[200].timestamp == pytest.approx(0.2)
        for k, frame_id in enumerate(FRAME_IDS):
            assert np.allclose(rec.pose_of(frame_id), _pose(k), atol=1e-9)
        assert rec.observation_count() == 6

    def test_track_threshold_counts_surviving_observations(self, cam_config, intri):
        _write_model(cam_config)
        rec = try_load_sfm_data(cam_config, TOPIC, _frames(FRAME_IDS[:2]), intri, error_thd=2.0, track_len_thd=3)
        assert rec.structure == {}
        assert set(rec.views) == set(FRAME_IDS[:2])

    def test_missing_model_returns_none(self, cam_config, intri):
        assert try_load_sfm_data(cam_config, TOPIC, _frames(), intri, 2.0, 3) is None

    def test_multiple_cameras_rejected(self, cam_config, intri):
        _write_model(cam_config, cameras=2)
        assert try_load_sfm_data(cam_config, TOPIC, _frames(), intri, 2.0, 3) is None


class TestExport:
    """COLMAP workspace produced for a camera topic."""

    def test_store_images(self, cam_config, intri):
        frames = _frames()
        info = store_images_for_sfm(cam_config, TOPIC, frames, intri, {(200, 300), (100, 200)})

        for frame_id in FRAME_IDS:
            assert os.path.isfile(info.image_path(frame_id))
        workspace = cam_config.sfm_workspace(TOPIC)
        with open(os.path.join(workspace, constants.SFM_MATCHES_FILE)) as f:
            assert f.read() == "100.jpg 200.jpg\n200.jpg 300.jpg\n"
        with open(os.path.join(workspace, constants.SFM_COMMAND_FILE)) as f:
            commands = f.read()
        for tool in ("feature_extractor", "matches_importer", "colmap gui", "colmap mapper", "model_converter"):
            assert tool in commands
        assert "--Mapper.init_max_error 1 " in commands

        loaded = ImagesInfo.load(cam_config.image_store_info_file(TOPIC))
        assert loaded.images == {i: f"{i}.jpg" for i in FRAME_IDS}
        assert loaded.name_to_id()["200.jpg"] == 200

    def test_rolling_shutter_error_bound(self, config_factory, intri):
        config = config_factory(camera_topics={TOPIC: camera_topic_config("SENSOR_IMAGE_RS_FIRST")})
        store_images_for_sfm(config, TOPIC, _frames(), intri, set())
        with open(os.path.join(config.sfm_workspace(TOPIC), constants.SFM_COMMAND_FILE)) as f:
            assert "--Mapper.init_max_error 2 " in f.read()

    def test_blank_images_have_no_pairs(self, intri):
        assert find_covisible_pairs(_frames(), intri) == set()


def _toy_reconstruction(n_landmarks=10, n_obs=5):
    rec = Reconstruction()
    for v in range(n_obs):
        rec.poses[v] = _pose(v)
    for i in range(n_landmarks):
        rec.structure[i] = Landmark(
            X=np.array([i, 1.0, 2.0]),
            obs={v: Observation(np.array([1.0, 2.0]), i) for v in range(n_obs)},
        )
    return rec


class TestEditing:
    """In-place similarity transform and downsampling."""

    def test_identity_transform_is_noop(self):
        rec = _toy_reconstruction()
        perform_transform(rec, np.eye(4), 1.0)
        assert np.allclose(rec.poses[3], _pose(3))
        assert np.allclose(rec.structure[4].X, [4.0, 1.0, 2.0])

    def test_scale_applied_before_transform(self):
        rec = _toy_reconstruction()
        T = make_transform(Rotation.from_euler("z", 90.0, degrees=True).as_matrix(), [1.0, 0.0, 0.0])
        perform_transform(rec, T, 2.0)
        assert np.allclose(rec.structure[1].X, T[:3, :3] @ np.array([2.0, 2.0, 4.0]) + T[:3, 3])
        scaled = _pose(2)
        scaled[:3, 3] *= 2.0
        assert np.allclose(rec.poses[2], T @ scaled)

    def test_downsample_caps_counts(self, rng):
        rec = _toy_reconstruction(n_landmarks=10, n_obs=5)
        downsample(rec, lm_num_thd=4, obv_num_thd=3, rng=rng)
        assert len(rec.structure) == 4
        assert all(len(lm.obs) == 3 for lm in rec.structure.values())

    def test_downsample_below_thresholds_is_noop(self, rng):
        rec = _toy_reconstruction(n_landmarks=3, n_obs=2)
        downsample(rec, lm_num_thd=4, obv_num_thd=3, rng=rng)
        assert len(rec.structure) == 3
        assert all(len(lm.obs) == 2 for lm in rec.structure.values())
